"""Market price lookup."""

from pairlobby.pricing.oracle import SYMBOL_MAP, PriceOracle, to_feed_symbol

__all__ = [
    "PriceOracle",
    "SYMBOL_MAP",
    "to_feed_symbol",
]
