"""Analytic valuation of equal-weighted pair positions.

Both legs carry half of the notional. When both prices move by the same
factor the long gain and the short loss cancel, so only a divergence
between the two legs produces P&L.
"""

from pydantic import BaseModel, Field

LEG_WEIGHT = 0.5


class PairValuation(BaseModel):
    """Mark-to-market figures for one pair position."""

    half_notional: float = Field(..., description="Notional carried by each leg")
    long_size: float = Field(..., description="Units of the long asset")
    short_size: float = Field(..., description="Units of the short asset")
    long_pnl: float = Field(..., description="Leveraged P&L of the long leg")
    short_pnl: float = Field(..., description="Leveraged P&L of the short leg")
    margin_used: float = Field(..., description="Notional divided by leverage")

    model_config = {"frozen": True}

    @property
    def unrealized_pnl(self) -> float:
        return self.long_pnl + self.short_pnl

    @property
    def realized_value(self) -> float:
        """Amount credited back to the ledger if the position closed now."""
        return self.margin_used + self.unrealized_pnl

    @property
    def unrealized_pnl_percentage(self) -> float:
        if self.margin_used == 0:
            return 0.0
        return self.unrealized_pnl / self.margin_used * 100


def margin_for(usd_value: float, leverage: float) -> float:
    """Ledger cost of opening a position of `usd_value` notional."""
    if leverage <= 0:
        raise ValueError(f"Leverage must be positive, got {leverage}")
    return usd_value / leverage


def value_pair(
    usd_value: float,
    leverage: float,
    entry_price_long: float,
    entry_price_short: float,
    current_price_long: float,
    current_price_short: float,
) -> PairValuation:
    """Value a pair position at the given current prices.

    Raises:
        ValueError: If an entry price is not positive.
    """
    if entry_price_long <= 0 or entry_price_short <= 0:
        raise ValueError("Entry prices must be positive")

    half_notional = usd_value * LEG_WEIGHT
    long_size = half_notional / entry_price_long
    short_size = half_notional / entry_price_short

    long_current_value = long_size * current_price_long
    short_current_value = short_size * current_price_short

    long_pnl = (long_current_value - half_notional) * leverage
    # short leg profits when its price falls
    short_pnl = (half_notional - short_current_value) * leverage

    return PairValuation(
        half_notional=half_notional,
        long_size=long_size,
        short_size=short_size,
        long_pnl=long_pnl,
        short_pnl=short_pnl,
        margin_used=margin_for(usd_value, leverage),
    )
