"""Mark prices from the public Binance ticker."""

import asyncio
import inspect
import json
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional, Union

import httpx

from pairlobby.errors import PriceUnavailable
from pairlobby.models import PriceQuote

logger = logging.getLogger(__name__)

DEFAULT_PRICE_URL = "https://api.binance.com/api/v3/ticker/price"
DEFAULT_QUOTE_SUFFIX = "USDT"

# Venue symbol -> feed symbol where the default suffix rule is wrong or ambiguous
SYMBOL_MAP = {
    "BTC": "BTCUSDT",
    "ETH": "ETHUSDT",
    "SOL": "SOLUSDT",
    "ARB": "ARBUSDT",
    "OP": "OPUSDT",
    "AVAX": "AVAXUSDT",
    "MATIC": "MATICUSDT",
    "LINK": "LINKUSDT",
    "UNI": "UNIUSDT",
    "AAVE": "AAVEUSDT",
    "CRV": "CRVUSDT",
    "MKR": "MKRUSDT",
    "SNX": "SNXUSDT",
    "COMP": "COMPUSDT",
    "YFI": "YFIUSDT",
    "SUSHI": "SUSHIUSDT",
    "DOGE": "DOGEUSDT",
    "SHIB": "SHIBUSDT",
    "PEPE": "PEPEUSDT",
    "WIF": "WIFUSDT",
    "BONK": "BONKUSDT",
    "FLOKI": "FLOKIUSDT",
    "APE": "APEUSDT",
    "LDO": "LDOUSDT",
    "RPL": "RPLUSDT",
    "FXS": "FXSUSDT",
    "BLUR": "BLURUSDT",
    "APT": "APTUSDT",
    "SUI": "SUIUSDT",
    "SEI": "SEIUSDT",
    "TIA": "TIAUSDT",
    "INJ": "INJUSDT",
    "NEAR": "NEARUSDT",
    "ATOM": "ATOMUSDT",
    "DOT": "DOTUSDT",
    "FTM": "FTMUSDT",
    "ALGO": "ALGOUSDT",
    "XRP": "XRPUSDT",
    "ADA": "ADAUSDT",
    "XLM": "XLMUSDT",
    "TRX": "TRXUSDT",
    "EOS": "EOSUSDT",
    "XTZ": "XTZUSDT",
    "KAVA": "KAVAUSDT",
    "RUNE": "RUNEUSDT",
    "GMX": "GMXUSDT",
    "DYDX": "DYDXUSDT",
    "JUP": "JUPUSDT",
    "WLD": "WLDUSDT",
    "STRK": "STRKUSDT",
    "PYTH": "PYTHUSDT",
    "JTO": "JTOUSDT",
    "MEME": "MEMEUSDT",
    "ORDI": "ORDIUSDT",
    "SATS": "1000SATSUSDT",
    "RATS": "RATSUSDT",
}

PriceCallback = Callable[[dict[str, float]], Union[None, Awaitable[None]]]


def to_feed_symbol(asset: str) -> str:
    """Map a venue asset symbol to the price feed's symbol.

    Strips a ``-PERP`` suffix and upper-cases; unmapped assets get the
    default quote suffix.

    >>> to_feed_symbol("btc-PERP")
    'BTCUSDT'
    >>> to_feed_symbol("XYZ")
    'XYZUSDT'
    """
    base = asset.strip().upper()
    if base.endswith("-PERP"):
        base = base[: -len("-PERP")]
    return SYMBOL_MAP.get(base, f"{base}{DEFAULT_QUOTE_SUFFIX}")


class PriceOracle:
    """Fetches and caches mark prices.

    The cache is keyed by lobby asset symbol. Entries younger than
    ``cache_ttl`` seconds are served without a request; older entries are
    only used as a fallback when a fetch fails.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_PRICE_URL,
        cache_ttl: float = 1.0,
        poll_interval: float = 2.0,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the oracle.

        Args:
            base_url: Ticker price endpoint.
            cache_ttl: Seconds a fetched price counts as fresh.
            poll_interval: Seconds between subscription polls.
            timeout: HTTP timeout for owned clients.
            client: Shared HTTP client. One is created when omitted.
            clock: Monotonic clock used for cache ageing.
        """
        self._base_url = base_url
        self._cache_ttl = cache_ttl
        self._poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._clock = clock
        self._cache: dict[str, tuple[PriceQuote, float]] = {}

    async def aclose(self) -> None:
        """Close the HTTP client if this oracle created it."""
        if self._owns_client:
            await self._client.aclose()

    # ==================== Cache ====================

    def _fresh(self, asset: str) -> Optional[float]:
        entry = self._cache.get(asset)
        if entry and self._clock() - entry[1] < self._cache_ttl:
            return entry[0].price
        return None

    def _cached(self, asset: str) -> Optional[float]:
        entry = self._cache.get(asset)
        return entry[0].price if entry else None

    def _store(self, asset: str, price: float) -> None:
        quote = PriceQuote(asset=asset, price=price, observed_at=datetime.now())
        self._cache[asset] = (quote, self._clock())

    def get_cached_quote(self, asset: str) -> Optional[PriceQuote]:
        """Last observed quote for an asset, fresh or not."""
        entry = self._cache.get(asset)
        return entry[0] if entry else None

    # ==================== Fetching ====================

    async def _fetch_one(self, asset: str) -> float:
        symbol = to_feed_symbol(asset)
        response = await self._client.get(self._base_url, params={"symbol": symbol})
        response.raise_for_status()
        price = float(response.json()["price"])
        if price <= 0:
            raise ValueError(f"Non-positive price {price} for {symbol}")
        self._store(asset, price)
        return price

    async def _fetch_batch(self, assets: list[str]) -> dict[str, float]:
        symbols = [to_feed_symbol(asset) for asset in assets]
        response = await self._client.get(
            self._base_url,
            params={"symbols": json.dumps(symbols, separators=(",", ":"))},
        )
        response.raise_for_status()
        by_symbol = {item["symbol"]: float(item["price"]) for item in response.json()}

        prices: dict[str, float] = {}
        for asset, symbol in zip(assets, symbols):
            price = by_symbol.get(symbol)
            if price is not None and price > 0:
                self._store(asset, price)
                prices[asset] = price
        return prices

    async def get_price(self, asset: str) -> float:
        """Get the current price of one asset.

        Raises:
            PriceUnavailable: If the fetch fails and nothing is cached.
        """
        fresh = self._fresh(asset)
        if fresh is not None:
            return fresh

        try:
            return await self._fetch_one(asset)
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            cached = self._cached(asset)
            if cached is not None:
                logger.warning("Price fetch for %s failed (%s); using cached price", asset, e)
                return cached
            raise PriceUnavailable(asset, str(e)) from e

    async def get_quote(self, asset: str) -> PriceQuote:
        """Get the current price of one asset with its observation time."""
        await self.get_price(asset)
        return self._cache[asset][0]

    async def get_prices(self, assets: list[str]) -> dict[str, float]:
        """Get current prices for several assets in one request.

        Assets the feed cannot price are left out of the result instead of
        failing the batch.

        Returns:
            Mapping of asset to price for every asset that could be priced.
        """
        prices: dict[str, float] = {}
        missing: list[str] = []
        for asset in dict.fromkeys(assets):
            fresh = self._fresh(asset)
            if fresh is not None:
                prices[asset] = fresh
            else:
                missing.append(asset)

        if not missing:
            return prices

        try:
            prices.update(await self._fetch_batch(missing))
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning("Batch price fetch failed (%s); falling back per symbol", e)

        for asset in missing:
            if asset in prices:
                continue
            try:
                prices[asset] = await self.get_price(asset)
            except PriceUnavailable as e:
                logger.warning("%s", e)
        return prices

    # ==================== Subscriptions ====================

    def subscribe(self, assets: list[str], callback: PriceCallback) -> Callable[[], None]:
        """Poll prices for ``assets`` and pass each result to ``callback``.

        Must be called from a running event loop. ``callback`` may be a
        plain function or a coroutine function.

        Returns:
            Unsubscribe function; calling it more than once is harmless.
        """
        assets = list(assets)

        async def _poll() -> None:
            while True:
                try:
                    prices = await self.get_prices(assets)
                    result = callback(prices)
                    if inspect.isawaitable(result):
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Price subscription tick failed")
                await asyncio.sleep(self._poll_interval)

        task = asyncio.get_running_loop().create_task(_poll())

        def unsubscribe() -> None:
            if not task.done():
                task.cancel()

        return unsubscribe
