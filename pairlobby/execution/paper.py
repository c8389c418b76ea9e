"""Paper execution provider: synthetic fills at live market prices."""

import asyncio
import logging
import random
import string
import time
from datetime import datetime
from typing import Callable, Optional

from pairlobby.db.store import DataStore, normalize_address
from pairlobby.errors import PriceUnavailable
from pairlobby.execution.base import ExecutionProvider, PositionCallback, deliver
from pairlobby.models import (
    AssetLeg,
    CloseAllPositionsRequest,
    CloseAllPositionsResult,
    ClosePositionRequest,
    ClosePositionResult,
    CreatePositionRequest,
    CreatePositionResult,
    PositionCloseOutcome,
    PositionSnapshot,
)
from pairlobby.pricing import PriceOracle
from pairlobby.valuation import LEG_WEIGHT, value_pair

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Position not found or already closed"


def _millis() -> int:
    return int(time.time() * 1000)


def _new_position_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"sim_{_millis()}_{suffix}"


class PaperExecutionProvider(ExecutionProvider):
    """Simulated venue for demo lobbies.

    Fills are immediate at the oracle's current prices, and valuation
    uses the analytic pair formula. The book lives in the
    ``simulated_positions`` table so positions survive restarts.
    """

    name = "simulated"

    def __init__(self, data_store: DataStore, oracle: PriceOracle, poll_interval: float = 2.0):
        """Initialize the paper provider.

        Args:
            data_store: DataStore holding the simulated book.
            oracle: Price source for fills and marks.
            poll_interval: Seconds between subscription updates.
        """
        self._data_store = data_store
        self._oracle = oracle
        self._poll_interval = poll_interval

    async def _pair_prices(self, long_asset: str, short_asset: str, reason: str) -> tuple[float, float]:
        prices = await self._oracle.get_prices([long_asset, short_asset])
        for asset in (long_asset, short_asset):
            if asset not in prices:
                raise PriceUnavailable(asset, reason)
        return prices[long_asset], prices[short_asset]

    def _snapshot(self, row: dict, price_long: float, price_short: float) -> PositionSnapshot:
        """Value a book row at the given prices."""
        valuation = value_pair(
            usd_value=row["usd_value"],
            leverage=row["leverage"],
            entry_price_long=row["entry_price_long"],
            entry_price_short=row["entry_price_short"],
            current_price_long=price_long,
            current_price_short=price_short,
        )
        margin = valuation.margin_used
        entry_ratio = row["entry_price_long"] / row["entry_price_short"]
        mark_ratio = price_long / price_short

        def leg(coin: str, entry_price: float, size: float, pnl: float) -> AssetLeg:
            return AssetLeg(
                coin=coin,
                entry_price=entry_price,
                actual_size=size,
                leverage=row["leverage"],
                margin_used=margin * LEG_WEIGHT,
                position_value=margin * LEG_WEIGHT,
                unrealized_pnl=pnl,
                entry_position_value=valuation.half_notional,
                initial_weight=LEG_WEIGHT,
                funding_paid=0.0,
            )

        return PositionSnapshot(
            position_id=row["position_id"],
            address=row["address"],
            execution_flag="SIMULATED",
            entry_ratio=entry_ratio,
            mark_ratio=mark_ratio,
            entry_price_ratio=entry_ratio,
            mark_price_ratio=mark_ratio,
            entry_position_value=row["usd_value"],
            # paper positions report their margin as position value
            position_value=margin,
            margin_used=margin,
            unrealized_pnl=valuation.unrealized_pnl,
            unrealized_pnl_percentage=valuation.unrealized_pnl_percentage,
            long_assets=[leg(row["long_asset"], row["entry_price_long"], valuation.long_size, valuation.long_pnl)],
            short_assets=[leg(row["short_asset"], row["entry_price_short"], -valuation.short_size, valuation.short_pnl)],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.now(),
        )

    async def _value_rows(self, rows: list[dict]) -> list[PositionSnapshot]:
        """Value book rows in one price request.

        Rows whose prices are unavailable are left out.
        """
        assets = {row["long_asset"] for row in rows} | {row["short_asset"] for row in rows}
        prices = await self._oracle.get_prices(sorted(assets))
        snapshots = []
        for row in rows:
            long_price = prices.get(row["long_asset"])
            short_price = prices.get(row["short_asset"])
            if long_price is None or short_price is None:
                logger.warning("Skipping valuation of %s: missing price", row["position_id"])
                continue
            snapshots.append(self._snapshot(row, long_price, short_price))
        return snapshots

    async def _realized_value(self, row: dict) -> float:
        long_price, short_price = await self._pair_prices(
            row["long_asset"], row["short_asset"], "no price to close against"
        )
        return self._snapshot(row, long_price, short_price).mark_value

    async def get_positions(
        self, owner: str, credential: str = "", lobby_id: Optional[str] = None
    ) -> list[PositionSnapshot]:
        """Get the owner's simulated positions valued at current prices.

        Args:
            owner: Owner address.
            credential: Unused.
            lobby_id: Restrict to one lobby.
        """
        rows = self._data_store.get_simulated_positions(owner, lobby_id)
        if not rows:
            return []
        return await self._value_rows(rows)

    async def create_position(
        self, request: CreatePositionRequest, credential: str = ""
    ) -> CreatePositionResult:
        """Fill a pair immediately at current prices.

        Raises:
            PriceUnavailable: If either leg cannot be priced.
        """
        entry_long, entry_short = await self._pair_prices(
            request.long_asset, request.short_asset, "no price to fill against"
        )
        row = {
            "position_id": _new_position_id(),
            "address": normalize_address(request.player),
            "lobby_id": request.lobby_id,
            "long_asset": request.long_asset,
            "short_asset": request.short_asset,
            "leverage": request.leverage,
            "usd_value": request.usd_value,
            "entry_price_long": entry_long,
            "entry_price_short": entry_short,
            "created_at": datetime.now().isoformat(),
        }
        self._data_store.save_simulated_position(row)
        logger.info(
            "Simulated fill %s: long %s @ %.6g / short %s @ %.6g, %sx on $%.2f",
            row["position_id"],
            request.long_asset,
            entry_long,
            request.short_asset,
            entry_short,
            request.leverage,
            request.usd_value,
        )
        return CreatePositionResult(
            success=True,
            status="confirmed",
            order_id=f"sim_order_{_millis()}",
            position_id=row["position_id"],
            snapshot=self._snapshot(row, entry_long, entry_short),
        )

    async def close_position(
        self, request: ClosePositionRequest, credential: str = ""
    ) -> ClosePositionResult:
        """Close a simulated position at current prices.

        Raises:
            PriceUnavailable: If either leg cannot be priced.
        """
        row = self._data_store.get_simulated_position(request.position_id)
        if row is None:
            return ClosePositionResult(
                success=False, status="rejected", not_found=True, error=NOT_FOUND_MESSAGE
            )

        realized_value = await self._realized_value(row)
        if not self._data_store.delete_simulated_position(request.position_id):
            # closed concurrently by another request
            return ClosePositionResult(
                success=False, status="rejected", not_found=True, error=NOT_FOUND_MESSAGE
            )
        logger.info("Simulated close %s realized %.2f", request.position_id, realized_value)
        return ClosePositionResult(success=True, status="confirmed", realized_value=realized_value)

    async def close_all_positions(
        self, request: CloseAllPositionsRequest, credential: str = ""
    ) -> CloseAllPositionsResult:
        rows = self._data_store.get_simulated_positions(request.player, request.lobby_id)
        if request.position_ids is not None:
            wanted = set(request.position_ids)
            rows = [row for row in rows if row["position_id"] in wanted]

        results = []
        for row in rows:
            try:
                result = await self.close_position(ClosePositionRequest(position_id=row["position_id"]))
            except PriceUnavailable as e:
                results.append(
                    PositionCloseOutcome(
                        position_id=row["position_id"], success=False, status="rejected", error=str(e)
                    )
                )
                continue
            results.append(
                PositionCloseOutcome(
                    position_id=row["position_id"],
                    success=result.success,
                    status=result.status,
                    realized_value=result.realized_value,
                    error=result.error,
                )
            )
        return CloseAllPositionsResult.from_results(results)

    def subscribe_to_positions(
        self,
        owner: str,
        lobby_id: str,
        callback: PositionCallback,
        credential: str = "",
        on_end: Optional[Callable[[], None]] = None,
    ) -> Callable[[], None]:
        """Poll the simulated book every ``poll_interval`` seconds.

        The poll runs until unsubscribed, so ``on_end`` is never called.
        """

        async def _poll() -> None:
            while True:
                await asyncio.sleep(self._poll_interval)
                try:
                    snapshots = await self.get_positions(owner, lobby_id=lobby_id)
                    await deliver(callback, snapshots)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Simulated position update failed for %s", owner)

        task = asyncio.get_running_loop().create_task(_poll())

        def unsubscribe() -> None:
            if not task.done():
                task.cancel()

        return unsubscribe
