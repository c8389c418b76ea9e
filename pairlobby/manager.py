"""Position manager: opens, closes and re-marks positions against the ledger.

The execution provider is the source of truth for whether a position
exists. The manager only writes the ledger after a provider confirms, and
every ledger write happens in one SQLite transaction together with the
matching position row change. Failures come back as structured outcomes
rather than exceptions.
"""

import logging
import sqlite3
from typing import Optional

from pairlobby.config import Settings
from pairlobby.db import DataStore, LedgerStore, PositionStore, normalize_address
from pairlobby.errors import (
    InsufficientFunds,
    LedgerSyncFailed,
    NotFound,
    PriceUnavailable,
    VenueRejected,
)
from pairlobby.execution import ExecutionProvider, PaperExecutionProvider, VenueExecutionProvider
from pairlobby.leaderboard import rank_accounts
from pairlobby.models import (
    BalanceHistoryEntry,
    CloseAllOutcome,
    CloseAllPositionsRequest,
    ClosePositionOutcome,
    ClosePositionRequest,
    CreatePositionRequest,
    Lobby,
    OpenPositionOutcome,
    PositionCloseOutcome,
    PositionRecord,
    PositionSnapshot,
    ReconciliationItem,
    Standing,
)
from pairlobby.pricing import PriceOracle
from pairlobby.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

# Failures that leave a confirmed venue operation unledgered
_LEDGER_ERRORS = (sqlite3.Error, InsufficientFunds, NotFound)


class PositionManager:
    """Coordinates execution providers with the ledger and position stores."""

    def __init__(
        self,
        data_store: DataStore,
        live_provider: ExecutionProvider,
        paper_provider: ExecutionProvider,
        registry: Optional[SubscriptionRegistry] = None,
        oracle: Optional[PriceOracle] = None,
    ):
        """Initialize the manager.

        Args:
            data_store: Shared SQLite store.
            live_provider: Provider for lobbies with real execution.
            paper_provider: Provider for demo lobbies.
            registry: Registry of valuation syncs. A private one is created when omitted.
            oracle: Price oracle to close on shutdown.
        """
        self._data_store = data_store
        self.ledger = LedgerStore(data_store)
        self.positions = PositionStore(data_store)
        self._live = live_provider
        self._paper = paper_provider
        self.registry = registry or SubscriptionRegistry()
        self._oracle = oracle

    @classmethod
    def from_settings(cls, settings: Settings) -> "PositionManager":
        """Build a manager with the real price feed and venue."""
        data_store = DataStore(settings.db_path)
        oracle = PriceOracle(
            base_url=settings.price_url,
            cache_ttl=settings.price_cache_ttl,
            poll_interval=settings.price_poll_interval,
            timeout=settings.request_timeout,
        )
        live = VenueExecutionProvider(
            base_url=settings.venue_url,
            ws_url=settings.venue_ws_url,
            token=settings.venue_token,
            confirm_attempts=settings.confirm_attempts,
            confirm_interval=settings.confirm_interval,
            close_all_attempts=settings.close_all_attempts,
            timeout=settings.request_timeout,
        )
        paper = PaperExecutionProvider(data_store, oracle, poll_interval=settings.sync_interval)
        return cls(data_store, live, paper, oracle=oracle)

    async def aclose(self) -> None:
        """Stop every sync and release provider connections."""
        self.registry.stop_all()
        await self._live.aclose()
        await self._paper.aclose()
        if self._oracle is not None:
            await self._oracle.aclose()

    def _provider_for(self, lobby: Lobby) -> ExecutionProvider:
        return self._paper if lobby.is_demo else self._live

    def _get_lobby(self, lobby_id: str) -> Lobby:
        lobby = self._data_store.get_lobby(lobby_id)
        if lobby is None:
            raise NotFound(f"Lobby {lobby_id} not found")
        return lobby

    def _record_reconciliation(self, item: ReconciliationItem) -> None:
        try:
            self._data_store.add_reconciliation(item)
        except sqlite3.Error:
            logger.exception("Could not record reconciliation item %s", item)

    # ==================== Open ====================

    async def open_position(
        self,
        player: str,
        lobby_id: str,
        long_asset: str,
        short_asset: str,
        leverage: float,
        usd_value: float,
        execution_type: str = "MARKET",
        slippage: float = 0.01,
        credential: str = "",
    ) -> OpenPositionOutcome:
        """Open a pair position and debit its margin.

        The balance is checked before anything is sent to the provider.
        If the provider confirms but the ledger write then fails, the
        outcome is still a success with ``error_code="ledger_sync_failed"``
        and a reconciliation item is queued.

        Args:
            player: Player address.
            lobby_id: Lobby identifier.
            long_asset: Asset to buy.
            short_asset: Asset to sell.
            leverage: Leverage multiplier.
            usd_value: Notional in USD.
            execution_type: ``MARKET``, ``SYNC`` or ``TWAP``.
            slippage: Maximum slippage fraction.
            credential: Venue bearer token for live lobbies.

        Returns:
            OpenPositionOutcome.

        Raises:
            ValueError: If the order parameters are invalid.
        """
        player = normalize_address(player)
        request = CreatePositionRequest(
            player=player,
            lobby_id=lobby_id,
            long_asset=long_asset,
            short_asset=short_asset,
            leverage=leverage,
            usd_value=usd_value,
            slippage=slippage,
            execution_type=execution_type,
        )
        margin = request.margin_cost

        try:
            lobby = self._get_lobby(lobby_id)
        except NotFound as e:
            return OpenPositionOutcome(success=False, error_code="not_found", error=str(e))

        account = self.ledger.get_account(player, lobby_id)
        if account is None:
            return OpenPositionOutcome(
                success=False, error_code="not_found", error=f"{player} has not joined lobby {lobby_id}"
            )
        if account.balance < margin:
            return OpenPositionOutcome(
                success=False,
                error_code="insufficient_funds",
                error=str(InsufficientFunds(player, lobby_id, margin, account.balance)),
            )

        provider = self._provider_for(lobby)
        try:
            result = await provider.create_position(request, credential)
        except PriceUnavailable as e:
            return OpenPositionOutcome(success=False, error_code="price_unavailable", error=str(e))
        except VenueRejected as e:
            return OpenPositionOutcome(success=False, error_code="venue_rejected", error=str(e))

        if result.status == "rejected":
            return OpenPositionOutcome(
                success=False, status="rejected", error_code="venue_rejected", error=result.error
            )
        if result.status == "unconfirmed":
            self._record_reconciliation(
                ReconciliationItem(
                    kind="unconfirmed_order",
                    player=player,
                    lobby_id=lobby_id,
                    order_id=result.order_id,
                    amount=margin,
                    detail=result.error or "",
                )
            )
            return OpenPositionOutcome(
                success=False,
                order_id=result.order_id,
                status="unconfirmed",
                error_code="confirmation_timeout",
                error=result.error,
            )

        record = PositionRecord(
            position_id=result.position_id,
            player=player,
            lobby_id=lobby_id,
            long_asset=long_asset,
            short_asset=short_asset,
            leverage=leverage,
            usd_value=usd_value,
            margin_used=margin,
            entry_price_long=_leg_entry(result.snapshot, long=True),
            entry_price_short=_leg_entry(result.snapshot, long=False),
            mark_value=margin,
            order_id=result.order_id,
        )
        try:
            new_balance = self._ledger_open(record)
        except LedgerSyncFailed as e:
            logger.error(
                "Position %s confirmed but ledger debit failed: %s", record.position_id, e
            )
            self._record_reconciliation(
                ReconciliationItem(
                    kind="open_unledgered",
                    player=player,
                    lobby_id=lobby_id,
                    order_id=result.order_id,
                    position_id=result.position_id,
                    amount=margin,
                    detail=str(e),
                )
            )
            return OpenPositionOutcome(
                success=True,
                position_id=result.position_id,
                order_id=result.order_id,
                margin_used=margin,
                status="confirmed",
                error_code="ledger_sync_failed",
                error=f"Position opened but ledger update failed: {e}",
            )

        logger.info(
            "%s opened %s (long %s / short %s) in %s; margin %.2f, balance %.2f",
            player,
            record.position_id,
            long_asset,
            short_asset,
            lobby_id,
            margin,
            new_balance,
        )
        return OpenPositionOutcome(
            success=True,
            position_id=record.position_id,
            order_id=result.order_id,
            margin_used=margin,
            new_balance=new_balance,
            status="confirmed",
        )

    def _ledger_open(self, record: PositionRecord) -> float:
        """Insert the position and debit its margin in one transaction.

        Raises:
            LedgerSyncFailed: If the write fails; nothing is committed.
        """
        try:
            with self._data_store.transaction() as conn:
                self.positions.insert(record, conn=conn)
                value = self.positions.sum_open_marks(record.player, record.lobby_id, conn=conn)
                return self.ledger.debit(
                    record.player,
                    record.lobby_id,
                    record.margin_used,
                    value_in_positions=value,
                    conn=conn,
                )
        except _LEDGER_ERRORS as e:
            raise LedgerSyncFailed(str(e)) from e

    # ==================== Close ====================

    def _settle_close(self, record: PositionRecord, realized_value: float) -> Optional[float]:
        """Mark a position closed and credit its realized value.

        Returns:
            New balance, or None if the position was already settled.

        Raises:
            LedgerSyncFailed: If the write fails; nothing is committed.
        """
        try:
            with self._data_store.transaction() as conn:
                if not self.positions.mark_closed(record.position_id, realized_value, conn=conn):
                    return None
                value = self.positions.sum_open_marks(record.player, record.lobby_id, conn=conn)
                return self.ledger.credit(
                    record.player,
                    record.lobby_id,
                    realized_value,
                    value_in_positions=value,
                    conn=conn,
                )
        except _LEDGER_ERRORS as e:
            raise LedgerSyncFailed(str(e)) from e

    def _already_closed(self, record: PositionRecord) -> ClosePositionOutcome:
        account = self.ledger.get_account(record.player, record.lobby_id)
        return ClosePositionOutcome(
            success=True,
            position_id=record.position_id,
            already_closed=True,
            realized_value=record.realized_value,
            new_balance=account.balance if account else None,
        )

    async def close_position(
        self,
        position_id: str,
        lobby_id: str,
        player: Optional[str] = None,
        execution_type: str = "MARKET",
        twap_duration: Optional[int] = None,
        twap_interval_seconds: Optional[int] = None,
        randomize_execution: Optional[bool] = None,
        referral_code: Optional[str] = None,
        credential: str = "",
    ) -> ClosePositionOutcome:
        """Close a position and credit its realized value.

        Closing a position that is already closed succeeds with
        ``already_closed=True`` and leaves the ledger alone.

        Args:
            position_id: Position to close.
            lobby_id: Lobby the position must belong to.
            player: When given, the position must belong to this player.
            execution_type: ``MARKET`` or ``TWAP``.
            credential: Venue bearer token for live lobbies.

        Returns:
            ClosePositionOutcome.
        """
        record = self.positions.get(position_id)
        if (
            record is None
            or record.lobby_id != lobby_id
            or (player is not None and record.player != normalize_address(player))
        ):
            return ClosePositionOutcome(
                success=False,
                position_id=position_id,
                error_code="not_found",
                error=f"Position {position_id} not found in lobby {lobby_id}",
            )
        if record.state == "closed":
            return self._already_closed(record)

        try:
            lobby = self._get_lobby(lobby_id)
        except NotFound as e:
            return ClosePositionOutcome(
                success=False, position_id=position_id, error_code="not_found", error=str(e)
            )

        request = ClosePositionRequest(
            position_id=position_id,
            player=record.player,
            lobby_id=lobby_id,
            execution_type=execution_type,
            twap_duration=twap_duration,
            twap_interval_seconds=twap_interval_seconds,
            randomize_execution=randomize_execution,
            referral_code=referral_code,
        )
        provider = self._provider_for(lobby)
        try:
            result = await provider.close_position(request, credential)
        except PriceUnavailable as e:
            return ClosePositionOutcome(
                success=False, position_id=position_id, error_code="price_unavailable", error=str(e)
            )
        except VenueRejected as e:
            return ClosePositionOutcome(
                success=False, position_id=position_id, error_code="venue_rejected", error=str(e)
            )

        if result.not_found:
            # a concurrent close may have settled it while we waited
            current = self.positions.get(position_id)
            if current is not None and current.state == "closed":
                return self._already_closed(current)
            return ClosePositionOutcome(
                success=False, position_id=position_id, error_code="not_found", error=result.error
            )
        if result.status == "rejected":
            return ClosePositionOutcome(
                success=False,
                position_id=position_id,
                status="rejected",
                error_code="venue_rejected",
                error=result.error,
            )
        if result.status == "unconfirmed":
            self._record_reconciliation(
                ReconciliationItem(
                    kind="unconfirmed_order",
                    player=record.player,
                    lobby_id=lobby_id,
                    position_id=position_id,
                    detail=result.error or "",
                )
            )
            return ClosePositionOutcome(
                success=False,
                position_id=position_id,
                status="unconfirmed",
                error_code="confirmation_timeout",
                error=result.error,
            )

        realized_value = result.realized_value or 0.0
        try:
            new_balance = self._settle_close(record, realized_value)
        except LedgerSyncFailed as e:
            logger.error("Position %s closed but ledger credit failed: %s", position_id, e)
            self._record_reconciliation(
                ReconciliationItem(
                    kind="close_unledgered",
                    player=record.player,
                    lobby_id=lobby_id,
                    position_id=position_id,
                    amount=realized_value,
                    detail=str(e),
                )
            )
            return ClosePositionOutcome(
                success=True,
                position_id=position_id,
                realized_value=realized_value,
                status="confirmed",
                error_code="ledger_sync_failed",
                error=f"Position closed but ledger update failed: {e}",
            )

        if new_balance is None:
            current = self.positions.get(position_id)
            return self._already_closed(current or record)

        logger.info(
            "%s closed %s in %s; realized %.2f, balance %.2f",
            record.player,
            position_id,
            lobby_id,
            realized_value,
            new_balance,
        )
        return ClosePositionOutcome(
            success=True,
            position_id=position_id,
            realized_value=realized_value,
            new_balance=new_balance,
            status="confirmed",
        )

    async def close_all_positions(
        self,
        player: str,
        lobby_id: str,
        execution_type: str = "MARKET",
        credential: str = "",
    ) -> CloseAllOutcome:
        """Close every open position a player holds in a lobby.

        The player's valuation sync is stopped before anything is sent to
        the provider. Successful closes are credited even when others fail.
        """
        player = normalize_address(player)
        try:
            lobby = self._get_lobby(lobby_id)
        except NotFound as e:
            return CloseAllOutcome(
                success=False, closed_count=0, failed_count=0, total_realized_value=0.0, error=str(e)
            )

        if self.registry.stop(player, lobby_id):
            logger.info("Stopped valuation sync for %s in %s before close-all", player, lobby_id)

        open_records = {r.position_id: r for r in self.positions.list_open(lobby_id, player)}
        if not open_records:
            account = self.ledger.get_account(player, lobby_id)
            return CloseAllOutcome(
                success=True,
                closed_count=0,
                failed_count=0,
                total_realized_value=0.0,
                new_balance=account.balance if account else None,
            )

        provider = self._provider_for(lobby)
        request = CloseAllPositionsRequest(
            player=player,
            lobby_id=lobby_id,
            execution_type=execution_type,
            position_ids=list(open_records),
        )
        try:
            result = await provider.close_all_positions(request, credential)
        except VenueRejected as e:
            return CloseAllOutcome(
                success=False,
                closed_count=0,
                failed_count=len(open_records),
                total_realized_value=0.0,
                error=str(e),
            )

        for outcome in result.results:
            record = open_records.get(outcome.position_id)
            if record is None:
                logger.warning("Provider closed unknown position %s", outcome.position_id)
                continue
            self._settle_bulk_outcome(record, outcome)

        account = self.ledger.get_account(player, lobby_id)
        logger.info(
            "%s close-all in %s: %d closed, %d failed",
            player,
            lobby_id,
            result.closed_count,
            result.failed_count,
        )
        return CloseAllOutcome(
            success=result.success,
            closed_count=result.closed_count,
            failed_count=result.failed_count,
            total_realized_value=result.total_realized_value,
            new_balance=account.balance if account else None,
            results=result.results,
            error=result.error,
        )

    def _settle_bulk_outcome(self, record: PositionRecord, outcome: PositionCloseOutcome) -> None:
        if outcome.status == "unconfirmed":
            self._record_reconciliation(
                ReconciliationItem(
                    kind="unconfirmed_order",
                    player=record.player,
                    lobby_id=record.lobby_id,
                    position_id=record.position_id,
                    detail=outcome.error or "",
                )
            )
            return
        if not outcome.success:
            return

        realized_value = outcome.realized_value or 0.0
        try:
            self._settle_close(record, realized_value)
        except LedgerSyncFailed as e:
            logger.error("Position %s closed but ledger credit failed: %s", record.position_id, e)
            self._record_reconciliation(
                ReconciliationItem(
                    kind="close_unledgered",
                    player=record.player,
                    lobby_id=record.lobby_id,
                    position_id=record.position_id,
                    amount=realized_value,
                    detail=str(e),
                )
            )

    # ==================== Valuation ====================

    def apply_marks(self, player: str, lobby_id: str, snapshots: list[PositionSnapshot]) -> float:
        """Write the latest valuations of a player's open positions.

        Snapshots for positions the lobby does not hold open are ignored,
        and positions without a snapshot keep their previous mark.
        ``value_in_positions`` becomes the sum of the open marks.

        Returns:
            The new value in positions.
        """
        player = normalize_address(player)
        open_ids = {r.position_id for r in self.positions.list_open(lobby_id, player)}
        marks = {s.position_id: s.mark_value for s in snapshots if s.position_id in open_ids}
        with self._data_store.transaction() as conn:
            self.positions.update_marks(marks, conn=conn)
            value = self.positions.sum_open_marks(player, lobby_id, conn=conn)
            self.ledger.set_value_in_positions(player, lobby_id, value, conn=conn)
        logger.debug("Marked %d position(s) for %s in %s: %.2f", len(marks), player, lobby_id, value)
        return value

    async def sync_lobby(self, lobby_id: str, credential: str = "") -> dict[str, float]:
        """Re-mark every player with open positions in a lobby once.

        Returns:
            Mapping of player to new value in positions.

        Raises:
            NotFound: If the lobby does not exist.
        """
        lobby = self._get_lobby(lobby_id)
        provider = self._provider_for(lobby)

        by_player: dict[str, list[PositionRecord]] = {}
        for record in self.positions.list_open(lobby_id):
            by_player.setdefault(record.player, []).append(record)

        values = {}
        for player in by_player:
            try:
                snapshots = await provider.get_positions(player, credential)
            except VenueRejected as e:
                logger.warning("Skipping valuation of %s: %s", player, e)
                continue
            values[player] = self.apply_marks(player, lobby_id, snapshots)
        return values

    def start_valuation_sync(self, player: str, lobby_id: str, credential: str = "") -> bool:
        """Start continuous re-marking of a player's positions.

        Must be called from a running event loop.

        Returns:
            True if a new sync started, False if one was already running.

        Raises:
            NotFound: If the lobby does not exist.
        """
        player = normalize_address(player)
        provider = self._provider_for(self._get_lobby(lobby_id))

        def on_update(snapshots: list[PositionSnapshot]) -> None:
            self.apply_marks(player, lobby_id, snapshots)

        def on_end() -> None:
            self.registry.discard(player, lobby_id)

        started = self.registry.start(
            player,
            lobby_id,
            lambda: provider.subscribe_to_positions(
                player, lobby_id, on_update, credential, on_end=on_end
            ),
        )
        if started:
            logger.info("Started %s valuation sync for %s in %s", provider.name, player, lobby_id)
        return started

    def stop_valuation_sync(self, player: str, lobby_id: str) -> bool:
        """Stop a player's valuation sync.

        Returns:
            True if a sync was running.
        """
        stopped = self.registry.stop(player, lobby_id)
        if stopped:
            logger.info("Stopped valuation sync for %s in %s", normalize_address(player), lobby_id)
        return stopped

    def is_valuation_sync_active(self, player: str, lobby_id: Optional[str] = None) -> bool:
        """Check whether a player is being re-marked, in one lobby or in any."""
        return self.registry.is_active(player, lobby_id)

    # ==================== Queries ====================

    def get_leaderboard(self, lobby_id: str) -> list[Standing]:
        """Rank a lobby's players by total value.

        Raises:
            NotFound: If the lobby does not exist.
        """
        lobby = self._get_lobby(lobby_id)
        return rank_accounts(self.ledger.get_accounts(lobby_id), lobby.buy_in)

    def get_history(
        self, player: str, lobby_id: str, limit: Optional[int] = None
    ) -> list[BalanceHistoryEntry]:
        return self.ledger.get_history(player, lobby_id, limit=limit)

    def get_positions(
        self, player: str, lobby_id: str, state: Optional[str] = None
    ) -> list[PositionRecord]:
        return self.positions.list_positions(lobby_id, player=player, state=state)

    def pending_reconciliations(self, lobby_id: Optional[str] = None) -> list[ReconciliationItem]:
        return self._data_store.get_reconciliation(lobby_id)

    def resolve_reconciliation(self, item_id: int) -> bool:
        return self._data_store.resolve_reconciliation(item_id)


def _leg_entry(snapshot: Optional[PositionSnapshot], long: bool) -> Optional[float]:
    """Entry price of the first long or short leg of a snapshot."""
    if snapshot is None:
        return None
    legs = snapshot.long_assets if long else snapshot.short_assets
    return legs[0].entry_price if legs else None
