"""Data models for pairlobby."""

from pairlobby.models.ledger import BalanceHistoryEntry, LedgerAccount
from pairlobby.models.lobby import Lobby
from pairlobby.models.order import (
    ClosePositionRequest,
    ClosePositionResult,
    CloseAllPositionsRequest,
    CloseAllPositionsResult,
    Confirmation,
    CreatePositionRequest,
    CreatePositionResult,
    ExecutionType,
    PositionCloseOutcome,
)
from pairlobby.models.outcome import (
    CloseAllOutcome,
    ClosePositionOutcome,
    ErrorCode,
    OpenPositionOutcome,
    ReconciliationItem,
)
from pairlobby.models.position import AssetLeg, PositionRecord, PositionSnapshot, PositionState
from pairlobby.models.quote import PriceQuote
from pairlobby.models.standing import Standing

__all__ = [
    "AssetLeg",
    "BalanceHistoryEntry",
    "CloseAllOutcome",
    "CloseAllPositionsRequest",
    "CloseAllPositionsResult",
    "ClosePositionOutcome",
    "ClosePositionRequest",
    "ClosePositionResult",
    "Confirmation",
    "CreatePositionRequest",
    "CreatePositionResult",
    "ErrorCode",
    "ExecutionType",
    "LedgerAccount",
    "Lobby",
    "OpenPositionOutcome",
    "PositionCloseOutcome",
    "PositionRecord",
    "PositionSnapshot",
    "PositionState",
    "PriceQuote",
    "ReconciliationItem",
    "Standing",
]
