"""Structured results returned at the position manager boundary."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from pairlobby.models.order import Confirmation, PositionCloseOutcome

ErrorCode = Literal[
    "insufficient_funds",
    "not_found",
    "venue_rejected",
    "confirmation_timeout",
    "price_unavailable",
    "ledger_sync_failed",
]

ReconciliationKind = Literal["open_unledgered", "close_unledgered", "unconfirmed_order"]


class OpenPositionOutcome(BaseModel):
    """Result of opening a position for a player."""

    success: bool = Field(..., description="Trade exists on the execution side")
    position_id: Optional[str] = Field(default=None, description="Confirmed position identifier")
    order_id: Optional[str] = Field(default=None, description="Submitted order identifier")
    margin_used: Optional[float] = Field(default=None, description="Margin debited from the ledger")
    new_balance: Optional[float] = Field(default=None, description="Ledger balance after the debit")
    status: Optional[Confirmation] = Field(default=None, description="Provider confirmation state")
    error_code: Optional[ErrorCode] = Field(default=None, description="Failure or warning category")
    error: Optional[str] = Field(default=None, description="Failure or warning detail")

    model_config = {"frozen": True}


class ClosePositionOutcome(BaseModel):
    """Result of closing one position."""

    success: bool = Field(..., description="Position is closed on the execution side")
    position_id: str = Field(..., description="Position identifier")
    already_closed: bool = Field(default=False, description="Position was closed before this call")
    realized_value: Optional[float] = Field(default=None, description="Value credited to the ledger")
    new_balance: Optional[float] = Field(default=None, description="Ledger balance after the credit")
    status: Optional[Confirmation] = Field(default=None, description="Provider confirmation state")
    error_code: Optional[ErrorCode] = Field(default=None, description="Failure or warning category")
    error: Optional[str] = Field(default=None, description="Failure or warning detail")

    model_config = {"frozen": True}


class CloseAllOutcome(BaseModel):
    """Result of closing every open position of a player."""

    success: bool = Field(..., description="True when no position failed")
    closed_count: int = Field(..., ge=0, description="Positions closed")
    failed_count: int = Field(..., ge=0, description="Positions that failed to close")
    total_realized_value: float = Field(..., description="Sum of realized values")
    new_balance: Optional[float] = Field(default=None, description="Ledger balance after all credits")
    results: list[PositionCloseOutcome] = Field(default_factory=list, description="Per-position results")
    error: Optional[str] = Field(default=None, description="Summary of failures")

    model_config = {"frozen": True}


class ReconciliationItem(BaseModel):
    """A venue-side event the ledger could not record, kept for an operator."""

    id: Optional[int] = Field(default=None, description="Database ID")
    kind: ReconciliationKind = Field(..., description="What needs repair")
    player: str = Field(..., description="Player address")
    lobby_id: str = Field(..., description="Lobby identifier")
    order_id: Optional[str] = Field(default=None, description="Order identifier")
    position_id: Optional[str] = Field(default=None, description="Position identifier")
    amount: Optional[float] = Field(default=None, description="Ledger amount that was not applied")
    detail: str = Field(default="", description="Failure detail")
    created_at: datetime = Field(default_factory=datetime.now, description="When the item was recorded")
    resolved: bool = Field(default=False, description="Operator marked the item as repaired")

    model_config = {"frozen": True}
