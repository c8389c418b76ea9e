"""Ledger account and balance history models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class LedgerAccount(BaseModel):
    """A player's cash and mark-to-market position value within one lobby."""

    player: str = Field(..., min_length=1, description="Player wallet address")
    lobby_id: str = Field(..., min_length=1, description="Lobby identifier")
    balance: float = Field(..., ge=0, description="Cash available for new positions")
    value_in_positions: float = Field(default=0.0, description="Current value of open positions")
    joined_at: datetime = Field(default_factory=datetime.now, description="Join timestamp")

    model_config = {"frozen": True}

    @property
    def total_value(self) -> float:
        return self.balance + self.value_in_positions


class BalanceHistoryEntry(BaseModel):
    """Immutable snapshot written on every ledger mutation."""

    id: Optional[int] = Field(default=None, description="Database ID")
    player: str = Field(..., min_length=1, description="Player wallet address")
    lobby_id: str = Field(..., min_length=1, description="Lobby identifier")
    balance: float = Field(..., description="Balance after the mutation")
    value_in_positions: float = Field(..., description="Position value after the mutation")
    timestamp: datetime = Field(..., description="Mutation timestamp")

    model_config = {"frozen": True}

    @property
    def total_value(self) -> float:
        return self.balance + self.value_in_positions
