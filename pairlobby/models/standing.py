"""Leaderboard standing model."""

from pydantic import BaseModel, Field


class Standing(BaseModel):
    """One row of a lobby leaderboard."""

    rank: int = Field(..., ge=1, description="1-based rank")
    player: str = Field(..., min_length=1, description="Player wallet address")
    balance: float = Field(..., description="Cash balance")
    value_in_positions: float = Field(..., description="Value of open positions")
    total_value: float = Field(..., description="Balance plus value in positions")
    pnl: float = Field(..., description="Total value minus buy-in")

    model_config = {"frozen": True}
