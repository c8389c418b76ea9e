"""Lobby metadata model."""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field, model_validator

MAX_LOBBY_DURATION = timedelta(hours=24)


class Lobby(BaseModel):
    """A time-boxed trading competition with a fixed buy-in."""

    id: str = Field(..., min_length=1, description="Lobby identifier")
    name: str = Field(..., min_length=1, description="Display name")
    buy_in: float = Field(..., gt=0, description="Starting balance for every player")
    is_demo: bool = Field(default=True, description="Use the simulated execution path")
    start_time: Optional[datetime] = Field(default=None, description="Trading window start")
    end_time: Optional[datetime] = Field(default=None, description="Trading window end")
    created_at: datetime = Field(default_factory=datetime.now, description="Creation timestamp")

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_window(self) -> "Lobby":
        if self.start_time and self.end_time:
            if self.end_time <= self.start_time:
                raise ValueError("End time must be after start time")
            if self.end_time - self.start_time > MAX_LOBBY_DURATION:
                raise ValueError("Lobby duration cannot exceed 24 hours")
        return self

    def is_running(self, now: Optional[datetime] = None) -> bool:
        """Check whether `now` falls inside the trading window.

        Lobbies without a window are always running.
        """
        now = now or datetime.now()
        if self.start_time and now < self.start_time:
            return False
        if self.end_time and now >= self.end_time:
            return False
        return True
