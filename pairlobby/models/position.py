"""Position data models.

`PositionRecord` is the lobby's own record of a trade. `PositionSnapshot`
is a live valuation reported by an execution provider.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field
from pydantic.alias_generators import to_camel

PositionState = Literal["open", "closed"]


class PositionRecord(BaseModel):
    """A paired long/short position owned by a player in a lobby."""

    position_id: str = Field(..., min_length=1, description="Provider-issued position identifier")
    player: str = Field(..., min_length=1, description="Owning player address")
    lobby_id: str = Field(..., min_length=1, description="Owning lobby")
    long_asset: str = Field(..., min_length=1, description="Asset held long")
    short_asset: str = Field(..., min_length=1, description="Asset held short")
    leverage: float = Field(..., gt=0, description="Leverage multiplier")
    usd_value: float = Field(..., gt=0, description="Notional USD value")
    margin_used: float = Field(..., ge=0, description="Margin taken from the ledger")
    entry_price_long: Optional[float] = Field(default=None, ge=0, description="Long leg entry price")
    entry_price_short: Optional[float] = Field(default=None, ge=0, description="Short leg entry price")
    state: PositionState = Field(default="open", description="Lifecycle state")
    mark_value: float = Field(default=0.0, description="Latest position value plus unrealized P&L")
    realized_value: Optional[float] = Field(default=None, description="Value credited on close")
    order_id: Optional[str] = Field(default=None, description="Order that opened the position")
    opened_at: datetime = Field(default_factory=datetime.now, description="Open timestamp")
    closed_at: Optional[datetime] = Field(default=None, description="Close timestamp")

    model_config = {"frozen": True}


class AssetLeg(BaseModel):
    """One leg of a paired position as reported by a provider."""

    coin: str = Field(..., min_length=1, description="Asset symbol")
    entry_price: float = Field(..., ge=0, description="Entry price")
    actual_size: float = Field(..., description="Signed size (negative for the short leg)")
    leverage: float = Field(..., gt=0, description="Leverage")
    margin_used: float = Field(default=0.0, description="Margin attributed to the leg")
    position_value: float = Field(default=0.0, description="Leg value")
    unrealized_pnl: float = Field(default=0.0, description="Leg unrealized P&L")
    entry_position_value: float = Field(default=0.0, description="Leg notional at entry")
    initial_weight: float = Field(default=0.5, description="Weight of the leg in the pair")
    funding_paid: float = Field(default=0.0, description="Funding paid on the leg")

    model_config = {"frozen": True, "populate_by_name": True, "alias_generator": to_camel}


class PositionSnapshot(BaseModel):
    """Current valuation of an open position."""

    position_id: str = Field(..., min_length=1, description="Position identifier")
    address: str = Field(default="", description="Owner address")
    execution_flag: str = Field(
        default="",
        validation_alias=AliasChoices("executionFlag", "pearExecutionFlag", "execution_flag"),
        description="Provider execution flag",
    )
    entry_ratio: float = Field(default=0.0, description="Long/short ratio at entry")
    mark_ratio: float = Field(default=0.0, description="Current long/short ratio")
    entry_price_ratio: float = Field(default=0.0, description="Entry price ratio")
    mark_price_ratio: float = Field(default=0.0, description="Mark price ratio")
    entry_position_value: float = Field(default=0.0, description="Notional at entry")
    position_value: float = Field(..., description="Current position value")
    margin_used: float = Field(..., ge=0, description="Margin committed")
    unrealized_pnl: float = Field(..., description="Unrealized P&L")
    unrealized_pnl_percentage: float = Field(default=0.0, description="Unrealized P&L over margin, in percent")
    long_assets: list[AssetLeg] = Field(default_factory=list, description="Long legs")
    short_assets: list[AssetLeg] = Field(default_factory=list, description="Short legs")
    created_at: Optional[datetime] = Field(default=None, description="Open timestamp")
    updated_at: Optional[datetime] = Field(default=None, description="Valuation timestamp")

    model_config = {"frozen": True, "populate_by_name": True, "alias_generator": to_camel}

    @property
    def mark_value(self) -> float:
        """Value the position would realize if closed now."""
        return self.position_value + self.unrealized_pnl

    def matches(self, long_asset: str, short_asset: str, leverage: float) -> bool:
        """Check whether this snapshot looks like a pair opened with these terms."""
        return (
            any(leg.coin == long_asset for leg in self.long_assets)
            and any(leg.coin == short_asset for leg in self.short_assets)
            and any(leg.leverage == leverage for leg in self.long_assets)
        )
