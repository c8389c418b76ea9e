"""Execution request and result models shared by all providers."""

from typing import Literal, Optional

from pydantic import BaseModel, Field

from pairlobby.models.position import PositionSnapshot

ExecutionType = Literal["MARKET", "SYNC", "TWAP"]
CloseExecutionType = Literal["MARKET", "TWAP"]
Confirmation = Literal["confirmed", "unconfirmed", "rejected"]


class CreatePositionRequest(BaseModel):
    """A paired long/short position to submit."""

    player: str = Field(..., min_length=1, description="Owner address")
    lobby_id: str = Field(..., min_length=1, description="Lobby the position belongs to")
    long_asset: str = Field(..., min_length=1, description="Asset to buy")
    short_asset: str = Field(..., min_length=1, description="Asset to sell")
    leverage: float = Field(..., gt=0, description="Leverage multiplier")
    usd_value: float = Field(..., gt=0, description="Notional USD value")
    slippage: float = Field(default=0.01, ge=0, description="Maximum slippage fraction")
    execution_type: ExecutionType = Field(default="MARKET", description="Venue execution type")

    model_config = {"frozen": True}

    @property
    def margin_cost(self) -> float:
        return self.usd_value / self.leverage


class CreatePositionResult(BaseModel):
    """Provider outcome of a create request."""

    success: bool = Field(..., description="True only when the fill was confirmed")
    status: Confirmation = Field(..., description="Confirmation state")
    order_id: Optional[str] = Field(default=None, description="Venue order identifier")
    position_id: Optional[str] = Field(default=None, description="Confirmed position identifier")
    snapshot: Optional[PositionSnapshot] = Field(default=None, description="Valuation at confirmation")
    error: Optional[str] = Field(default=None, description="Failure detail")

    model_config = {"frozen": True}


class ClosePositionRequest(BaseModel):
    """Closure of one position."""

    position_id: str = Field(..., min_length=1, description="Position to close")
    player: str = Field(default="", description="Owner address")
    lobby_id: str = Field(default="", description="Lobby the position belongs to")
    execution_type: CloseExecutionType = Field(default="MARKET", description="Venue execution type")
    twap_duration: Optional[int] = Field(default=None, ge=0, description="TWAP duration in seconds")
    twap_interval_seconds: Optional[int] = Field(default=None, ge=0, description="TWAP slice interval")
    randomize_execution: Optional[bool] = Field(default=None, description="Randomize TWAP slices")
    referral_code: Optional[str] = Field(default=None, description="Venue referral code")

    model_config = {"frozen": True}


class ClosePositionResult(BaseModel):
    """Provider outcome of a close request."""

    success: bool = Field(..., description="True only when closure was confirmed")
    status: Confirmation = Field(..., description="Confirmation state")
    realized_value: Optional[float] = Field(default=None, description="Margin plus unrealized P&L at close")
    not_found: bool = Field(default=False, description="Provider does not know the position")
    error: Optional[str] = Field(default=None, description="Failure detail")

    model_config = {"frozen": True}


class CloseAllPositionsRequest(BaseModel):
    """Closure of every position an owner holds in a lobby."""

    player: str = Field(..., min_length=1, description="Owner address")
    lobby_id: str = Field(..., min_length=1, description="Lobby identifier")
    execution_type: CloseExecutionType = Field(default="MARKET", description="Venue execution type")
    position_ids: Optional[list[str]] = Field(
        default=None, description="Restrict the close to these positions; all when omitted"
    )

    model_config = {"frozen": True}


class PositionCloseOutcome(BaseModel):
    """Per-position entry of a bulk close."""

    position_id: str = Field(..., description="Position identifier")
    success: bool = Field(..., description="Closure confirmed")
    status: Confirmation = Field(..., description="Confirmation state")
    realized_value: Optional[float] = Field(default=None, description="Realized value when closed")
    error: Optional[str] = Field(default=None, description="Failure detail")

    model_config = {"frozen": True}


class CloseAllPositionsResult(BaseModel):
    """Provider outcome of a bulk close."""

    success: bool = Field(..., description="True when no position failed")
    closed_count: int = Field(..., ge=0, description="Positions closed")
    failed_count: int = Field(..., ge=0, description="Positions that failed to close")
    total_realized_value: float = Field(..., description="Sum of realized values")
    results: list[PositionCloseOutcome] = Field(default_factory=list, description="Per-position results")
    error: Optional[str] = Field(default=None, description="Summary of failures")

    model_config = {"frozen": True}

    @classmethod
    def from_results(cls, results: list[PositionCloseOutcome]) -> "CloseAllPositionsResult":
        """Aggregate per-position outcomes into counts and totals."""
        closed = [r for r in results if r.success]
        failed_count = len(results) - len(closed)
        return cls(
            success=failed_count == 0,
            closed_count=len(closed),
            failed_count=failed_count,
            total_realized_value=sum(r.realized_value or 0.0 for r in closed),
            results=results,
            error=f"{failed_count} positions failed to close" if failed_count else None,
        )
