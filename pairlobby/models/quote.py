"""Price quote model."""

from datetime import datetime

from pydantic import BaseModel, Field


class PriceQuote(BaseModel):
    """A mark price observed from the market data feed."""

    asset: str = Field(..., min_length=1, description="Asset symbol as traded in the lobby")
    price: float = Field(..., gt=0, description="Last price in USD")
    observed_at: datetime = Field(..., description="When the price was fetched")

    model_config = {"frozen": True}
