"""API response models.

Domain models (``Subscription``, ``AccessDecision``, ``SpecialOfferQuote``...)
are returned directly where they already describe the resource; the wrappers
below cover listings and administrative acknowledgements.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from billing_engine.models.billing import SavedCard
from billing_engine.models.gateway import GatewayInvoice, GatewayPrice
from billing_engine.models.subscription import Subscription


class ErrorResponse(BaseModel):
    """Body of every 4xx/5xx response."""

    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable explanation")
    details: Optional[dict[str, Any]] = Field(None, description="Extra context, e.g. conflicting currency")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "currency_mismatch",
                "message": "Customer already has a subscription in EUR; cannot add a commitment in USD",
                "details": {"requested_currency": "usd", "conflicting_currency": "eur"},
            }
        }


class SubscriptionListResponse(BaseModel):
    owner_id: str
    subscriptions: list[Subscription]


class CardListResponse(BaseModel):
    owner_id: str
    cards: list[SavedCard]


class InvoiceListResponse(BaseModel):
    owner_id: str
    invoices: list[GatewayInvoice]


class PlanListResponse(BaseModel):
    currency: Optional[str] = None
    plans: list[GatewayPrice]


class TimeResponse(BaseModel):
    """Response after moving the virtual clock."""

    previous_time_millis: int = Field(..., description="Virtual time before the change")
    current_time_millis: int = Field(..., description="Virtual time after the change")
    offset_millis: int = Field(..., description="Total offset from real time")
    message: str

    class Config:
        json_schema_extra = {
            "example": {
                "previous_time_millis": 1700000000000,
                "current_time_millis": 1702592000000,
                "offset_millis": 2592000000,
                "message": "Advanced time by 30 days",
            }
        }


class BatchResponse(BaseModel):
    """Outcome of a sweep or reminder run."""

    processed: int = Field(..., description="Number of rows acted on")
    subscription_ids: list[str] = Field(default_factory=list)
    message: str


class ResetResponse(BaseModel):
    subscriptions_cleared: int
    message: str
