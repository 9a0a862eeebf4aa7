"""Value objects returned by engine operations."""

from typing import Optional

from pydantic import BaseModel, Field

from billing_engine.models.subscription import Subscription


class ResolvedPaymentMethod(BaseModel):
    """Outcome of attach-or-reuse for a card."""

    payment_method_id: str = Field(..., description="Card id to charge, possibly a previously saved duplicate")
    customer_id: str
    fingerprint: Optional[str] = None
    is_new_card: bool = Field(..., description="False when an already saved card with the same fingerprint was reused")


class SavedCard(BaseModel):
    """Card saved on the owner's gateway customer."""

    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False


class CardDetailsUpdate(BaseModel):
    """Editable card details. Card numbers never pass through the engine."""

    exp_month: Optional[int] = Field(None, ge=1, le=12)
    exp_year: Optional[int] = Field(None, ge=2000)
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def billing_details(self) -> dict:
        return {k: v for k, v in (("name", self.name), ("email", self.email), ("phone", self.phone)) if v}


class CreateSubscriptionResult(BaseModel):
    """Outcome of creating a subscription."""

    subscription: Subscription
    client_secret: Optional[str] = Field(None, description="Payment intent secret for client-side confirmation")
    is_new_card: bool


class SpecialOfferQuote(BaseModel):
    """Offer terms presented to an owner about to cancel."""

    subscription_id: str
    status: str = Field(..., description="Offer status of the live row")
    coupon_id: Optional[str] = None
    description: str
    discount_percent: Optional[float] = None
    discount_amount: Optional[float] = Field(None, description="Fixed discount in major units")
    currency: Optional[str] = None
    discount_start_millis: Optional[int] = None
    discount_end_millis: Optional[int] = None


class ReconciliationResult(BaseModel):
    """Outcome of applying one webhook event."""

    event_id: Optional[str] = None
    event_type: str
    handled: bool = Field(..., description="False for ignored kinds, unknown rows and stale events")
    subscription_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    status: Optional[str] = None
    offer_expired: bool = False
    reason: Optional[str] = None


class AccessDecision(BaseModel):
    """Dashboard access verdict for an owner."""

    granted: bool
    status: Optional[str] = None
    subscription_type: Optional[str] = Field(None, description="special_offer or regular")
    current_period_end_millis: Optional[int] = None
    cancel_at_period_end: bool = False
    message: str


class StatusCounts(BaseModel):
    """Per-status counts over each owner's most recent subscription."""

    total_owners: int = 0
    counts: dict[str, int] = Field(default_factory=dict)
    special_offer_active: int = 0
