"""Subscription entity and lifecycle enums.

The subscription row is the local projection of a gateway subscription (or of
a special-offer pseudo-subscription). It is the single source of truth for
access-control decisions.
"""

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from billing_engine.errors import OfferNotAvailableError


class SubscriptionStatus(str, Enum):
    """Subscription status values, matching the gateway's vocabulary."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"


class SpecialOfferStatus(str, Enum):
    """One-time special offer progression for a subscription row."""

    NONE = "none"
    OFFERED = "offered"
    APPLIED = "applied"
    DECLINED = "declined"
    EXPIRED = "expired"


# Statuses that grant dashboard access while the period end is in the future
ACCESS_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

# Forward-only offer transitions
SPECIAL_OFFER_TRANSITIONS = {
    SpecialOfferStatus.NONE: frozenset({SpecialOfferStatus.OFFERED}),
    SpecialOfferStatus.OFFERED: frozenset({SpecialOfferStatus.APPLIED, SpecialOfferStatus.DECLINED}),
    SpecialOfferStatus.APPLIED: frozenset({SpecialOfferStatus.EXPIRED}),
    SpecialOfferStatus.DECLINED: frozenset({SpecialOfferStatus.EXPIRED}),
    SpecialOfferStatus.EXPIRED: frozenset(),
}


def _now_millis() -> int:
    return int(time.time() * 1000)


def status_from_gateway(raw_status: str, paused: bool = False) -> SubscriptionStatus:
    """Map a gateway status onto the local enum.

    An active pause forces ``paused``: the gateway represents pause as a
    collection behavior, not as a status value.

    Raises:
        ValueError: If the gateway reports a status this engine does not know
    """
    if paused:
        return SubscriptionStatus.PAUSED
    return SubscriptionStatus(raw_status)


class Subscription(BaseModel):
    """Local subscription row."""

    id: str = Field(..., description="Local row id")
    owner_id: str = Field(..., description="Business/account owning this subscription")
    external_subscription_id: str = Field(..., description="Gateway subscription id (or synthetic so_local_ id)")
    external_customer_id: str = Field(..., description="Gateway customer id")

    status: SubscriptionStatus = Field(..., description="Current subscription status")
    current_period_start_millis: int = Field(..., description="Billing period start (Unix millis)")
    current_period_end_millis: int = Field(..., description="Billing period end (Unix millis)")
    cancel_at_period_end: bool = Field(default=False, description="Scheduled to cancel at period end")

    # Plan snapshot taken at creation time
    price_id: str = Field(..., description="Gateway price id")
    amount: float = Field(..., description="Price per cycle in major currency units")
    currency: str = Field(default="usd", description="Lowercase ISO 4217 currency code")
    interval: str = Field(default="month", description="Recurrence unit: day, week, month or year")
    interval_count: int = Field(default=1, description="Units per billing cycle")

    payment_method_id: Optional[str] = Field(None, description="Instrument currently charged")
    last_payment_at_millis: Optional[int] = Field(None, description="Last successful invoice payment")

    # Special offer sub-state
    is_special_offer: bool = Field(default=False, description="Row is a special-offer pseudo-subscription")
    special_offer_status: SpecialOfferStatus = Field(default=SpecialOfferStatus.NONE)
    special_offer_coupon_id: Optional[str] = Field(None)
    special_offer_discount_percent: Optional[float] = Field(None)
    special_offer_discount_amount: Optional[float] = Field(None, description="Fixed discount in major units")
    special_offer_description: Optional[str] = Field(None)
    special_offer_discount_start_millis: Optional[int] = Field(None)
    special_offer_discount_end_millis: Optional[int] = Field(None)
    special_offer_applied_at_millis: Optional[int] = Field(None)
    original_subscription_id: Optional[str] = Field(None, description="Row this one renews after a special offer")

    # Bookkeeping
    last_event_created_millis: Optional[int] = Field(None, description="Creation time of the newest applied gateway event")
    deleted_at_millis: Optional[int] = Field(None, description="Creation time of the gateway deletion event, once received")
    created_at_millis: int = Field(default_factory=_now_millis)
    updated_at_millis: int = Field(default_factory=_now_millis)

    @property
    def has_used_offer(self) -> bool:
        """True once the one-time offer was applied on this row, even if it later expired."""
        return (
            self.special_offer_status == SpecialOfferStatus.APPLIED
            or self.special_offer_applied_at_millis is not None
        )

    def has_future_period_end(self, now_millis: int) -> bool:
        return self.current_period_end_millis > now_millis

    def grants_access(self, now_millis: int) -> bool:
        """Check whether this row grants dashboard access at ``now_millis``."""
        return self.status in ACCESS_STATUSES and self.has_future_period_end(now_millis)

    def offer_window_elapsed(self, now_millis: int) -> bool:
        """Check whether the special offer discount window has ended."""
        end = self.special_offer_discount_end_millis
        return end is not None and end <= now_millis

    def set_status(self, new_status: SubscriptionStatus, reason: Optional[str] = None) -> None:
        """Change subscription status and log the transition.

        Args:
            new_status: Status to transition to
            reason: Reason for status change
        """
        from billing_engine.state_logger import log_subscription_status_change

        old_status = self.status
        if old_status != new_status:
            self.status = new_status
            log_subscription_status_change(
                subscription_id=self.id,
                external_subscription_id=self.external_subscription_id,
                old_status=old_status.value,
                new_status=new_status.value,
                reason=reason,
                owner_id=self.owner_id,
            )

    def set_cancel_at_period_end(self, value: bool, reason: Optional[str] = None) -> None:
        from billing_engine.state_logger import log_cancel_flag_change

        old_value = self.cancel_at_period_end
        if old_value != value:
            self.cancel_at_period_end = value
            log_cancel_flag_change(
                subscription_id=self.id,
                old_value=old_value,
                new_value=value,
                reason=reason,
                owner_id=self.owner_id,
            )

    def set_special_offer_status(
        self, new_status: SpecialOfferStatus, reason: Optional[str] = None
    ) -> None:
        """Advance the special offer status.

        Only forward transitions along none -> offered -> applied|declined -> expired
        are allowed. Re-applying the current status is a no-op.

        Raises:
            OfferNotAvailableError: If the transition would move backwards or skip a step
        """
        from billing_engine.state_logger import log_special_offer_status_change

        old_status = self.special_offer_status
        if old_status == new_status:
            return
        if new_status not in SPECIAL_OFFER_TRANSITIONS[old_status]:
            raise OfferNotAvailableError(
                f"Special offer cannot move from {old_status.value} to {new_status.value}",
                owner_id=self.owner_id,
            )
        self.special_offer_status = new_status
        log_special_offer_status_change(
            subscription_id=self.id,
            old_status=old_status.value,
            new_status=new_status.value,
            reason=reason,
            owner_id=self.owner_id,
        )

    def set_period(
        self,
        start_millis: int,
        end_millis: int,
        reason: str,
        allow_rewind: bool = False,
    ) -> bool:
        """Update the billing window.

        The period end never moves backwards unless ``allow_rewind`` is set
        (deletion sets the end to "now").

        Returns:
            True if the window was changed
        """
        from billing_engine.state_logger import log_period_change

        if end_millis < self.current_period_end_millis and not allow_rewind:
            return False

        old_end = self.current_period_end_millis
        changed = (
            start_millis != self.current_period_start_millis or end_millis != old_end
        )
        self.current_period_start_millis = start_millis
        self.current_period_end_millis = end_millis
        if end_millis != old_end:
            log_period_change(
                subscription_id=self.id,
                old_end_millis=old_end,
                new_end_millis=end_millis,
                reason=reason,
                owner_id=self.owner_id,
            )
        return changed

    class Config:
        json_schema_extra = {
            "example": {
                "id": "sub_local_a1b2c3d4e5f6a7b8_1700000000000",
                "owner_id": "owner-123",
                "external_subscription_id": "sub_1OaBcDeFgHiJkLmN",
                "external_customer_id": "cus_PqRsTuVwXyZ",
                "status": "active",
                "current_period_start_millis": 1700000000000,
                "current_period_end_millis": 1702592000000,
                "cancel_at_period_end": False,
                "price_id": "price_monthly_usd",
                "amount": 49.0,
                "currency": "usd",
                "interval": "month",
                "interval_count": 1,
                "payment_method_id": "pm_1OaBcD",
                "is_special_offer": False,
                "special_offer_status": "none",
            }
        }
