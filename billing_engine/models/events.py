"""Webhook envelope and outbound notification models."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class WebhookEventType(str, Enum):
    """Gateway event kinds the reconciliation processor understands."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

    @classmethod
    def parse(cls, raw_type: str) -> Optional["WebhookEventType"]:
        """Normalize a gateway event type string.

        Stripe prefixes subscription events with ``customer.`` and also emits
        ``invoice.paid`` alongside ``invoice.payment_succeeded``.

        Returns:
            The matching event type, or None for kinds this engine ignores
        """
        if not raw_type:
            return None
        normalized = raw_type.removeprefix("customer.")
        normalized = EVENT_TYPE_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            return None


EVENT_TYPE_ALIASES = {
    "invoice.paid": WebhookEventType.INVOICE_PAYMENT_SUCCEEDED.value,
}


class WebhookEventData(BaseModel):
    """The ``data`` section of an event envelope."""

    object: dict[str, Any] = Field(..., description="The affected gateway resource")
    previous_attributes: Optional[dict[str, Any]] = None


class WebhookEvent(BaseModel):
    """A verified, parsed gateway event envelope."""

    id: Optional[str] = Field(None, description="Gateway event id")
    type: str = Field(..., description="Event kind string")
    created: Optional[int] = Field(None, description="Event creation time (Unix seconds)")
    livemode: bool = False
    data: WebhookEventData

    @property
    def created_millis(self) -> Optional[int]:
        return self.created * 1000 if self.created is not None else None

    @property
    def kind(self) -> Optional[WebhookEventType]:
        return WebhookEventType.parse(self.type)

    class Config:
        json_schema_extra = {
            "example": {
                "id": "evt_1OaBcDeFg",
                "type": "customer.subscription.updated",
                "created": 1700000000,
                "data": {
                    "object": {
                        "id": "sub_1OaBcDeFgHiJkLmN",
                        "object": "subscription",
                        "status": "active",
                        "current_period_start": 1700000000,
                        "current_period_end": 1702592000,
                        "cancel_at_period_end": False,
                    }
                },
            }
        }


class NotificationTemplate(str, Enum):
    """Templated messages sent through the notification collaborator."""

    SPECIAL_OFFER_EXPIRED = "special_offer_expired"
    SPECIAL_OFFER_EXPIRING = "special_offer_expiring"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class NotificationMessage(BaseModel):
    """Fire-and-forget "send templated message" request published to Pub/Sub."""

    version: str = Field(default="1.0")
    template: NotificationTemplate
    owner_id: str = Field(..., description="Recipient account; the mailer resolves the address")
    subscription_id: Optional[str] = Field(None, description="Local subscription row id")
    event_time_millis: int
    context: dict[str, Any] = Field(default_factory=dict, description="Template variables")
