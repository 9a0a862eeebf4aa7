"""Pydantic models for API requests, responses, and domain objects."""

# Subscription models
from .subscription import (
    SpecialOfferStatus,
    Subscription,
    SubscriptionStatus,
)

# Gateway projections
from .gateway import (
    GatewayCoupon,
    GatewayCustomer,
    GatewayInvoice,
    GatewayPaymentMethod,
    GatewayPrice,
    GatewaySubscription,
    MonetaryCommitment,
)

# Event models
from .events import (
    NotificationMessage,
    NotificationTemplate,
    WebhookEvent,
    WebhookEventType,
)

# Engine results
from .billing import (
    AccessDecision,
    CreateSubscriptionResult,
    ReconciliationResult,
    SavedCard,
    SpecialOfferQuote,
    StatusCounts,
)

# Configuration
from .settings import BillingSettings

__all__ = [
    # Subscription
    "SpecialOfferStatus",
    "Subscription",
    "SubscriptionStatus",
    # Gateway
    "GatewayCoupon",
    "GatewayCustomer",
    "GatewayInvoice",
    "GatewayPaymentMethod",
    "GatewayPrice",
    "GatewaySubscription",
    "MonetaryCommitment",
    # Events
    "NotificationMessage",
    "NotificationTemplate",
    "WebhookEvent",
    "WebhookEventType",
    # Results
    "AccessDecision",
    "CreateSubscriptionResult",
    "ReconciliationResult",
    "SavedCard",
    "SpecialOfferQuote",
    "StatusCounts",
    # Configuration
    "BillingSettings",
]
