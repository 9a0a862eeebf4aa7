"""Utility functions and helpers for the billing engine."""

from billing_engine.utils.billing_period import (
    add_billing_interval,
    interval_to_millis,
)
from billing_engine.utils.id_generator import (
    extract_id_timestamp,
    generate_special_offer_subscription_id,
    generate_subscription_id,
    is_special_offer_subscription_id,
    validate_local_id,
)

__all__ = [
    # Id generation
    "generate_subscription_id",
    "generate_special_offer_subscription_id",
    "is_special_offer_subscription_id",
    "validate_local_id",
    "extract_id_timestamp",
    # Billing intervals
    "interval_to_millis",
    "add_billing_interval",
]
