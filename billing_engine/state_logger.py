"""Simple state change logging for subscription rows.

Tracks state transitions with before/after values for debugging and auditing.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from billing_engine.logging_config import get_logger

logger = get_logger(__name__)


def _iso(millis: Optional[int]) -> Optional[str]:
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).isoformat()


def log_subscription_status_change(
    subscription_id: str,
    external_subscription_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription status change.

    Args:
        subscription_id: Local row id
        external_subscription_id: Gateway subscription id
        old_status: Previous status value
        new_status: New status value
        reason: Reason for status change
        **extra_context: Additional context (owner_id, event_id, etc.)
    """
    logger.info(
        "subscription_status_changed",
        subscription_id=subscription_id,
        external_subscription_id=external_subscription_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_special_offer_status_change(
    subscription_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log special offer status change.

    Args:
        subscription_id: Local row id
        old_status: Previous offer status
        new_status: New offer status
        reason: Reason for status change
        **extra_context: Additional context
    """
    logger.info(
        "special_offer_status_changed",
        subscription_id=subscription_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_cancel_flag_change(
    subscription_id: str,
    old_value: bool,
    new_value: bool,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log cancel-at-period-end flag change."""
    logger.info(
        "cancel_at_period_end_changed",
        subscription_id=subscription_id,
        old_value=old_value,
        new_value=new_value,
        reason=reason,
        **extra_context,
    )


def log_period_change(
    subscription_id: str,
    old_end_millis: int,
    new_end_millis: int,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log billing period end change.

    Args:
        subscription_id: Local row id
        old_end_millis: Previous period end
        new_end_millis: New period end
        reason: Reason for change (webhook, deletion, etc.)
        **extra_context: Additional context
    """
    logger.info(
        "period_end_changed",
        subscription_id=subscription_id,
        old_period_end=_iso(old_end_millis),
        new_period_end=_iso(new_end_millis),
        delta_days=round((new_end_millis - old_end_millis) / (1000 * 86400), 2),
        reason=reason,
        **extra_context,
    )
