"""Local identifier generation utilities.

Generates local subscription row ids and the synthetic external ids used by
special-offer pseudo-subscriptions. Gateway-assigned ids are never produced
here.
"""

import re
import time
import uuid
from typing import Optional

SUBSCRIPTION_ID_PREFIX = "sub_local"
SPECIAL_OFFER_ID_PREFIX = "so_local"

_LOCAL_ID_PATTERN = re.compile(r"^[a-z_]+_[a-f0-9]{16}_\d{13}$")


def _generate(prefix: str) -> str:
    # Format: {prefix}_{uuid16}_{timestamp_millis}
    token_id = uuid.uuid4().hex[:16]
    timestamp = int(time.time() * 1000)
    return f"{prefix}_{token_id}_{timestamp}"


def generate_subscription_id(prefix: Optional[str] = None) -> str:
    """Generate a unique local subscription row id.

    Example: sub_local_a1b2c3d4e5f6a7b8_1700000000000

    Args:
        prefix: Id prefix (defaults to SUBSCRIPTION_ID_PREFIX)

    Returns:
        Unique local id string
    """
    return _generate(prefix or SUBSCRIPTION_ID_PREFIX)


def generate_special_offer_subscription_id() -> str:
    """Generate a synthetic external id for a special-offer pseudo-subscription.

    Rows carrying this id have no gateway counterpart and must never be sent
    to the gateway.

    Example: so_local_a1b2c3d4e5f6a7b8_1700000000000
    """
    return _generate(SPECIAL_OFFER_ID_PREFIX)


def is_special_offer_subscription_id(external_id: Optional[str]) -> bool:
    """Check whether an external subscription id is a synthetic pseudo-subscription id."""
    if not external_id or not isinstance(external_id, str):
        return False
    return external_id.startswith(f"{SPECIAL_OFFER_ID_PREFIX}_")


def validate_local_id(value: str) -> bool:
    """Validate the format of a locally generated id."""
    if not value or not isinstance(value, str):
        return False
    return bool(_LOCAL_ID_PATTERN.match(value))


def extract_id_timestamp(value: str) -> Optional[int]:
    """Extract the creation timestamp (millis) embedded in a local id."""
    if not validate_local_id(value):
        return None
    try:
        return int(value.rsplit("_", 1)[-1])
    except ValueError:
        return None
