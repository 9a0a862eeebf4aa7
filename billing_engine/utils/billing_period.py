"""Billing interval utilities.

Converts gateway recurrence units (day/week/month/year) into milliseconds
for period and discount window calculations.
"""

# Milliseconds in common time units
MILLIS_PER_SECOND = 1000
MILLIS_PER_MINUTE = 60 * MILLIS_PER_SECOND
MILLIS_PER_HOUR = 60 * MILLIS_PER_MINUTE
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR
MILLIS_PER_WEEK = 7 * MILLIS_PER_DAY
MILLIS_PER_MONTH = 30 * MILLIS_PER_DAY  # Standard approximation for billing
MILLIS_PER_YEAR = 365 * MILLIS_PER_DAY  # Standard approximation for billing

INTERVAL_MILLIS = {
    "day": MILLIS_PER_DAY,
    "week": MILLIS_PER_WEEK,
    "month": MILLIS_PER_MONTH,
    "year": MILLIS_PER_YEAR,
}


def interval_to_millis(interval: str, interval_count: int = 1) -> int:
    """Convert a gateway recurrence interval to milliseconds.

    Months are approximated as 30 days and years as 365 days.

    Args:
        interval: Interval unit as reported by the gateway ("day", "week", "month", "year")
        interval_count: Number of units per billing cycle

    Returns:
        Duration in milliseconds

    Raises:
        ValueError: If the unit is unknown or the count is not positive

    Examples:
        >>> interval_to_millis("month")
        2592000000
        >>> interval_to_millis("week", 2)
        1209600000
    """
    if not interval or not isinstance(interval, str):
        raise ValueError("Interval must be a non-empty string")

    unit = interval.strip().lower()
    if unit not in INTERVAL_MILLIS:
        raise ValueError(
            f"Unsupported interval: '{interval}'. "
            f"Supported intervals: {', '.join(INTERVAL_MILLIS)}"
        )

    if interval_count <= 0:
        raise ValueError(f"Interval count must be positive, got: {interval_count}")

    return interval_count * INTERVAL_MILLIS[unit]


def add_billing_interval(start_millis: int, interval: str, interval_count: int = 1) -> int:
    """Return the end of one billing interval starting at ``start_millis``."""
    return start_millis + interval_to_millis(interval, interval_count)
