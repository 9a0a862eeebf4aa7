"""Virtual clock.

Every "now" comparison in the engine (access checks, period ends, offer
windows) goes through this clock so tests and the admin API can move time
forward without waiting.
"""

import threading
import time
from typing import Optional

from billing_engine.logging_config import get_logger

logger = get_logger(__name__)

MILLIS_PER_MINUTE = 60 * 1000
MILLIS_PER_HOUR = 60 * MILLIS_PER_MINUTE
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR


class Clock:
    """Wall clock with a virtual forward offset.

    The offset is applied on top of real time, so the clock keeps ticking
    after it has been advanced. A clock built with ``frozen_at_millis`` does
    not tick and only moves when advanced.
    """

    def __init__(self, frozen_at_millis: Optional[int] = None) -> None:
        self._lock = threading.RLock()
        self._offset_millis = 0
        self._frozen_at_millis = frozen_at_millis

    def _real_now_millis(self) -> int:
        if self._frozen_at_millis is not None:
            return self._frozen_at_millis
        return int(time.time() * 1000)

    def now_millis(self) -> int:
        """Get the current virtual time in milliseconds."""
        with self._lock:
            return self._real_now_millis() + self._offset_millis

    @property
    def offset_millis(self) -> int:
        with self._lock:
            return self._offset_millis

    def advance_time(self, days: int = 0, hours: int = 0, minutes: int = 0) -> dict:
        """Advance virtual time.

        Args:
            days: number of days to advance
            hours: number of hours to advance
            minutes: number of minutes to advance

        Returns:
            Dictionary with old_time_millis, new_time_millis and time_advanced_millis

        Raises:
            ValueError: if any value is negative
        """
        if days < 0 or hours < 0 or minutes < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed")

        delta = days * MILLIS_PER_DAY + hours * MILLIS_PER_HOUR + minutes * MILLIS_PER_MINUTE

        with self._lock:
            old_time = self.now_millis()
            self._offset_millis += delta
            new_time = old_time + delta

        if delta:
            logger.info(
                "time_advanced",
                old_time_millis=old_time,
                new_time_millis=new_time,
                days=days,
                hours=hours,
                minutes=minutes,
            )

        return {
            "old_time_millis": old_time,
            "new_time_millis": new_time,
            "time_advanced_millis": delta,
        }

    def set_time(self, timestamp_millis: int) -> dict:
        """Jump virtual time to a specific timestamp.

        Raises:
            ValueError: If the timestamp is before the current virtual time
        """
        with self._lock:
            old_time = self.now_millis()
            if timestamp_millis < old_time:
                raise ValueError(
                    f"cannot set time backwards, current: {old_time}, requested: {timestamp_millis}"
                )
            self._offset_millis += timestamp_millis - old_time

        logger.info("time_set", old_time_millis=old_time, new_time_millis=timestamp_millis)
        return {"old_time_millis": old_time, "new_time_millis": timestamp_millis}

    def reset(self) -> dict:
        """Reset virtual time back to real current time."""
        with self._lock:
            old_time = self.now_millis()
            self._offset_millis = 0
            new_time = self._real_now_millis()

        logger.info("time_reset", old_time_millis=old_time, new_time_millis=new_time)
        return {"old_time_millis": old_time, "new_time_millis": new_time}


_clock_instance: Optional[Clock] = None
_clock_lock = threading.Lock()


def get_clock() -> Clock:
    global _clock_instance
    if _clock_instance is None:
        with _clock_lock:
            if _clock_instance is None:
                _clock_instance = Clock()
    return _clock_instance


def reset_clock() -> None:
    global _clock_instance
    with _clock_lock:
        _clock_instance = Clock()
