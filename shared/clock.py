"""
Clock Utilities

Time sources shared by the assembly engine. Every component that needs
"now" takes a clock object instead of calling time.time() directly, so the
settle/retry timers, scan cooldown and scale staleness checks can all be
driven deterministically from tests with VirtualClock.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union

TimestampLike = Union[int, float, datetime, str, None]


class SystemClock:
    """Wall-clock time in epoch seconds."""

    def now(self) -> float:
        return time.time()


class VirtualClock:
    """
    Manually advanced clock for tests and simulations.

    Example:
        >>> clock = VirtualClock(start=100.0)
        >>> clock.advance(1.5)
        >>> clock.now()
        101.5
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("VirtualClock cannot go backwards")
        self._now += seconds

    def set(self, value: float) -> None:
        self._now = float(value)


def parse_timestamp(timestamp_str: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC.

    Returns:
        timezone-aware datetime, or None if the string is not a timestamp
    """
    if not timestamp_str:
        return None

    try:
        dt = datetime.fromisoformat(timestamp_str)
    except (ValueError, TypeError):
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_epoch_seconds(value: TimestampLike) -> Optional[float]:
    """Normalize a sample timestamp (epoch number, datetime or ISO string) to epoch seconds."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Scale services report milliseconds
        return value / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    dt = parse_timestamp(str(value))
    return dt.timestamp() if dt is not None else None
