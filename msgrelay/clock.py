"""
Time source used by every staleness, freshness and backoff decision.

All datetimes handled by the pipeline are naive UTC, matching what the
database columns store and return.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock:
    """
    Manually advanced clock for deterministic tests and replays.

    Example:
        clock = FrozenClock(datetime(2025, 1, 15, 10, 0, 0))
        clock.advance(seconds=301)
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = to_naive_utc(start) if start else SystemClock().now()

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = to_naive_utc(value)

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now
