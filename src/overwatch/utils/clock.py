"""
Time sources for Overwatch.

Every component reads time through a clock so that monitoring loops,
heartbeat staleness and circuit cooldowns can be driven by tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union


class Clock:
    """Wall-clock time source (UTC)."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


SystemClock = Clock


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: Union[int, float, timedelta]) -> datetime:
        """Move time forward and return the new current time."""
        if not isinstance(seconds, timedelta):
            seconds = timedelta(seconds=seconds)
        if seconds < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage."""
    return value.isoformat(timespec="microseconds") if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp, assuming UTC when no offset was stored."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__ = [
    'Clock',
    'SystemClock',
    'ManualClock',
    'to_iso',
    'from_iso',
]
