"""Injectable time source.

Engine code never calls ``datetime.now()`` directly; it asks a Clock, so
tests can pin time and move it forward to cross SLA boundaries.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(ABC):
    """Abstract clock interface."""

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock(Clock):
    """Production clock that returns actual system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Test clock with controlled time."""

    def __init__(self, start: datetime | None = None):
        self._now = as_utc(start) if start else datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, hours: float = 0, minutes: float = 0, seconds: float = 0) -> datetime:
        """Move time forward and return the new instant."""
        self._now = self._now + timedelta(hours=hours, minutes=minutes, seconds=seconds)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = as_utc(value)
