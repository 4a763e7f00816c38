"""
Clock -- injectable time source.

Services never call ``datetime.now()`` or ``date.today()`` directly: the
creation pipeline compares the discrepancy date against ``clock.today()``,
and every timestamp written to a declaration or an audit event comes from
the injected clock. Tests substitute ``DeterministicClock``.
"""

import time
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """``now()`` is always timezone-aware UTC."""

    @abstractmethod
    def now(self) -> datetime: ...

    def today(self) -> date:
        """Server calendar date, derived from ``now()``."""
        return self.now().date()

    def monotonic(self) -> float:
        """Seconds on a monotonic scale, used for cache expiry."""
        return self.now().timestamp()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class DeterministicClock(Clock):
    """
    Test clock frozen at 2024-01-01 12:00 UTC unless told otherwise.

    Time only moves through ``advance()``; ``monotonic()`` follows it, so
    cache expiry can be driven from a test.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._start = fixed_time or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._offset = timedelta()

    def now(self) -> datetime:
        return self._start + self._offset

    def advance(self, seconds: float = 1) -> None:
        self._offset += timedelta(seconds=seconds)
