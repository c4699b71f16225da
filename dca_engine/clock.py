"""
DCA Engine - Clock.

Testable UTC clock. Placement pacing reads time only through
this interface so tests can step time deterministically.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Abstract interface for the engine clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass


class SystemClock(Clock):
    """Production clock using actual system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class MockClock(Clock):
    """
    Mock clock for testing.

    Time only moves when advance() or set_time() is called.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        self._time = initial_time or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._time

    def set_time(self, new_time: datetime) -> None:
        if new_time.tzinfo is None:
            new_time = new_time.replace(tzinfo=timezone.utc)
        self._time = new_time

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (minutes, hours, ...)
        """
        self._time = self._time + timedelta(seconds=seconds, **kwargs)
