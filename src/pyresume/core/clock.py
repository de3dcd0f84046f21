"""
Clock abstraction.

The engine and the in-memory scheduler read time through a Clock so that
tests can move time forward explicitly instead of sleeping.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Source of the current time (always timezone-aware UTC)."""

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return "SystemClock"


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Usage:
        clock = ManualClock()
        clock.advance(10)  # ten seconds later
    """

    def __init__(self, start: datetime | None = None):
        if start is None:
            start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float | timedelta) -> datetime:
        if not isinstance(seconds, timedelta):
            seconds = timedelta(seconds=seconds)
        if seconds < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, when: datetime) -> None:
        if when < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = when

    def __repr__(self) -> str:
        return f"ManualClock({self._now.isoformat()})"
