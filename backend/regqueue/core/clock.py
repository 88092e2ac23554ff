"""
Time source for every queue decision.

All expiry and ordering logic compares against ``now()``, so every process
evaluating queue state must agree on it: values are always timezone-aware
UTC. Tests and simulations swap in a ``FixedClock``.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """
    Manually driven clock.

    Time only moves when ``advance`` or ``set`` is called, which makes
    expiry scenarios deterministic.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime.now(timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now


_clock: Clock = SystemClock()


def get_clock() -> Clock:
    return _clock


def set_clock(clock: Optional[Clock]) -> None:
    """Install a clock for the process. ``None`` restores the system clock."""
    global _clock
    _clock = clock or SystemClock()


def utcnow() -> datetime:
    return _clock.now()
