"""
Clock -- injectable source of the current time.

Responsibility:
    Jobs, services and engines ask a Clock for "now"; none of them reads
    the system time directly.  Production wires ``SystemClock``; tests and
    replays wire ``DeterministicClock``.

Architecture position:
    Kernel > Domain.  ``SystemClock`` is the only place the engine touches
    real time.

Invariants enforced:
    - ``now()`` is always timezone-aware UTC.
    - Run dates (renewal day, retry hours, pause age, job timeout) all come
      from the one Clock handed to the orchestrator.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone

DEFAULT_TEST_TIME = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Constructor-injected time source."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def now_utc(self) -> datetime:
        return self.now().astimezone(timezone.utc)

    def today(self) -> date:
        """UTC calendar date; business dates are UTC dates."""
        return self.now_utc().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    Starts at Monday 2026-01-05 12:00 UTC unless given a start time.
    ``advance()`` moves forward, ``set_time()`` jumps, ``tick()`` moves one
    second and returns the new time.
    """

    def __init__(self, fixed_time: datetime | None = None):
        start = fixed_time or DEFAULT_TEST_TIME
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start time")
        self._current = start

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        if time.tzinfo is None:
            raise ValueError("set_time needs a timezone-aware datetime")
        self._current = time

    def advance(self, seconds: int | float = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def tick(self) -> datetime:
        self.advance(1)
        return self._current
