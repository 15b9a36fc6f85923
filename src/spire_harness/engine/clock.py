# src/spire_harness/engine/clock.py
"""Clock abstraction for testable timeout logic.

Provides a Clock protocol that abstracts time access and sleeping, so the
readiness prober and run deadline can be tested deterministically.

Production code uses SystemClock (the default).
Tests inject MockClock, whose sleep() advances time instantly.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Abstract clock for polling and deadlines.

    Implementations:
    - SystemClock: time.monotonic() / time.sleep() (production)
    - MockClock: controllable time, instant sleep (testing)
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block for the given number of seconds."""
        ...


class SystemClock:
    """Production clock backed by the system monotonic clock."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class MockClock:
    """Controllable clock for deterministic testing.

    sleep() advances time by the requested amount and records it, so a
    poll loop with a 1s interval runs instantly.

    Example:
        clock = MockClock(start=0.0)
        prober = ReadinessProber(clock=clock)
        result = prober.wait_until(check, probe, stage=Stage.SERVER_READY)
        assert clock.sleeps == [1.0, 1.0]
    """

    def __init__(self, start: float = 0.0) -> None:
        self._current = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self._current

    def sleep(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError(f"Cannot sleep for negative duration: {seconds}")
        self.sleeps.append(seconds)
        self._current += seconds

    def advance(self, seconds: float) -> None:
        """Advance mock time without recording a sleep.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds


class Deadline:
    """Overall wall-clock budget for a run.

    A Deadline with budget None never expires. Bounding total bring-up time
    to the sum of the per-stage timeouts needs a shared deadline that every
    poll loop consults, not just a per-stage one.
    """

    def __init__(self, budget_seconds: float | None, clock: Clock | None = None) -> None:
        self._clock = clock or DEFAULT_CLOCK
        self.budget_seconds = budget_seconds
        self._started = self._clock.monotonic()

    def remaining(self) -> float | None:
        """Seconds left, clamped at zero; None for an unbounded deadline."""
        if self.budget_seconds is None:
            return None
        return max(0.0, self.budget_seconds - (self._clock.monotonic() - self._started))

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
