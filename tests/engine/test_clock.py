# tests/engine/test_clock.py
"""Tests for the Clock abstraction and Deadline."""

import pytest

from spire_harness.engine.clock import Deadline, MockClock, SystemClock


class TestMockClock:
    def test_sleep_advances_and_records(self) -> None:
        clock = MockClock(start=10.0)

        clock.sleep(1.5)
        clock.sleep(0.5)

        assert clock.monotonic() == 12.0
        assert clock.sleeps == [1.5, 0.5]

    def test_advance_does_not_record(self) -> None:
        clock = MockClock()

        clock.advance(3.0)

        assert clock.monotonic() == 3.0
        assert clock.sleeps == []

    def test_negative_rejected(self) -> None:
        clock = MockClock()

        with pytest.raises(ValueError):
            clock.sleep(-1.0)
        with pytest.raises(ValueError):
            clock.advance(-1.0)


class TestSystemClock:
    def test_monotonic_non_decreasing(self) -> None:
        clock = SystemClock()

        first = clock.monotonic()
        clock.sleep(0)

        assert clock.monotonic() >= first


class TestDeadline:
    def test_unbounded_never_expires(self) -> None:
        clock = MockClock()
        deadline = Deadline(None, clock)

        clock.advance(1e9)

        assert deadline.remaining() is None
        assert not deadline.expired

    def test_remaining_counts_down_and_clamps(self) -> None:
        clock = MockClock(start=100.0)
        deadline = Deadline(10.0, clock)

        clock.advance(4.0)
        assert deadline.remaining() == 6.0

        clock.advance(20.0)
        assert deadline.remaining() == 0.0
        assert deadline.expired

    def test_expires_exactly_at_budget(self) -> None:
        clock = MockClock()
        deadline = Deadline(5.0, clock)

        clock.advance(4.5)
        assert not deadline.expired
        clock.advance(0.5)
        assert deadline.expired
