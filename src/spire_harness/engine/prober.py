# src/spire_harness/engine/prober.py
"""ReadinessProber: bounded poll-until-true with tenacity.

One parameterized primitive serves every wait in a run (server health,
agent health, identity propagation). A wait ends in one of three ways:

- READY: the predicate held; returned immediately, no trailing sleep
- TIMED_OUT: attempt ceiling or per-stage budget exhausted (or the run
  deadline reached); returned, never raised - the caller owns the policy
- CANCELLED: the cancel event was set, e.g. by a concurrent down()

Probes are expected to turn transient failures (connection refused while a
service is still binding its port) into "not ready" results themselves.
An exception escaping a probe is a bug and propagates.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import TypeVar

import structlog
from tenacity import RetryCallState, Retrying, retry_if_result, stop_any

from spire_harness.contracts.enums import ProbeOutcome, Stage
from spire_harness.contracts.types import ReadinessCheck, WaitResult
from spire_harness.engine.clock import DEFAULT_CLOCK, Clock, Deadline

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ReadinessProber:
    """Polls a probe until its result satisfies a ReadinessCheck.

    Example:
        prober = ReadinessProber(deadline=Deadline(120.0))
        check = ReadinessCheck(predicate=status_is(200), timeout_seconds=30.0, poll_interval_seconds=1.0)
        result = prober.wait_until(check, http_status_probe(url), stage=Stage.SERVER_READY)
        if not result.ready:
            ...
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        deadline: Deadline | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self._clock = clock or DEFAULT_CLOCK
        self._deadline = deadline
        self._cancel = cancel

    def wait_until(
        self,
        check: ReadinessCheck[T],
        probe: Callable[[], T],
        *,
        stage: Stage,
    ) -> WaitResult[T]:
        """Probe until check.predicate holds or the budget runs out.

        Args:
            check: Predicate plus timeout / poll interval / attempt ceiling
            probe: Zero-argument callable returning the value to test
            stage: Stage name for log fields

        Returns:
            WaitResult with outcome, number of probes made, and elapsed time
        """
        clock = self._clock
        started = clock.monotonic()
        attempts = 0
        last: T | None = None

        if self._cancelled():
            return WaitResult(outcome=ProbeOutcome.CANCELLED, attempts=0, elapsed_seconds=0.0)

        def elapsed() -> float:
            return clock.monotonic() - started

        def attempt() -> bool:
            nonlocal attempts, last
            attempts += 1
            last = probe()
            return check.predicate(last)

        def budget_exhausted(retry_state: RetryCallState) -> bool:
            if check.max_attempts is not None and retry_state.attempt_number >= check.max_attempts:
                return True
            if self._deadline is not None and self._deadline.expired:
                return True
            return elapsed() >= check.timeout_seconds

        def interrupted(retry_state: RetryCallState) -> bool:
            return self._cancelled()

        def next_delay(retry_state: RetryCallState) -> float:
            # Clip to the remaining budget so a timeout overshoots by at most one probe
            delay = min(check.poll_interval_seconds, max(0.0, check.timeout_seconds - elapsed()))
            if self._deadline is not None:
                remaining = self._deadline.remaining()
                if remaining is not None:
                    delay = min(delay, remaining)
            return delay

        def log_not_ready(retry_state: RetryCallState) -> None:
            logger.debug(
                "Not ready, waiting",
                stage=stage,
                check=check.description,
                attempt=retry_state.attempt_number,
                elapsed_seconds=round(elapsed(), 3),
            )

        retrying = Retrying(
            stop=stop_any(budget_exhausted, interrupted),
            wait=next_delay,
            retry=retry_if_result(lambda ok: not ok),
            sleep=clock.sleep,
            before_sleep=log_not_ready,
            retry_error_callback=lambda retry_state: False,
            reraise=True,
        )
        ready = retrying(attempt)

        if ready:
            outcome = ProbeOutcome.READY
        elif self._cancelled():
            outcome = ProbeOutcome.CANCELLED
        else:
            outcome = ProbeOutcome.TIMED_OUT

        result: WaitResult[T] = WaitResult(outcome=outcome, attempts=attempts, elapsed_seconds=elapsed(), last_result=last)
        logger.info(
            "Readiness wait finished",
            stage=stage,
            check=check.description,
            outcome=outcome,
            attempts=attempts,
            elapsed_seconds=round(result.elapsed_seconds, 3),
        )
        return result

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()
