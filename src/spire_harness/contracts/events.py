# src/spire_harness/contracts/events.py
"""Observability events for orchestration runs.

Emitted by the orchestrator and consumed by CLI formatters for
human-readable or structured output.
"""

from dataclasses import dataclass

from spire_harness.contracts.enums import RunCompletionStatus, Stage


@dataclass(frozen=True, slots=True)
class StageStarted:
    """Emitted when a stage begins.

    Attributes:
        stage: The stage starting
        target: Optional target (binary path, URL, identity)
    """

    stage: Stage
    target: str | None = None


@dataclass(frozen=True, slots=True)
class StageCompleted:
    """Emitted when a stage completes successfully."""

    stage: Stage
    duration_seconds: float


@dataclass(frozen=True, slots=True)
class StageError:
    """Emitted when a stage fails fatally.

    Stores the full exception object to preserve traceback and cause chain.
    """

    stage: Stage
    error: BaseException

    @property
    def error_message(self) -> str:
        """Human-readable error message for formatting."""
        return str(self.error)


@dataclass(frozen=True, slots=True)
class ReadinessTimedOut:
    """Emitted when a readiness wait exhausts its budget.

    Whether the run continues afterwards depends on abort_on_timeout.
    """

    stage: Stage
    attempts: int
    elapsed_seconds: float
    aborting: bool


@dataclass(frozen=True, slots=True)
class TeardownCompleted:
    """Emitted after every teardown, clean or not."""

    stopped: int
    removed: int
    errors: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Emitted when a full run finishes (success or failure).

    exit_code follows the CLI convention: 0 success, 2 stage failure,
    otherwise the dependent test runner's exit code.
    """

    status: RunCompletionStatus
    exit_code: int
    duration_seconds: float
    failed_stage: Stage | None = None
    test_returncode: int | None = None
