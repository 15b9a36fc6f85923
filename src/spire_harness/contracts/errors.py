# src/spire_harness/contracts/errors.py
"""Exception hierarchy for orchestration failures.

Every fatal error carries the Stage it was raised from so the CLI can
report which step of bring-up stopped the run. Cleanup failures are never
raised - teardown collects them into a TeardownReport instead.
"""

from spire_harness.contracts.enums import Stage


class HarnessError(Exception):
    """Base class for fatal orchestration errors.

    Attributes:
        stage: Stage that failed
    """

    def __init__(self, stage: Stage, message: str) -> None:
        self.stage = stage
        super().__init__(message)


class LaunchError(HarnessError):
    """Raised when a subprocess could not be started.

    Covers missing binaries, permission problems, and unwritable log sinks.
    Aborts the run before any later stage is attempted.
    """

    def __init__(self, stage: Stage, binary: str, cause: BaseException) -> None:
        self.binary = binary
        self.cause = cause
        super().__init__(stage, f"Failed to launch {binary}: {type(cause).__name__}: {cause}")


class AdminCommandError(HarnessError):
    """Raised when an administrative server call fails.

    Token generation and entry creation are single request/response calls.
    They are not retried here; readiness gating happens before them.

    Attributes:
        command: Subcommand that failed (e.g. "token generate")
        returncode: Process exit code, or None if it never ran to completion
        output: Captured stderr/stdout for diagnosis
    """

    def __init__(
        self,
        stage: Stage,
        command: str,
        *,
        returncode: int | None = None,
        output: str = "",
        reason: str | None = None,
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        detail = reason or f"exit code {returncode}"
        message = f"'{command}' failed: {detail}"
        if output.strip():
            message = f"{message}: {output.strip()}"
        super().__init__(stage, message)


class ReadinessTimeoutError(HarnessError):
    """Raised when a readiness wait times out and abort_on_timeout is set."""

    def __init__(self, stage: Stage, attempts: int, elapsed_seconds: float) -> None:
        self.attempts = attempts
        self.elapsed_seconds = elapsed_seconds
        super().__init__(stage, f"Timed out waiting for {stage} after {attempts} attempts ({elapsed_seconds:.1f}s)")


class RunDeadlineExceeded(HarnessError):
    """Raised when the overall run deadline expires before a stage starts."""

    def __init__(self, stage: Stage, budget_seconds: float) -> None:
        self.budget_seconds = budget_seconds
        super().__init__(stage, f"Run deadline of {budget_seconds:.1f}s exceeded before {stage}")


class RunAbortedError(HarnessError):
    """Raised when a wait is cancelled by a concurrent teardown."""

    def __init__(self, stage: Stage) -> None:
        super().__init__(stage, f"Run aborted during {stage}")


class OrchestrationInvariantError(HarnessError):
    """Raised on an illegal state transition.

    This indicates a bug in the caller (e.g. running tests before bring-up),
    not an external failure.
    """


class LockHeldError(Exception):
    """Raised when another run holds the run lock."""

    def __init__(self, lock_path: str, waited_seconds: float | None = None) -> None:
        self.lock_path = lock_path
        self.waited_seconds = waited_seconds
        if waited_seconds is None:
            message = f"Another run holds the lock: {lock_path}"
        else:
            message = f"Timed out after {waited_seconds:.1f}s waiting for lock: {lock_path}"
        super().__init__(message)
