"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes live in spire_harness.core.config and are NOT re-exported
here.
"""

from spire_harness.contracts.enums import (
    OrchestratorState,
    ProbeOutcome,
    RunCompletionStatus,
    ServiceName,
    Stage,
)
from spire_harness.contracts.errors import (
    AdminCommandError,
    HarnessError,
    LaunchError,
    LockHeldError,
    OrchestrationInvariantError,
    ReadinessTimeoutError,
    RunAbortedError,
    RunDeadlineExceeded,
)
from spire_harness.contracts.events import (
    ReadinessTimedOut,
    RunSummary,
    StageCompleted,
    StageError,
    StageStarted,
    TeardownCompleted,
)
from spire_harness.contracts.types import (
    JoinCredential,
    ProcessHandle,
    ReadinessCheck,
    RegistrationEntry,
    RunLayout,
    RunResult,
    ServiceSpec,
    TeardownReport,
    TestRunResult,
    WaitResult,
)

__all__ = [
    "AdminCommandError",
    "HarnessError",
    "JoinCredential",
    "LaunchError",
    "LockHeldError",
    "OrchestrationInvariantError",
    "OrchestratorState",
    "ProbeOutcome",
    "ProcessHandle",
    "ReadinessCheck",
    "ReadinessTimedOut",
    "ReadinessTimeoutError",
    "RegistrationEntry",
    "RunAbortedError",
    "RunCompletionStatus",
    "RunDeadlineExceeded",
    "RunLayout",
    "RunResult",
    "RunSummary",
    "ServiceName",
    "ServiceSpec",
    "Stage",
    "StageCompleted",
    "StageError",
    "StageStarted",
    "TeardownCompleted",
    "TeardownReport",
    "TestRunResult",
    "WaitResult",
]
