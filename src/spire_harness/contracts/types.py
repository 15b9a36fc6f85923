# src/spire_harness/contracts/types.py
"""Data types that cross module boundaries.

Everything here is a plain frozen dataclass with no behavior beyond small
derived properties. Construction happens in core/config.py (layouts) and
the engine modules (handles, credentials, results).
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Generic, TypeVar

from spire_harness.contracts.enums import ProbeOutcome, RunCompletionStatus, ServiceName

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ServiceSpec:
    """How to launch one external service.

    Attributes:
        name: Which service this is (server or agent)
        binary: Executable path
        args: Arguments after the binary
        log_path: File receiving combined stdout/stderr
        working_dir: Working directory for the child
        pid_file: Pid record written immediately after launch
        env: Extra environment variables layered over os.environ
    """

    name: ServiceName
    binary: Path
    args: tuple[str, ...]
    log_path: Path
    working_dir: Path
    pid_file: Path
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def argv(self) -> list[str]:
        return [str(self.binary), *self.args]


@dataclass(frozen=True, slots=True)
class ProcessHandle:
    """A launched (or recovered) external process."""

    name: ServiceName
    pid: int
    log_path: Path | None
    pid_file: Path


@dataclass(frozen=True, slots=True)
class JoinCredential:
    """One-time join token for the agent.

    The token is excluded from repr so it never lands in logs.
    """

    token: str = field(repr=False)
    identity: str


@dataclass(frozen=True, slots=True)
class RegistrationEntry:
    """Binding from a node identity to a workload identity.

    Write-only: created once per run, observed indirectly through the
    propagation wait.
    """

    parent_id: str
    spiffe_id: str
    selectors: tuple[str, ...]
    dns_names: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.selectors:
            raise ValueError("RegistrationEntry requires at least one selector")


@dataclass(frozen=True, slots=True)
class ReadinessCheck(Generic[T]):
    """Predicate over a probe result plus the budget for polling it.

    max_attempts is the TOTAL number of probes, not the number of retries.
    When both max_attempts and timeout_seconds are set, whichever is
    exhausted first ends the wait.
    """

    predicate: Callable[[T], bool]
    timeout_seconds: float
    poll_interval_seconds: float
    max_attempts: int | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.poll_interval_seconds < 0:
            raise ValueError("poll_interval_seconds must be >= 0")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


@dataclass(frozen=True, slots=True)
class WaitResult(Generic[T]):
    """Outcome of ReadinessProber.wait_until()."""

    outcome: ProbeOutcome
    attempts: int
    elapsed_seconds: float
    last_result: T | None = None

    @property
    def ready(self) -> bool:
        return self.outcome == ProbeOutcome.READY


@dataclass(frozen=True, slots=True)
class TestRunResult:
    """Exit status of the dependent test suite."""

    __test__ = False  # not a pytest test class

    returncode: int
    duration_seconds: float

    @property
    def passed(self) -> bool:
        return self.returncode == 0


@dataclass
class TeardownReport:
    """What teardown did, and what it could not do.

    errors holds one human-readable line per failed step. A non-empty
    errors list never turns into an exception.
    """

    stopped: list[ProcessHandle] = field(default_factory=list)
    removed: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.errors


@dataclass(frozen=True, slots=True)
class RunLayout:
    """Every filesystem path touched by one run.

    state_dir holds pid records and the token file (the "working directory"
    root); the server and agent private-state directories live under the
    temp root and hold their sockets.
    """

    state_dir: Path
    tmp_dir: Path
    log_dir: Path
    server_pid_file: Path
    agent_pid_file: Path
    token_file: Path
    server_log: Path
    agent_log: Path
    server_data_dir: Path
    agent_data_dir: Path
    server_socket: Path
    workload_socket: Path
    lock_file: Path

    def pid_file_for(self, name: ServiceName) -> Path:
        return self.server_pid_file if name == ServiceName.SERVER else self.agent_pid_file

    def to_dict(self) -> dict[str, Any]:
        return {name: str(getattr(self, name)) for name in self.__dataclass_fields__}


@dataclass
class RunResult:
    """Result of a full up -> tests -> down cycle."""

    status: RunCompletionStatus
    exit_code: int
    duration_seconds: float
    tests: TestRunResult | None = None
    teardown: TeardownReport | None = None
