"""Protocols for the collaborators the orchestrator drives.

The orchestrator only depends on these shapes, so tests can inject fakes
that never spawn a real process.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Protocol, TypeVar

from spire_harness.contracts.enums import ServiceName, Stage
from spire_harness.contracts.types import (
    JoinCredential,
    ProcessHandle,
    ReadinessCheck,
    RegistrationEntry,
    ServiceSpec,
    TestRunResult,
    WaitResult,
)

T = TypeVar("T")


class SupervisorProtocol(Protocol):
    """Launches and terminates external processes."""

    def start(self, spec: ServiceSpec, *, stage: Stage) -> ProcessHandle: ...

    def stop(self, handle: ProcessHandle) -> bool: ...

    def recover(self, name: ServiceName, pid_file: Path) -> ProcessHandle | None: ...


class ProberProtocol(Protocol):
    """Bounded poll-until-true primitive."""

    def wait_until(self, check: ReadinessCheck[T], probe: Callable[[], T], *, stage: Stage) -> WaitResult[T]: ...


class CredentialExchangeProtocol(Protocol):
    """Administrative calls against the server."""

    def issue_join_token(self, target_identity: str) -> JoinCredential: ...

    def create_registration_entry(self, entry: RegistrationEntry) -> None: ...


class PropagationWaiterProtocol(Protocol):
    """Waits until the agent serves the expected identity."""

    def wait_for_identity(
        self,
        marker: str,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float,
        max_attempts: int | None = None,
    ) -> WaitResult[str]: ...


class SuiteRunnerProtocol(Protocol):
    """Runs the dependent test suite."""

    def run(self) -> TestRunResult: ...
