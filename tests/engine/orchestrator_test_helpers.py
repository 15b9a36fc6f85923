# tests/engine/orchestrator_test_helpers.py
"""Shared fakes for orchestrator tests.

The fakes satisfy the collaborator protocols without spawning processes,
so the state machine can be driven through every path with a MockClock.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any, Generic, TypeVar

from spire_harness.contracts.enums import ProbeOutcome, ServiceName, Stage
from spire_harness.contracts.errors import AdminCommandError, LaunchError
from spire_harness.contracts.protocols import ProberProtocol
from spire_harness.contracts.types import (
    JoinCredential,
    ProcessHandle,
    RegistrationEntry,
    ServiceSpec,
    TestRunResult,
    WaitResult,
)
from spire_harness.core.config import HarnessSettings
from spire_harness.core.events import EventBus
from spire_harness.engine.clock import MockClock
from spire_harness.engine.orchestrator import Orchestrator
from spire_harness.engine.supervisor import read_pid_record, write_pid_record

T = TypeVar("T")

FAKE_TOKEN = "a9b3c1d2-join-token"


class FakeSupervisor:
    """Records launches and stops; writes real pid records.

    Args:
        alive: Pids that count as running before anything is launched
            (simulates leftovers from a crashed run)
        fail_on: Service whose launch raises LaunchError
    """

    def __init__(self, *, alive: Iterable[int] = (), fail_on: ServiceName | None = None) -> None:
        self.started: list[ServiceSpec] = []
        self.stopped: list[ProcessHandle] = []
        self._alive: set[int] = set(alive)
        self._fail_on = fail_on
        self._next_pid = 40000

    def start(self, spec: ServiceSpec, *, stage: Stage) -> ProcessHandle:
        if spec.name == self._fail_on:
            raise LaunchError(stage, str(spec.binary), FileNotFoundError(2, "No such file or directory"))
        pid = self._next_pid
        self._next_pid += 1
        write_pid_record(spec.pid_file, pid)
        self._alive.add(pid)
        self.started.append(spec)
        return ProcessHandle(name=spec.name, pid=pid, log_path=spec.log_path, pid_file=spec.pid_file)

    def stop(self, handle: ProcessHandle) -> bool:
        if handle.pid not in self._alive:
            return False
        self._alive.discard(handle.pid)
        self.stopped.append(handle)
        return True

    def recover(self, name: ServiceName, pid_file: Path) -> ProcessHandle | None:
        pid = read_pid_record(pid_file)
        if pid is None:
            return None
        return ProcessHandle(name=name, pid=pid, log_path=None, pid_file=pid_file)

    @property
    def running(self) -> set[int]:
        return set(self._alive)


class FakeExchange:
    """Admin calls that succeed unless told to fail."""

    def __init__(self, *, fail_token: bool = False, fail_entry: bool = False) -> None:
        self.tokens_issued: list[str] = []
        self.entries: list[RegistrationEntry] = []
        self._fail_token = fail_token
        self._fail_entry = fail_entry

    def issue_join_token(self, target_identity: str) -> JoinCredential:
        if self._fail_token:
            raise AdminCommandError(
                Stage.JOIN_TOKEN,
                "token generate",
                returncode=1,
                output="Error: connection error: dial unix api.sock: connect: no such file or directory",
            )
        self.tokens_issued.append(target_identity)
        return JoinCredential(token=FAKE_TOKEN, identity=target_identity)

    def create_registration_entry(self, entry: RegistrationEntry) -> None:
        if self._fail_entry:
            raise AdminCommandError(Stage.REGISTRATION_ENTRY, "entry create", returncode=1, output="similar entry already exists")
        self.entries.append(entry)


class FakeSuite:
    def __init__(self, returncode: int = 0) -> None:
        self.returncode = returncode
        self.runs = 0

    def run(self) -> TestRunResult:
        self.runs += 1
        return TestRunResult(returncode=self.returncode, duration_seconds=0.5)


class ScriptedProbe(Generic[T]):
    """Returns scripted results in order, repeating the last one forever."""

    def __init__(self, results: Sequence[T], on_call: Callable[[int], None] | None = None) -> None:
        if not results:
            raise ValueError("ScriptedProbe needs at least one result")
        self._results = list(results)
        self._on_call = on_call
        self.calls = 0

    def __call__(self) -> T:
        self.calls += 1
        if self._on_call is not None:
            self._on_call(self.calls)
        return self._results[min(self.calls, len(self._results)) - 1]


def record_events(bus: EventBus, *event_types: type) -> list[Any]:
    """Subscribe to event_types and collect everything emitted, in order."""
    events: list[Any] = []
    for event_type in event_types:
        bus.subscribe(event_type, events.append)
    return events


class FakePropagationWaiter:
    """Returns a fixed outcome and records each wait with the prober it was built for."""

    def __init__(self, outcome: ProbeOutcome = ProbeOutcome.READY) -> None:
        self.outcome = outcome
        self.probers: list[ProberProtocol] = []
        self.waits: list[dict[str, Any]] = []

    def bind(self, prober: ProberProtocol) -> FakePropagationWaiter:
        self.probers.append(prober)
        return self

    def wait_for_identity(
        self,
        marker: str,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float,
        max_attempts: int | None = None,
    ) -> WaitResult[str]:
        self.waits.append(
            {
                "marker": marker,
                "timeout_seconds": timeout_seconds,
                "poll_interval_seconds": poll_interval_seconds,
                "max_attempts": max_attempts,
            }
        )
        return WaitResult(outcome=self.outcome, attempts=1, elapsed_seconds=0.0)


def make_orchestrator(
    settings: HarnessSettings,
    *,
    supervisor: FakeSupervisor | None = None,
    exchange: FakeExchange | None = None,
    suite: FakeSuite | None = None,
    server_health: Sequence[int | None] = (200,),
    agent_health: Sequence[int | None] = (200,),
    fetch_outputs: Sequence[str] | None = None,
    bus: EventBus | None = None,
    clock: MockClock | None = None,
    working_dir: Path | None = None,
) -> tuple[Orchestrator, dict[str, ScriptedProbe[Any]]]:
    """Build an Orchestrator wired to fakes.

    Returns:
        The orchestrator and its probes keyed "server", "agent", "fetch"
        (so tests can assert call counts)
    """
    marker = settings.registration.marker
    probes: dict[str, ScriptedProbe[Any]] = {
        "server": ScriptedProbe(list(server_health)),
        "agent": ScriptedProbe(list(agent_health)),
        "fetch": ScriptedProbe(list(fetch_outputs) if fetch_outputs is not None else [f"SPIFFE ID: {marker}\n"]),
    }
    by_url = {settings.server.ready_url: probes["server"], settings.agent.ready_url: probes["agent"]}

    orchestrator = Orchestrator(
        settings,
        supervisor=supervisor or FakeSupervisor(),
        exchange=exchange or FakeExchange(),
        suite=suite or FakeSuite(),
        event_bus=bus,
        clock=clock or MockClock(),
        health_probe_factory=lambda url: by_url[url],
        fetch_probe_factory=lambda: probes["fetch"],
        working_dir=working_dir,
    )
    return orchestrator, probes
