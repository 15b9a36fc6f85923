# src/spire_harness/engine/orchestrator.py
"""Orchestrator: sequences one run as an explicit finite state machine.

IDLE -> SERVER_STARTING -> SERVER_READY -> CREDENTIAL_ISSUED ->
AGENT_STARTING -> AGENT_READY -> IDENTITY_PROPAGATED -> TESTS_RUNNING,
and TORN_DOWN from anywhere.

Each forward arrow is one stage whose precondition is the previous stage's
postcondition, so there is no branching and no parallelism: the agent
needs the server's join token, propagation needs a ready agent, tests need
a propagated identity.

Error split:
- Fatal (launch failure, admin call failure, deadline, abort): stop forward
  progress, tear down, re-raise with the failing stage attached
- Readiness timeout: governed by readiness.abort_on_timeout. Default is to
  log and continue, so a server that never opens its health port surfaces
  as the admin call failing next
- Cleanup failure: logged in the TeardownReport, never raised
"""

from __future__ import annotations

import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import structlog

from spire_harness.contracts.enums import (
    OrchestratorState,
    ProbeOutcome,
    RunCompletionStatus,
    ServiceName,
    Stage,
)
from spire_harness.contracts.errors import (
    HarnessError,
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
from spire_harness.contracts.protocols import (
    CredentialExchangeProtocol,
    ProberProtocol,
    PropagationWaiterProtocol,
    SuiteRunnerProtocol,
    SupervisorProtocol,
)
from spire_harness.contracts.types import (
    JoinCredential,
    ProcessHandle,
    ReadinessCheck,
    RegistrationEntry,
    RunResult,
    ServiceSpec,
    TeardownReport,
    TestRunResult,
    WaitResult,
)
from spire_harness.core.config import HarnessSettings
from spire_harness.core.events import EventBusProtocol, NullEventBus
from spire_harness.core.logging import stage_context
from spire_harness.engine.clock import DEFAULT_CLOCK, Clock, Deadline
from spire_harness.engine.credentials import CredentialExchange, load_credential, persist_credential
from spire_harness.engine.prober import ReadinessProber
from spire_harness.engine.probes import http_status_probe, status_is
from spire_harness.engine.propagation import PropagationWaiter
from spire_harness.engine.suite import SuiteRunner
from spire_harness.engine.supervisor import ProcessSupervisor
from spire_harness.engine.teardown import Teardown

logger = structlog.get_logger(__name__)

HealthProbeFactory = Callable[[str], Callable[[], "int | None"]]
PropagationWaiterFactory = Callable[[ProberProtocol], PropagationWaiterProtocol]
"""Builds a health probe for a ready URL; default issues real HTTP GETs."""

_TRANSITIONS: dict[OrchestratorState, frozenset[OrchestratorState]] = {
    OrchestratorState.IDLE: frozenset({OrchestratorState.SERVER_STARTING}),
    OrchestratorState.SERVER_STARTING: frozenset({OrchestratorState.SERVER_READY}),
    OrchestratorState.SERVER_READY: frozenset({OrchestratorState.CREDENTIAL_ISSUED}),
    OrchestratorState.CREDENTIAL_ISSUED: frozenset({OrchestratorState.AGENT_STARTING}),
    OrchestratorState.AGENT_STARTING: frozenset({OrchestratorState.AGENT_READY}),
    OrchestratorState.AGENT_READY: frozenset({OrchestratorState.IDENTITY_PROPAGATED}),
    OrchestratorState.IDENTITY_PROPAGATED: frozenset({OrchestratorState.TESTS_RUNNING}),
    OrchestratorState.TESTS_RUNNING: frozenset(),
    # A fresh up() after down() starts over
    OrchestratorState.TORN_DOWN: frozenset({OrchestratorState.SERVER_STARTING}),
}


@dataclass
class OrchestrationState:
    """Process-wide state of exactly one run.

    Initialized at the start of up(), consumed by down().
    """

    state: OrchestratorState = OrchestratorState.IDLE
    handles: list[ProcessHandle] = field(default_factory=list)
    artifacts: list[Path] = field(default_factory=list)
    failed_stage: Stage | None = None


class Orchestrator:
    """Brings a server + agent pair up, runs tests, and tears it down.

    All collaborators are injectable so the state machine can be tested
    without spawning processes. Defaults build the real ones from settings.

    Example:
        orchestrator = Orchestrator(load_settings(Path("harness.yaml")), event_bus=bus)
        result = orchestrator.run()  # up(), run_tests(), down() - down() always runs
    """

    def __init__(
        self,
        settings: HarnessSettings,
        *,
        supervisor: SupervisorProtocol | None = None,
        exchange: CredentialExchangeProtocol | None = None,
        suite: SuiteRunnerProtocol | None = None,
        event_bus: EventBusProtocol | None = None,
        clock: Clock | None = None,
        health_probe_factory: HealthProbeFactory | None = None,
        fetch_probe_factory: Callable[[], Callable[[], str]] | None = None,
        propagation_waiter_factory: PropagationWaiterFactory | None = None,
        working_dir: Path | None = None,
    ) -> None:
        self._settings = settings
        self._layout = settings.layout()
        self._supervisor = supervisor or ProcessSupervisor()
        self._exchange = exchange or CredentialExchange(
            settings.server_binary,
            self._layout.server_socket,
            timeout_seconds=settings.server.admin_timeout_seconds,
            env=self._service_env(),
        )
        self._suite = suite or SuiteRunner(
            settings.tests.command,
            workload_socket=self._layout.workload_socket,
            endpoint_env_var=settings.tests.endpoint_env_var,
            working_dir=settings.tests.working_dir,
        )
        self._events = event_bus or NullEventBus()
        self._clock = clock or DEFAULT_CLOCK
        self._health_probe_factory = health_probe_factory or self._default_health_probe
        self._fetch_probe_factory = fetch_probe_factory
        self._propagation_waiter_factory = propagation_waiter_factory or self._default_propagation_waiter
        self._working_dir = working_dir or Path.cwd()
        self._teardown = Teardown(self._layout, self._supervisor, remove_logs=not settings.paths.keep_logs)
        self._cancel = threading.Event()
        self._run = OrchestrationState()

    @property
    def state(self) -> OrchestratorState:
        return self._run.state

    @property
    def handles(self) -> tuple[ProcessHandle, ...]:
        return tuple(self._run.handles)

    @property
    def failed_stage(self) -> Stage | None:
        return self._run.failed_stage

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def up(self) -> None:
        """Bring the environment to IDENTITY_PROPAGATED.

        Stale markers from an earlier run are cleaned up first. On any
        failure the partially started environment is torn down before the
        error propagates.

        Raises:
            HarnessError: A fatal stage failure (stage attached)
            OrchestrationInvariantError: Called while a run is active
        """
        if self._run.state not in (OrchestratorState.IDLE, OrchestratorState.TORN_DOWN):
            raise OrchestrationInvariantError(Stage.SERVER_START, f"up() called in state {self._run.state}")

        self._cancel.clear()
        self._run = OrchestrationState()
        deadline = Deadline(self._settings.readiness.run_deadline_seconds, self._clock)
        prober = ReadinessProber(clock=self._clock, deadline=deadline, cancel=self._cancel)

        completed = False
        try:
            self._recover_stale()
            self._bring_up(prober, deadline)
            completed = True
        except HarnessError as e:
            self._run.failed_stage = e.stage
            raise
        finally:
            if not completed:
                logger.error("Bring-up failed, tearing down", failed_stage=self._run.failed_stage)
                self.down()

    def run_tests(self) -> TestRunResult:
        """Run the dependent suite against the propagated identity.

        Raises:
            OrchestrationInvariantError: Identity not yet propagated
            LaunchError: Test command could not be started
        """
        if self._run.state != OrchestratorState.IDENTITY_PROPAGATED:
            raise OrchestrationInvariantError(Stage.TESTS, f"run_tests() requires identity_propagated, state is {self._run.state}")
        self._advance(OrchestratorState.TESTS_RUNNING)
        with self._stage(Stage.TESTS, target=" ".join(self._settings.tests.command)):
            return self._suite.run()

    def down(self) -> TeardownReport:
        """Tear down whatever exists. Callable from any state; never raises.

        Also cancels a readiness wait in flight on another thread.
        """
        self._cancel.set()
        self._events.emit(StageStarted(stage=Stage.TEARDOWN))
        started = time.perf_counter()

        report = self._teardown.down(tracked=tuple(self._run.handles))

        self._run.handles.clear()
        self._run.artifacts.clear()
        self._run.state = OrchestratorState.TORN_DOWN
        self._events.emit(
            TeardownCompleted(stopped=len(report.stopped), removed=len(report.removed), errors=tuple(report.errors))
        )
        self._events.emit(StageCompleted(stage=Stage.TEARDOWN, duration_seconds=time.perf_counter() - started))
        return report

    def cancel(self) -> None:
        """Ask a bring-up in flight to stop.

        Safe from a signal handler or another thread: only sets an event.
        The next readiness probe or stage boundary raises RunAbortedError and
        up() tears down.
        """
        self._cancel.set()

    @contextmanager
    def shutdown_handler_context(self) -> Iterator[None]:
        """Install SIGINT/SIGTERM handlers that cancel the run.

        On first signal: cancels, restores default SIGINT handler (so second
        Ctrl-C force-kills via KeyboardInterrupt).

        Skipped outside the main thread, where signal.signal() raises.
        Restores original handlers in finally block.
        """
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, frame: Any) -> None:
            logger.warning("Signal received, cancelling run", signal=signal.Signals(signum).name)
            self.cancel()
            signal.signal(signal.SIGINT, signal.default_int_handler)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def run(self) -> RunResult:
        """Full cycle: up(), run_tests(), and always down().

        Returns:
            RunResult; exit_code is 0 on success, else the suite's exit code
            (0 when tests.ignore_failures is set)

        Raises:
            HarnessError: Bring-up failed (after teardown and RunSummary)
        """
        run_start = time.perf_counter()
        tests: TestRunResult | None = None
        completed = False
        failed_stage: Stage | None = None
        try:
            self.up()
            tests = self.run_tests()
            completed = True
        except HarnessError as e:
            failed_stage = e.stage
            raise
        finally:
            report = self.down()
            if not completed:
                self._events.emit(
                    RunSummary(
                        status=RunCompletionStatus.FAILED,
                        exit_code=2,
                        duration_seconds=time.perf_counter() - run_start,
                        failed_stage=failed_stage,
                    )
                )

        if tests is None:
            raise OrchestrationInvariantError(Stage.TESTS, "Run completed without a test result")
        if tests.passed:
            status, exit_code = RunCompletionStatus.COMPLETED, 0
        else:
            status = RunCompletionStatus.TESTS_FAILED
            exit_code = 0 if self._settings.tests.ignore_failures else tests.returncode
        duration = time.perf_counter() - run_start
        self._events.emit(
            RunSummary(
                status=status,
                exit_code=exit_code,
                duration_seconds=duration,
                test_returncode=tests.returncode,
            )
        )
        return RunResult(status=status, exit_code=exit_code, duration_seconds=duration, tests=tests, teardown=report)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _bring_up(self, prober: ReadinessProber, deadline: Deadline) -> None:
        settings = self._settings
        layout = self._layout

        self._advance(OrchestratorState.SERVER_STARTING)
        with self._stage(Stage.SERVER_START, target=str(settings.server_binary)):
            self._check_budget(deadline, Stage.SERVER_START)
            self._track(self._supervisor.start(self._server_spec(), stage=Stage.SERVER_START))

        self._await_health(prober, deadline, Stage.SERVER_READY, settings.server.ready_url)
        self._advance(OrchestratorState.SERVER_READY)

        with self._stage(Stage.JOIN_TOKEN, target=settings.registration.agent_id):
            self._check_budget(deadline, Stage.JOIN_TOKEN)
            credential = self._exchange.issue_join_token(settings.registration.agent_id)
            persist_credential(layout.token_file, credential)
            self._run.artifacts.append(layout.token_file)

        with self._stage(Stage.REGISTRATION_ENTRY, target=settings.registration.workload_id):
            self._check_budget(deadline, Stage.REGISTRATION_ENTRY)
            self._exchange.create_registration_entry(self._registration_entry())
        self._advance(OrchestratorState.CREDENTIAL_ISSUED)

        self._advance(OrchestratorState.AGENT_STARTING)
        with self._stage(Stage.AGENT_START, target=str(settings.agent_binary)):
            self._check_budget(deadline, Stage.AGENT_START)
            credential = load_credential(layout.token_file, settings.registration.agent_id)
            self._track(self._supervisor.start(self._agent_spec(credential), stage=Stage.AGENT_START))

        self._await_health(prober, deadline, Stage.AGENT_READY, settings.agent.ready_url)
        self._advance(OrchestratorState.AGENT_READY)

        marker = settings.registration.marker
        with self._stage(Stage.PROPAGATION, target=marker):
            self._check_budget(deadline, Stage.PROPAGATION)
            readiness = settings.readiness
            result = self._propagation_waiter_factory(prober).wait_for_identity(
                marker,
                timeout_seconds=readiness.timeout_seconds,
                poll_interval_seconds=readiness.poll_interval_seconds,
                max_attempts=readiness.max_attempts,
            )
            self._handle_wait(result, Stage.PROPAGATION, deadline)
        self._advance(OrchestratorState.IDENTITY_PROPAGATED)
        logger.info("Environment ready", workload_socket=str(layout.workload_socket), identity=marker)

    def _recover_stale(self) -> None:
        stale = self._teardown.recover_handles()
        if stale:
            logger.warning(
                "Found pid records from an earlier run, treating as possibly running",
                pids={handle.name: handle.pid for handle in stale},
            )
        with self._stage(Stage.RECOVER):
            report = self._teardown.down()
        if report.stopped or report.removed:
            logger.warning(
                "Cleaned up leftovers from an earlier run",
                stopped=[handle.pid for handle in report.stopped],
                removed=[str(path) for path in report.removed],
            )

    def _await_health(self, prober: ReadinessProber, deadline: Deadline, stage: Stage, url: str) -> None:
        with self._stage(stage, target=url):
            self._check_budget(deadline, stage)
            check: ReadinessCheck[int | None] = self._readiness_check(status_is(200), f"GET {url} -> 200")
            result = prober.wait_until(check, self._health_probe_factory(url), stage=stage)
            self._handle_wait(result, stage, deadline)

    def _handle_wait(self, result: WaitResult[object], stage: Stage, deadline: Deadline) -> None:
        if result.outcome == ProbeOutcome.READY:
            return
        if result.outcome == ProbeOutcome.CANCELLED:
            raise RunAbortedError(stage)
        self._raise_if_expired(deadline, stage)

        aborting = self._settings.readiness.abort_on_timeout
        self._events.emit(
            ReadinessTimedOut(stage=stage, attempts=result.attempts, elapsed_seconds=result.elapsed_seconds, aborting=aborting)
        )
        if aborting:
            raise ReadinessTimeoutError(stage, result.attempts, result.elapsed_seconds)
        logger.warning(
            "Readiness wait timed out, continuing",
            stage=stage,
            attempts=result.attempts,
            elapsed_seconds=round(result.elapsed_seconds, 3),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _stage(self, stage: Stage, target: str | None = None) -> Iterator[None]:
        self._events.emit(StageStarted(stage=stage, target=target))
        started = time.perf_counter()
        try:
            with stage_context(stage):
                yield
        except HarnessError as e:
            self._events.emit(StageError(stage=stage, error=e))
            raise
        self._events.emit(StageCompleted(stage=stage, duration_seconds=time.perf_counter() - started))

    def _advance(self, target: OrchestratorState) -> None:
        current = self._run.state
        if target not in _TRANSITIONS[current]:
            raise OrchestrationInvariantError(_stage_for(target), f"Illegal transition {current} -> {target}")
        logger.debug("State transition", from_state=current, to_state=target)
        self._run.state = target

    def _check_budget(self, deadline: Deadline, stage: Stage) -> None:
        if self._cancel.is_set():
            raise RunAbortedError(stage)
        self._raise_if_expired(deadline, stage)

    @staticmethod
    def _raise_if_expired(deadline: Deadline, stage: Stage) -> None:
        # An unbounded deadline never expires
        if deadline.budget_seconds is not None and deadline.expired:
            raise RunDeadlineExceeded(stage, deadline.budget_seconds)

    def _track(self, handle: ProcessHandle) -> None:
        self._run.handles.append(handle)
        self._run.artifacts.append(handle.pid_file)

    def _readiness_check(self, predicate: Callable[..., bool], description: str) -> ReadinessCheck:
        readiness = self._settings.readiness
        return ReadinessCheck(
            predicate=predicate,
            timeout_seconds=readiness.timeout_seconds,
            poll_interval_seconds=readiness.poll_interval_seconds,
            max_attempts=readiness.max_attempts,
            description=description,
        )

    def _default_health_probe(self, url: str) -> Callable[[], int | None]:
        return http_status_probe(url, timeout_seconds=self._settings.readiness.http_timeout_seconds)

    def _default_propagation_waiter(self, prober: ProberProtocol) -> PropagationWaiterProtocol:
        return PropagationWaiter(
            prober,
            self._settings.agent_binary,
            self._layout.workload_socket,
            fetch_timeout_seconds=self._settings.agent.fetch_timeout_seconds,
            probe_factory=self._fetch_probe_factory,
        )

    def _service_env(self) -> dict[str, str]:
        # Service configs resolve socket and data paths from $TMPDIR via -expandEnv
        return {"TMPDIR": str(self._settings.paths.tmp_dir)}

    def _server_spec(self) -> ServiceSpec:
        return ServiceSpec(
            name=ServiceName.SERVER,
            binary=self._settings.server_binary,
            args=("run", "-expandEnv", "-config", str(self._settings.server_config)),
            log_path=self._layout.server_log,
            working_dir=self._working_dir,
            pid_file=self._layout.server_pid_file,
            env=MappingProxyType(self._service_env()),
        )

    def _agent_spec(self, credential: JoinCredential) -> ServiceSpec:
        args: list[str] = ["run"]
        if self._settings.agent.insecure_bootstrap:
            args.append("-insecureBootstrap")
        args.extend(["-expandEnv", "-config", str(self._settings.agent_config), "-joinToken", credential.token])
        return ServiceSpec(
            name=ServiceName.AGENT,
            binary=self._settings.agent_binary,
            args=tuple(args),
            log_path=self._layout.agent_log,
            working_dir=self._working_dir,
            pid_file=self._layout.agent_pid_file,
            env=MappingProxyType(self._service_env()),
        )

    def _registration_entry(self) -> RegistrationEntry:
        registration = self._settings.registration
        return RegistrationEntry(
            parent_id=registration.agent_id,
            spiffe_id=registration.workload_id,
            selectors=tuple(registration.selectors),
            dns_names=tuple(registration.dns_names),
        )


def _stage_for(state: OrchestratorState) -> Stage:
    """Stage whose completion enters the given state."""
    return _STATE_STAGES[state]


_STATE_STAGES: dict[OrchestratorState, Stage] = {
    OrchestratorState.IDLE: Stage.RECOVER,
    OrchestratorState.SERVER_STARTING: Stage.SERVER_START,
    OrchestratorState.SERVER_READY: Stage.SERVER_READY,
    OrchestratorState.CREDENTIAL_ISSUED: Stage.REGISTRATION_ENTRY,
    OrchestratorState.AGENT_STARTING: Stage.AGENT_START,
    OrchestratorState.AGENT_READY: Stage.AGENT_READY,
    OrchestratorState.IDENTITY_PROPAGATED: Stage.PROPAGATION,
    OrchestratorState.TESTS_RUNNING: Stage.TESTS,
    OrchestratorState.TORN_DOWN: Stage.TEARDOWN,
}
