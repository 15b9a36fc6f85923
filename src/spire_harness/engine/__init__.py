# src/spire_harness/engine/__init__.py
"""Orchestration engine: bring-up, readiness gating, and teardown.

This module provides the pieces of one integration-test run:
- Orchestrator: Full run lifecycle as an explicit state machine
- ProcessSupervisor: Launch and signal the server and agent
- ReadinessProber: Bounded poll-until-true with tenacity
- CredentialExchange: Join token and registration entry admin calls
- PropagationWaiter: Wait for the workload identity to reach the agent
- SuiteRunner: Run the dependent test suite against the workload socket
- Teardown: Idempotent best-effort cleanup

Example:
    from spire_harness.core import load_settings
    from spire_harness.engine import Orchestrator

    orchestrator = Orchestrator(load_settings())
    result = orchestrator.run()
"""

from spire_harness.engine.clock import DEFAULT_CLOCK, Clock, Deadline, MockClock, SystemClock
from spire_harness.engine.credentials import (
    CredentialExchange,
    load_credential,
    parse_join_token,
    persist_credential,
)
from spire_harness.engine.orchestrator import OrchestrationState, Orchestrator
from spire_harness.engine.prober import ReadinessProber
from spire_harness.engine.probes import command_output_probe, http_status_probe, output_contains, status_is
from spire_harness.engine.propagation import PropagationWaiter
from spire_harness.engine.suite import SuiteRunner
from spire_harness.engine.supervisor import ProcessSupervisor, is_alive, read_pid_record, write_pid_record
from spire_harness.engine.teardown import Teardown

__all__ = [
    "DEFAULT_CLOCK",
    "Clock",
    "CredentialExchange",
    "Deadline",
    "MockClock",
    "OrchestrationState",
    "Orchestrator",
    "ProcessSupervisor",
    "PropagationWaiter",
    "ReadinessProber",
    "SuiteRunner",
    "SystemClock",
    "Teardown",
    "command_output_probe",
    "http_status_probe",
    "is_alive",
    "load_credential",
    "output_contains",
    "parse_join_token",
    "persist_credential",
    "read_pid_record",
    "status_is",
    "write_pid_record",
]
