"""Status codes, states, and stage names used across subsystem boundaries."""

from enum import StrEnum


class OrchestratorState(StrEnum):
    """Lifecycle state of one orchestration run.

    The machine is strictly linear. Every forward arrow is one stage of
    bring-up; TORN_DOWN is reachable from every state.
    """

    IDLE = "idle"
    SERVER_STARTING = "server_starting"
    SERVER_READY = "server_ready"
    CREDENTIAL_ISSUED = "credential_issued"
    AGENT_STARTING = "agent_starting"
    AGENT_READY = "agent_ready"
    IDENTITY_PROPAGATED = "identity_propagated"
    TESTS_RUNNING = "tests_running"
    TORN_DOWN = "torn_down"


class Stage(StrEnum):
    """Unit of work the orchestrator reports on.

    Used in events, log fields, and error messages so a failed run names
    the exact step that stopped it.
    """

    RECOVER = "recover"
    SERVER_START = "server_start"
    SERVER_READY = "server_ready"
    JOIN_TOKEN = "join_token"
    REGISTRATION_ENTRY = "registration_entry"
    AGENT_START = "agent_start"
    AGENT_READY = "agent_ready"
    PROPAGATION = "propagation"
    TESTS = "tests"
    TEARDOWN = "teardown"


class ProbeOutcome(StrEnum):
    """Result of a bounded readiness wait.

    Values:
        READY: Predicate observed true (for the propagation wait this means
            the workload identity is visible)
        TIMED_OUT: Attempt ceiling, stage budget, or run deadline exhausted
        CANCELLED: Cancel event set mid-wait (concurrent teardown)
    """

    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class RunCompletionStatus(StrEnum):
    """Final status for RunSummary events."""

    COMPLETED = "completed"
    TESTS_FAILED = "tests_failed"
    FAILED = "failed"


class ServiceName(StrEnum):
    """The two external processes a run starts."""

    SERVER = "server"
    AGENT = "agent"
