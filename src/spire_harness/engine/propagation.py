# src/spire_harness/engine/propagation.py
"""Registration propagation waiter.

An agent answering its health endpoint is observably earlier than the
registration entry reaching it through its sync with the server. This wait
runs after agent readiness and polls the agent's workload API until the
expected identity shows up in `api fetch` output.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from spire_harness.contracts.enums import Stage
from spire_harness.contracts.protocols import ProberProtocol
from spire_harness.contracts.types import ReadinessCheck, WaitResult
from spire_harness.engine.probes import command_output_probe, output_contains


class PropagationWaiter:
    """Waits until the agent serves an identity containing a marker.

    Args:
        prober: Readiness prober (shares the run's clock, deadline and
            cancel event)
        agent_binary: Agent executable providing `api fetch`
        workload_socket: Agent workload API socket
        fetch_timeout_seconds: Timeout for one fetch
        probe_factory: Override for the fetch probe (tests)
    """

    def __init__(
        self,
        prober: ProberProtocol,
        agent_binary: Path,
        workload_socket: Path,
        *,
        fetch_timeout_seconds: float = 10.0,
        probe_factory: Callable[[], Callable[[], str]] | None = None,
    ) -> None:
        self._prober = prober
        self._agent_binary = agent_binary
        self._workload_socket = workload_socket
        self._fetch_timeout = fetch_timeout_seconds
        self._probe_factory = probe_factory

    def fetch_argv(self) -> list[str]:
        return [str(self._agent_binary), "api", "fetch", "-socketPath", str(self._workload_socket)]

    def wait_for_identity(
        self,
        marker: str,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float,
        max_attempts: int | None = None,
    ) -> WaitResult[str]:
        """Poll `api fetch` until its output contains marker.

        Args:
            marker: Substring that identifies the workload (usually its SPIFFE ID)
            timeout_seconds: Wall-clock budget for the whole wait
            poll_interval_seconds: Delay between fetches
            max_attempts: Optional ceiling on fetches

        Returns:
            WaitResult whose READY outcome means the identity is visible
        """
        if self._probe_factory is not None:
            probe = self._probe_factory()
        else:
            probe = command_output_probe(self.fetch_argv(), timeout_seconds=self._fetch_timeout)
        check: ReadinessCheck[str] = ReadinessCheck(
            predicate=output_contains(marker),
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
            max_attempts=max_attempts,
            description=f"identity {marker} visible",
        )
        return self._prober.wait_until(check, probe, stage=Stage.PROPAGATION)
