# src/spire_harness/engine/suite.py
"""Runs the dependent test suite against the workload socket.

The suite finds the agent through an environment variable holding a
unix:// URI (SPIFFE_ENDPOINT_SOCKET by default). Output streams are
inherited so test output reaches the terminal unbuffered.
"""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Sequence
from pathlib import Path

import structlog

from spire_harness.contracts.enums import Stage
from spire_harness.contracts.errors import LaunchError
from spire_harness.contracts.types import TestRunResult

logger = structlog.get_logger(__name__)


class SuiteRunner:
    """Invokes the configured test command once per run."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        workload_socket: Path,
        endpoint_env_var: str = "SPIFFE_ENDPOINT_SOCKET",
        working_dir: Path | None = None,
    ) -> None:
        self._command = list(command)
        self._workload_socket = workload_socket
        self._endpoint_env_var = endpoint_env_var
        self._working_dir = working_dir

    @property
    def endpoint(self) -> str:
        return f"unix://{self._workload_socket}"

    def run(self) -> TestRunResult:
        """Run the suite to completion.

        Raises:
            LaunchError: Test command could not be started
        """
        env = {**os.environ, self._endpoint_env_var: self.endpoint}
        logger.info("Running dependent tests", command=self._command, endpoint=self.endpoint)
        started = time.perf_counter()
        try:
            completed = subprocess.run(  # noqa: S603 - argv comes from validated settings
                self._command,
                env=env,
                cwd=self._working_dir,
                check=False,
            )
        except OSError as e:
            raise LaunchError(Stage.TESTS, self._command[0], e) from e

        result = TestRunResult(returncode=completed.returncode, duration_seconds=time.perf_counter() - started)
        log = logger.info if result.passed else logger.warning
        log("Dependent tests finished", returncode=result.returncode, duration_seconds=round(result.duration_seconds, 3))
        return result
