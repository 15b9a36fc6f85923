# src/spire_harness/engine/teardown.py
"""Teardown: idempotent, best-effort removal of everything a run created.

Safe to call from any state - before any bring-up, mid-failure, after a
crash of an earlier invocation, or twice in a row. Each step runs on its
own; a failure is logged and collected into the TeardownReport, and the
remaining steps still run. Nothing here raises, so cleanup problems can
never mask the error or test outcome that triggered teardown.

Steps, in order:
1. Stop the agent (tracked handle and/or pid record)
2. Stop the server
3. Delete pid records and the token file
4. Delete the server and agent logs (unless remove_logs is False), then
   the log directory if that left it empty
5. Remove the server and agent private-state directories
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

import structlog

from spire_harness.contracts.enums import ServiceName
from spire_harness.contracts.protocols import SupervisorProtocol
from spire_harness.contracts.types import ProcessHandle, RunLayout, TeardownReport

logger = structlog.get_logger(__name__)

# Agent first: it holds a connection to the server
_STOP_ORDER: tuple[ServiceName, ...] = (ServiceName.AGENT, ServiceName.SERVER)

# Leftovers from earlier runs in the state directory
_MARKER_GLOBS: tuple[str, ...] = ("*.pid", "*.token", ".*.pid.tmp")


class Teardown:
    """Stops tracked processes and removes run artifacts.

    Args:
        layout: Paths of the run
        supervisor: Used to signal processes and to recover handles from
            pid records
        remove_tree: shutil.rmtree-compatible callable (tests inject
            failures through it)
        remove_logs: Delete per-service logs along with the markers
    """

    def __init__(
        self,
        layout: RunLayout,
        supervisor: SupervisorProtocol,
        *,
        remove_tree: Callable[[Path], None] = shutil.rmtree,
        remove_logs: bool = True,
    ) -> None:
        self._layout = layout
        self._supervisor = supervisor
        self._remove_tree = remove_tree
        self._remove_logs = remove_logs

    def recover_handles(self) -> list[ProcessHandle]:
        """Handles for every pid record on disk, agent first.

        Each is "possibly still running": a live process, or a stale
        leftover from an unclean shutdown.
        """
        handles: list[ProcessHandle] = []
        for name in _STOP_ORDER:
            handle = self._supervisor.recover(name, self._layout.pid_file_for(name))
            if handle is not None:
                handles.append(handle)
        return handles

    def down(self, tracked: Sequence[ProcessHandle] = ()) -> TeardownReport:
        """Run every cleanup step; never raises.

        Args:
            tracked: Handles known to the current orchestrator. Pid records
                on disk are consulted as well, so a fresh process can clean
                up after a crashed one.
        """
        report = TeardownReport()

        for name in _STOP_ORDER:
            self._stop_service(name, tracked, report)

        for marker in self._marker_files():
            self._remove_file(marker, report)

        if self._remove_logs:
            for log in (self._layout.server_log, self._layout.agent_log):
                self._remove_file(log, report)
            self._remove_empty_directory(self._layout.log_dir, report)

        for directory in (self._layout.server_data_dir, self._layout.agent_data_dir):
            self._remove_directory(directory, report)

        logger.info(
            "Teardown complete",
            stopped=[handle.pid for handle in report.stopped],
            removed=len(report.removed),
            errors=len(report.errors),
        )
        return report

    def _stop_service(self, name: ServiceName, tracked: Iterable[ProcessHandle], report: TeardownReport) -> None:
        handles = {handle.pid: handle for handle in tracked if handle.name == name}
        try:
            recovered = self._supervisor.recover(name, self._layout.pid_file_for(name))
        except Exception as e:
            self._record_error(report, f"recover {name}", e)
            recovered = None
        if recovered is not None:
            handles.setdefault(recovered.pid, recovered)

        for handle in handles.values():
            try:
                if self._supervisor.stop(handle):
                    report.stopped.append(handle)
            except Exception as e:
                self._record_error(report, f"stop {name} (pid {handle.pid})", e)

    def _marker_files(self) -> list[Path]:
        layout = self._layout
        markers = [layout.agent_pid_file, layout.server_pid_file, layout.token_file]
        try:
            if layout.state_dir.is_dir():
                for pattern in _MARKER_GLOBS:
                    markers.extend(sorted(layout.state_dir.glob(pattern)))
        except OSError as e:
            logger.warning("Could not scan state directory", state_dir=str(layout.state_dir), error=str(e))
        return list(dict.fromkeys(markers))

    def _remove_file(self, path: Path, report: TeardownReport) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except Exception as e:
            self._record_error(report, f"remove {path}", e)
            return
        report.removed.append(path)

    def _remove_directory(self, path: Path, report: TeardownReport) -> None:
        try:
            if not path.exists():
                return
            self._remove_tree(path)
        except Exception as e:
            self._record_error(report, f"remove {path}", e)
            return
        report.removed.append(path)

    def _remove_empty_directory(self, path: Path, report: TeardownReport) -> None:
        try:
            if not path.is_dir() or any(path.iterdir()):
                return
            path.rmdir()
        except Exception as e:
            self._record_error(report, f"remove {path}", e)
            return
        report.removed.append(path)

    @staticmethod
    def _record_error(report: TeardownReport, step: str, error: Exception) -> None:
        logger.warning(
            "Teardown step failed",
            step=step,
            error=str(error),
            error_type=type(error).__name__,
        )
        report.errors.append(f"{step}: {type(error).__name__}: {error}")
