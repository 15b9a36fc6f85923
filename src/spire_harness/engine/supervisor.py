# src/spire_harness/engine/supervisor.py
"""ProcessSupervisor: launch, track, and signal external services.

start() is non-blocking: it returns once the OS has accepted the launch,
never once the service is ready. The pid is written to a durable record
before start() returns, so an orchestrator that crashes right after launch
still leaves enough behind for a later teardown to find the process.

stop() is fire-and-forget: it sends SIGTERM and returns without waiting
for the child to exit, matching how the external binaries shut down.
"""

from __future__ import annotations

import os
import signal
import subprocess
from pathlib import Path

import structlog

from spire_harness.contracts.enums import ServiceName, Stage
from spire_harness.contracts.errors import LaunchError
from spire_harness.contracts.types import ProcessHandle, ServiceSpec

logger = structlog.get_logger(__name__)

# SIGTERM grace period before SIGKILL when a launch must be rolled back
_ROLLBACK_GRACE_SECONDS = 5.0


def write_pid_record(pid_file: Path, pid: int) -> None:
    """Write a pid record atomically.

    Same format as `echo $! > file` so records stay readable by shell
    tooling. The temp-file + rename means a crash never leaves a
    half-written record.
    """
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    tmp = pid_file.with_name(f".{pid_file.name}.tmp")
    tmp.write_text(f"{pid}\n", encoding="utf-8")
    os.replace(tmp, pid_file)


def read_pid_record(pid_file: Path) -> int | None:
    """Read a pid record.

    Returns:
        The pid, or None if the record is missing.

    Raises:
        ValueError: If the record exists but does not hold a positive pid.
    """
    try:
        text = pid_file.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    pid = int(text)
    if pid <= 0:
        # kill(0) / kill(-1) would signal whole process groups
        raise ValueError(f"pid must be positive, got {pid}")
    return pid


def is_alive(pid: int) -> bool:
    """Signal-0 liveness check.

    PermissionError means the pid exists but belongs to someone else, which
    for a stale record usually means the pid was reused.
    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _terminate(process: subprocess.Popen[bytes]) -> None:
    """Stop and reap a child this module launched but could not record."""
    process.terminate()
    try:
        process.wait(timeout=_ROLLBACK_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


class ProcessSupervisor:
    """Launches external services and keeps their handles.

    Popen objects are kept so stop() can reap exited children without
    blocking; handles recovered from pid records have no Popen and are
    only signalled.
    """

    def __init__(self) -> None:
        self._children: dict[int, subprocess.Popen[bytes]] = {}

    def start(self, spec: ServiceSpec, *, stage: Stage) -> ProcessHandle:
        """Launch a service with output redirected to its log sink.

        Args:
            spec: What to launch
            stage: Stage reported if the launch fails

        Returns:
            Handle for the launched process

        Raises:
            LaunchError: Binary missing, not executable, log sink unwritable,
                or pid record unwritable (the child is stopped first)
        """
        env = {**os.environ, **spec.env}
        try:
            spec.log_path.parent.mkdir(parents=True, exist_ok=True)
            with spec.log_path.open("wb") as log_sink:
                process = subprocess.Popen(  # noqa: S603 - argv comes from validated settings
                    spec.argv,
                    stdout=log_sink,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    cwd=spec.working_dir,
                    env=env,
                    start_new_session=True,
                )
        except OSError as e:
            logger.error(
                "Failed to launch service",
                service=spec.name,
                binary=str(spec.binary),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise LaunchError(stage, str(spec.binary), e) from e

        try:
            write_pid_record(spec.pid_file, process.pid)
        except OSError as e:
            # Without a record no later teardown could find the child
            logger.error(
                "Failed to record pid, stopping service",
                service=spec.name,
                pid=process.pid,
                pid_file=str(spec.pid_file),
                error=str(e),
            )
            _terminate(process)
            raise LaunchError(stage, str(spec.binary), e) from e

        self._children[process.pid] = process

        logger.info(
            "Service launched",
            service=spec.name,
            pid=process.pid,
            log=str(spec.log_path),
            pid_file=str(spec.pid_file),
        )
        return ProcessHandle(name=spec.name, pid=process.pid, log_path=spec.log_path, pid_file=spec.pid_file)

    def stop(self, handle: ProcessHandle) -> bool:
        """Send SIGTERM to a process.

        Returns:
            True if a signal was delivered, False if the process was
            already gone (a no-op, not an error)
        """
        try:
            os.kill(handle.pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Process already gone", service=handle.name, pid=handle.pid)
            self._reap(handle.pid)
            return False
        except PermissionError:
            # Pid was reused by a process we don't own - leave it alone
            logger.warning("Not permitted to signal process, treating as stale", service=handle.name, pid=handle.pid)
            return False

        logger.info("Sent SIGTERM", service=handle.name, pid=handle.pid)
        self._reap(handle.pid)
        return True

    def recover(self, name: ServiceName, pid_file: Path) -> ProcessHandle | None:
        """Rebuild a handle from a pid record left by an earlier invocation.

        The process may still be running or may be a stale leftover from an
        unclean shutdown; callers treat it as "possibly running".
        """
        try:
            pid = read_pid_record(pid_file)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable pid record", service=name, pid_file=str(pid_file), error=str(e))
            return None
        if pid is None:
            return None
        return ProcessHandle(name=name, pid=pid, log_path=None, pid_file=pid_file)

    def _reap(self, pid: int) -> None:
        process = self._children.get(pid)
        if process is None:
            return
        # poll() never blocks; an unreaped child stays tracked for the next call
        if process.poll() is not None:
            del self._children[pid]
