# src/spire_harness/core/lock.py
"""Run lock: the mutual-exclusion scope for one orchestration run.

Runs share fixed health-check ports, a temp root, and pid records, so two
runs against the same resources would kill each other's processes. The
lock makes that assumption explicit: every command that touches run
resources holds an exclusive flock on <tmp_dir>/spire-harness.lock.
"""

from __future__ import annotations

import fcntl
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Literal

import structlog

from spire_harness.contracts.errors import LockHeldError

logger = structlog.get_logger(__name__)

_WAIT_STEP_SECONDS = 0.05


@contextmanager
def run_lock(
    lock_path: Path,
    *,
    mode: Literal["fail", "wait"] = "fail",
    timeout_seconds: float = 60.0,
) -> Iterator[Path]:
    """Hold the run lock for the duration of the block.

    Args:
        lock_path: Lock file (created if missing, never deleted)
        mode: "fail" raises immediately if held; "wait" polls until
            timeout_seconds elapse
        timeout_seconds: Wait budget in "wait" mode

    Raises:
        LockHeldError: Lock unavailable
        ValueError: Unknown mode
    """
    if mode not in ("fail", "wait"):
        raise ValueError(f"invalid lock mode: {mode!r}")

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fh = lock_path.open("a+")
    start = time.monotonic()
    try:
        while True:
            try:
                fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if mode == "fail":
                    raise LockHeldError(str(lock_path)) from None
                waited = time.monotonic() - start
                if waited >= timeout_seconds:
                    raise LockHeldError(str(lock_path), waited_seconds=waited) from None
                time.sleep(_WAIT_STEP_SECONDS)
    except BaseException:
        fh.close()
        raise

    # Holder pid is informational only; flock is the source of truth.
    fh.seek(0)
    fh.truncate()
    fh.write(f"{os.getpid()}\n")
    fh.flush()
    logger.debug("Run lock acquired", lock_path=str(lock_path))
    try:
        yield lock_path
    finally:
        try:
            fcntl.flock(fh, fcntl.LOCK_UN)
        finally:
            fh.close()
        logger.debug("Run lock released", lock_path=str(lock_path))
