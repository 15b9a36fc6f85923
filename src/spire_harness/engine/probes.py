# src/spire_harness/engine/probes.py
"""Probe factories and predicates for readiness checks.

Every probe here swallows the transient failures expected while a service
is still coming up and reports them as a "not ready" value: None for HTTP
probes, an empty string for command probes.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Sequence

import httpx
import structlog

logger = structlog.get_logger(__name__)


def http_status_probe(
    url: str,
    *,
    timeout_seconds: float = 2.0,
    client: httpx.Client | None = None,
) -> Callable[[], int | None]:
    """Probe returning the HTTP status of GET url, or None if unreachable.

    Args:
        url: Health endpoint
        timeout_seconds: Per-request timeout
        client: Optional client (tests pass one with a MockTransport)
    """

    def probe() -> int | None:
        try:
            if client is not None:
                response = client.get(url, timeout=timeout_seconds)
            else:
                response = httpx.get(url, timeout=timeout_seconds)
        except httpx.TransportError as e:
            logger.debug("Health endpoint unreachable", url=url, error_type=type(e).__name__)
            return None
        return response.status_code

    return probe


def command_output_probe(argv: Sequence[str], *, timeout_seconds: float = 10.0) -> Callable[[], str]:
    """Probe returning a command's stdout, or "" if it could not run.

    A non-zero exit is not an error here: the output is still returned and
    the predicate decides. `spire-agent api fetch` exits non-zero until the
    agent has an identity to hand out.
    """
    command = list(argv)

    def probe() -> str:
        try:
            completed = subprocess.run(  # noqa: S603 - argv comes from validated settings
                command,
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Probe command failed to run", command=command[0], error_type=type(e).__name__)
            return ""
        return completed.stdout

    return probe


def status_is(expected: int) -> Callable[[int | None], bool]:
    """Predicate: HTTP status equals expected."""

    def predicate(status: int | None) -> bool:
        return status == expected

    return predicate


def output_contains(marker: str) -> Callable[[str], bool]:
    """Predicate: command output contains marker."""

    def predicate(output: str) -> bool:
        return marker in output

    return predicate
