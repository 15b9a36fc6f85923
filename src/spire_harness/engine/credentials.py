# src/spire_harness/engine/credentials.py
"""Bootstrap credential exchange against the server's admin socket.

Two single-shot calls, both fatal on failure and never retried here:
readiness gating before this stage owns the retrying.

- token generate: mint a one-time join token for the agent's node identity
- entry create: declare the workload binding the agent will serve

The token reaches the agent stage through a 0600 file in the state
directory, deleted again by teardown.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

import structlog

from spire_harness.contracts.enums import Stage
from spire_harness.contracts.errors import AdminCommandError
from spire_harness.contracts.types import JoinCredential, RegistrationEntry

logger = structlog.get_logger(__name__)

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]
"""subprocess.run-compatible callable, injectable for tests."""


def parse_join_token(output: str) -> str | None:
    """Extract the token from `token generate` output.

    The server prints `Token: <value>`. Lines without the label fall back
    to the second whitespace-separated field of the first non-empty line.
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    for line in lines:
        label, _, value = line.partition(":")
        if label.strip().lower() == "token" and value.strip():
            return value.strip().split()[0]
    if lines:
        fields = lines[0].split()
        if len(fields) >= 2:
            return fields[1]
    return None


class CredentialExchange:
    """Administrative calls against a running server.

    Args:
        server_binary: Server executable
        socket_path: Server admin (private API) socket
        timeout_seconds: Timeout for each call
        runner: subprocess.run-compatible callable
    """

    def __init__(
        self,
        server_binary: Path,
        socket_path: Path,
        *,
        timeout_seconds: float = 30.0,
        env: dict[str, str] | None = None,
        runner: CommandRunner = subprocess.run,
    ) -> None:
        self._binary = server_binary
        self._socket_path = socket_path
        self._timeout = timeout_seconds
        self._env = env
        self._run = runner

    def issue_join_token(self, target_identity: str) -> JoinCredential:
        """Mint a join token bound to the agent's node identity.

        Raises:
            AdminCommandError: Call failed or printed no token
        """
        output = self._call(
            Stage.JOIN_TOKEN,
            "token generate",
            ["token", "generate", "-socketPath", str(self._socket_path), "-spiffeID", target_identity],
        )
        token = parse_join_token(output)
        if token is None:
            raise AdminCommandError(Stage.JOIN_TOKEN, "token generate", returncode=0, reason="no token in output")
        logger.info("Join token issued", identity=target_identity)
        return JoinCredential(token=token, identity=target_identity)

    def create_registration_entry(self, entry: RegistrationEntry) -> None:
        """Register the workload entry under the agent's node identity.

        Not guaranteed idempotent by the server; call once per run.

        Raises:
            AdminCommandError: Call failed
        """
        args = [
            "entry",
            "create",
            "-socketPath",
            str(self._socket_path),
            "-parentID",
            entry.parent_id,
            "-spiffeID",
            entry.spiffe_id,
        ]
        for selector in entry.selectors:
            args.extend(["-selector", selector])
        for dns_name in entry.dns_names:
            args.extend(["-dns", dns_name])

        self._call(Stage.REGISTRATION_ENTRY, "entry create", args)
        logger.info(
            "Registration entry created",
            parent_id=entry.parent_id,
            spiffe_id=entry.spiffe_id,
            selectors=list(entry.selectors),
            dns_names=list(entry.dns_names),
        )

    def _call(self, stage: Stage, command: str, args: Sequence[str]) -> str:
        argv = [str(self._binary), *args]
        env = {**os.environ, **self._env} if self._env else None
        try:
            completed = self._run(
                argv,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise AdminCommandError(stage, command, reason=f"timed out after {e.timeout}s") from e
        except OSError as e:
            raise AdminCommandError(stage, command, reason=f"{type(e).__name__}: {e}") from e

        if completed.returncode != 0:
            raise AdminCommandError(
                stage,
                command,
                returncode=completed.returncode,
                output=completed.stderr or completed.stdout or "",
            )
        return completed.stdout or ""


def persist_credential(path: Path, credential: JoinCredential) -> None:
    """Write the token for the agent stage, readable only by this user.

    Raises:
        AdminCommandError: The state directory or token file is not writable
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(f"{credential.token}\n")
    except OSError as e:
        raise AdminCommandError(Stage.JOIN_TOKEN, "persist join token", reason=f"{type(e).__name__}: {e}") from e


def load_credential(path: Path, identity: str) -> JoinCredential:
    """Read the token written by persist_credential().

    Raises:
        AdminCommandError: File missing, unreadable, or empty (the token
            stage never completed)
    """
    try:
        token = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError as e:
        raise AdminCommandError(Stage.AGENT_START, "load join token", reason=f"{path} not found") from e
    except OSError as e:
        raise AdminCommandError(Stage.AGENT_START, "load join token", reason=f"{type(e).__name__}: {e}") from e
    if not token:
        raise AdminCommandError(Stage.AGENT_START, "load join token", reason=f"{path} is empty")
    return JoinCredential(token=token, identity=identity)
