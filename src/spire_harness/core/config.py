# src/spire_harness/core/config.py
"""
Configuration schema and loading for spire-harness.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction. Every field has a
default matching the stock SPIRE quickstart layout, so running without a
settings file is supported.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from spire_harness.contracts.types import RunLayout

ENV_PREFIX = "SPIRE_HARNESS"


def _default_selectors() -> list[str]:
    # Matches whatever uid the dependent test suite will run as.
    return [f"unix:uid:{os.getuid()}"]


class PathSettings(BaseModel):
    """Filesystem roots for one run.

    spire_dir holds binaries, configs, logs, pid records and the token
    file. tmp_dir is exported as TMPDIR to both services; their configs
    place sockets and private state under it via -expandEnv.
    """

    model_config = {"frozen": True}

    spire_dir: Path = Field(default=Path("./spire"), description="Working directory root")
    tmp_dir: Path = Field(
        default_factory=lambda: Path(os.environ.get("TMPDIR") or tempfile.gettempdir()),
        description="Temp directory root exported to services as TMPDIR",
    )
    log_dir: Path | None = Field(default=None, description="Log directory (default: <spire_dir>/log)")
    keep_logs: bool = Field(default=False, description="Leave server and agent logs in place on teardown")
    workload_socket: Path | None = Field(
        default=None,
        description="Workload API socket (default: <tmp_dir>/spire-agent/public/api.sock)",
    )


class ServerSettings(BaseModel):
    """Control-plane server process."""

    model_config = {"frozen": True}

    binary: Path | None = Field(default=None, description="Server binary (default: <spire_dir>/bin/spire-server)")
    config: Path | None = Field(default=None, description="Server config (default: <spire_dir>/conf/server.conf)")
    ready_url: str = Field(default="http://localhost:8080/ready", description="Health endpoint polled for 200")
    admin_timeout_seconds: float = Field(default=30.0, gt=0, description="Timeout for each admin subcommand")


class AgentSettings(BaseModel):
    """Node agent process."""

    model_config = {"frozen": True}

    binary: Path | None = Field(default=None, description="Agent binary (default: <spire_dir>/bin/spire-agent)")
    config: Path | None = Field(default=None, description="Agent config (default: <spire_dir>/conf/agent.conf)")
    ready_url: str = Field(default="http://localhost:8082/ready", description="Health endpoint polled for 200")
    insecure_bootstrap: bool = Field(default=True, description="Pass -insecureBootstrap to the agent")
    fetch_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for each 'api fetch' probe")


class ReadinessSettings(BaseModel):
    """Readiness polling budget shared by all three wait stages."""

    model_config = {"frozen": True}

    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-stage wall-clock budget")
    poll_interval_seconds: float = Field(default=1.0, ge=0, description="Delay between probes")
    max_attempts: int | None = Field(default=None, gt=0, description="Optional per-stage probe ceiling")
    abort_on_timeout: bool = Field(
        default=False,
        description="Abort the run when a readiness wait times out (default: log and continue)",
    )
    run_deadline_seconds: float | None = Field(default=None, gt=0, description="Overall bring-up deadline")
    http_timeout_seconds: float = Field(default=2.0, gt=0, description="Timeout for a single HTTP probe")


class RegistrationSettings(BaseModel):
    """Identities and selectors for the join token and registration entry."""

    model_config = {"frozen": True}

    agent_id: str = Field(default="spiffe://example.org/testagent", description="Node identity for the join token")
    workload_id: str = Field(default="spiffe://example.org/testservice", description="Workload identity to register")
    selectors: list[str] = Field(default_factory=_default_selectors, description="Entry selectors")
    dns_names: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1"], description="SAN hints")
    identity_marker: str | None = Field(
        default=None,
        description="Substring expected in 'api fetch' output (default: workload_id)",
    )

    @field_validator("agent_id", "workload_id")
    @classmethod
    def validate_spiffe_id(cls, v: str) -> str:
        if not v.startswith("spiffe://"):
            raise ValueError(f"must be a spiffe:// URI, got {v!r}")
        return v

    @field_validator("selectors")
    @classmethod
    def validate_selectors_not_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("At least one selector is required")
        for selector in v:
            if ":" not in selector:
                raise ValueError(f"selector must be 'type:value', got {selector!r}")
        return v

    @property
    def marker(self) -> str:
        return self.identity_marker or self.workload_id


class SuiteSettings(BaseModel):
    """Dependent test suite invoked once the identity is visible."""

    model_config = {"frozen": True}

    command: list[str] = Field(
        default_factory=lambda: ["cargo", "llvm-cov", "nextest", "--no-fail-fast"],
        description="Test command argv",
    )
    endpoint_env_var: str = Field(default="SPIFFE_ENDPOINT_SOCKET", description="Env var carrying the workload socket")
    working_dir: Path | None = Field(default=None, description="Working directory (default: current directory)")
    ignore_failures: bool = Field(default=False, description="Exit 0 even when the test suite fails")

    @field_validator("command")
    @classmethod
    def validate_command_not_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("test command must not be empty")
        return v


class LockSettings(BaseModel):
    """Run lock behavior when another run holds the lock."""

    model_config = {"frozen": True}

    mode: Literal["fail", "wait"] = "fail"
    timeout_seconds: float = Field(default=60.0, gt=0, description="Wait budget in 'wait' mode")


class HarnessSettings(BaseModel):
    """Top-level spire-harness configuration.

    All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True}

    paths: PathSettings = Field(default_factory=PathSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    readiness: ReadinessSettings = Field(default_factory=ReadinessSettings)
    registration: RegistrationSettings = Field(default_factory=RegistrationSettings)
    tests: SuiteSettings = Field(default_factory=SuiteSettings)
    lock: LockSettings = Field(default_factory=LockSettings)

    @model_validator(mode="after")
    def validate_poll_within_timeout(self) -> "HarnessSettings":
        """A poll interval longer than the stage budget would never re-probe."""
        if self.readiness.poll_interval_seconds > self.readiness.timeout_seconds:
            raise ValueError("readiness.poll_interval_seconds must not exceed readiness.timeout_seconds")
        return self

    @property
    def server_binary(self) -> Path:
        return self.server.binary or self.paths.spire_dir / "bin" / "spire-server"

    @property
    def agent_binary(self) -> Path:
        return self.agent.binary or self.paths.spire_dir / "bin" / "spire-agent"

    @property
    def server_config(self) -> Path:
        return self.server.config or self.paths.spire_dir / "conf" / "server.conf"

    @property
    def agent_config(self) -> Path:
        return self.agent.config or self.paths.spire_dir / "conf" / "agent.conf"

    def layout(self) -> RunLayout:
        """Derive every path of one run from the configured roots."""
        state_dir = self.paths.spire_dir
        tmp_dir = self.paths.tmp_dir
        log_dir = self.paths.log_dir or state_dir / "log"
        server_data_dir = tmp_dir / "spire-server"
        agent_data_dir = tmp_dir / "spire-agent"
        return RunLayout(
            state_dir=state_dir,
            tmp_dir=tmp_dir,
            log_dir=log_dir,
            server_pid_file=state_dir / "server.pid",
            agent_pid_file=state_dir / "agent.pid",
            token_file=state_dir / "join.token",
            server_log=log_dir / "server.log",
            agent_log=log_dir / "agent.log",
            server_data_dir=server_data_dir,
            agent_data_dir=agent_data_dir,
            server_socket=server_data_dir / "private" / "api.sock",
            workload_socket=self.paths.workload_socket or agent_data_dir / "public" / "api.sock",
            lock_file=tmp_dir / "spire-harness.lock",
        )


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)  # None if no default specified
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original so validation reports it
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lowercase_keys(value: Any) -> Any:
    """Lowercase mapping keys at every level.

    Dynaconf upper-cases keys that arrive through environment variables
    (SPIRE_HARNESS_READINESS__TIMEOUT_SECONDS -> TIMEOUT_SECONDS), while the
    schema uses lowercase field names.
    """
    if isinstance(value, dict):
        return {str(k).lower(): _lowercase_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lowercase_keys(item) for item in value]
    return value


def load_settings(config_path: Path | None = None) -> HarnessSettings:
    """Load settings from an optional YAML file with environment overrides.

    Precedence (highest first):
    1. Environment variables (SPIRE_HARNESS_*), nested keys joined by "__",
       e.g. SPIRE_HARNESS_READINESS__TIMEOUT_SECONDS=60
    2. Settings file
    3. Defaults from the Pydantic schema

    Args:
        config_path: Path to YAML settings file, or None for env + defaults

    Returns:
        Validated HarnessSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If an explicit config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if config_path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix=ENV_PREFIX,
        settings_files=[str(config_path)] if config_path is not None else [],
        environments=False,
        load_dotenv=False,  # The CLI loads .env itself
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lowercase_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return HarnessSettings(**raw_config)
