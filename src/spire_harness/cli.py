# src/spire_harness/cli.py
"""spire-harness Command Line Interface.

Entry point for the spire-harness CLI tool.

Exit codes:
    0: Success
    1: Configuration error, or the run lock is held
    2: A bring-up stage failed (environment torn down)
    other: Exit code of the dependent test suite (`test` only)
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from spire_harness import __version__
from spire_harness.cli_formatters import create_console_formatters, create_json_formatters, subscribe_formatters
from spire_harness.contracts.enums import ServiceName
from spire_harness.contracts.errors import HarnessError, LockHeldError
from spire_harness.core.config import HarnessSettings, load_settings
from spire_harness.core.events import EventBus
from spire_harness.core.lock import run_lock
from spire_harness.engine.orchestrator import Orchestrator
from spire_harness.engine.supervisor import is_alive, read_pid_record

__all__ = [
    "app",
    "load_settings",  # Re-exported from config for convenience
]

EXIT_CONFIG_ERROR = 1
EXIT_STAGE_FAILED = 2

app = typer.Typer(
    name="spire-harness",
    help="spire-harness: Bring up a SPIRE server and agent for integration tests.",
    no_args_is_help=True,
)

OutputFormat = Literal["console", "json"]

_SETTINGS_OPTION = typer.Option(
    None,
    "--settings",
    "-s",
    help="Path to settings YAML file (default: environment + built-in defaults).",
)
_FORMAT_OPTION = typer.Option(
    "console",
    "--format",
    "-f",
    help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"spire-harness version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(EXIT_CONFIG_ERROR)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # We handle existence check ourselves for better error message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """spire-harness: Bring up a SPIRE server and agent for integration tests."""
    # Configure logging before any subcommand runs
    from spire_harness.core.logging import configure_logging

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


def _load_settings_or_exit(settings: str | None) -> HarnessSettings:
    """Load settings, reporting every failure mode as exit code 1."""
    settings_path = Path(settings).expanduser() if settings is not None else None
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        # e.problem contains the specific error (e.g., "expected ']'", "found a tab")
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None


def _build_orchestrator(config: HarnessSettings, output_format: OutputFormat) -> Orchestrator:
    event_bus = EventBus()
    formatters = create_json_formatters() if output_format == "json" else create_console_formatters()
    subscribe_formatters(event_bus, formatters)
    return Orchestrator(config, event_bus=event_bus)


def _report_error(error: BaseException, output_format: OutputFormat) -> None:
    """Emit structured error for JSON mode, human-readable for console."""
    if output_format == "json":
        payload: dict[str, object] = {"event": "error", "error": str(error), "error_type": type(error).__name__}
        if isinstance(error, HarnessError):
            payload["stage"] = error.stage.value
        typer.echo(json.dumps(payload), err=True)
    elif isinstance(error, HarnessError):
        typer.echo(f"Error during {error.stage.value}: {error}", err=True)
    else:
        typer.echo(f"Error: {error}", err=True)


@app.command()
def up(
    settings: str | None = _SETTINGS_OPTION,
    output_format: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Start the server and agent and wait until the workload identity is served.

    The processes keep running after this command exits; use `down` to stop
    them.
    """
    config = _load_settings_or_exit(settings)
    layout = config.layout()
    orchestrator = _build_orchestrator(config, output_format)

    try:
        with run_lock(layout.lock_file, mode=config.lock.mode, timeout_seconds=config.lock.timeout_seconds):
            with orchestrator.shutdown_handler_context():
                orchestrator.up()
    except LockHeldError as e:
        _report_error(e, output_format)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None
    except HarnessError as e:
        _report_error(e, output_format)
        raise typer.Exit(EXIT_STAGE_FAILED) from None

    endpoint = f"unix://{layout.workload_socket}"
    if output_format == "json":
        typer.echo(json.dumps({"event": "ready", "endpoint": endpoint, "env_var": config.tests.endpoint_env_var}))
    else:
        typer.echo(f"\n✓ Environment ready: {config.tests.endpoint_env_var}={endpoint}")


@app.command()
def down(
    settings: str | None = _SETTINGS_OPTION,
    output_format: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Stop both services and remove every run artifact.

    Safe to run at any time, including when nothing is running. Cleanup
    problems are reported but never change the exit code.
    """
    config = _load_settings_or_exit(settings)
    layout = config.layout()
    orchestrator = _build_orchestrator(config, output_format)

    try:
        with run_lock(layout.lock_file, mode=config.lock.mode, timeout_seconds=config.lock.timeout_seconds):
            orchestrator.down()
    except LockHeldError as e:
        _report_error(e, output_format)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None


@app.command()
def test(
    settings: str | None = _SETTINGS_OPTION,
    output_format: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Bring the environment up, run the dependent test suite, and tear down.

    Teardown runs on every exit path. The exit code is the suite's exit
    code (0 with tests.ignore_failures), or 2 if bring-up failed.
    """
    config = _load_settings_or_exit(settings)
    layout = config.layout()
    orchestrator = _build_orchestrator(config, output_format)

    try:
        with run_lock(layout.lock_file, mode=config.lock.mode, timeout_seconds=config.lock.timeout_seconds):
            with orchestrator.shutdown_handler_context():
                result = orchestrator.run()
    except LockHeldError as e:
        _report_error(e, output_format)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None
    except HarnessError as e:
        _report_error(e, output_format)
        raise typer.Exit(EXIT_STAGE_FAILED) from None

    if result.exit_code != 0:
        raise typer.Exit(result.exit_code)


@app.command()
def status(
    settings: str | None = _SETTINGS_OPTION,
    output_format: OutputFormat = _FORMAT_OPTION,
) -> None:
    """Show run paths and whether recorded processes are alive.

    Read-only: does not take the run lock.
    """
    config = _load_settings_or_exit(settings)
    layout = config.layout()

    services: dict[str, dict[str, object]] = {}
    for name in (ServiceName.SERVER, ServiceName.AGENT):
        pid_file = layout.pid_file_for(name)
        try:
            pid = read_pid_record(pid_file)
        except (OSError, ValueError) as e:
            services[name.value] = {"pid_file": str(pid_file), "pid": None, "alive": False, "error": str(e)}
            continue
        services[name.value] = {
            "pid_file": str(pid_file),
            "pid": pid,
            "alive": pid is not None and is_alive(pid),
        }
    token_present = layout.token_file.exists()

    if output_format == "json":
        typer.echo(
            json.dumps(
                {
                    "services": services,
                    "token_present": token_present,
                    "workload_socket": str(layout.workload_socket),
                    "layout": layout.to_dict(),
                }
            )
        )
        return

    for name, info in services.items():
        if info["pid"] is None:
            state = f"not recorded ({info['error']})" if "error" in info else "not recorded"
        else:
            state = f"pid {info['pid']} ({'alive' if info['alive'] else 'stale'})"
        typer.echo(f"{name}: {state}")
    typer.echo(f"join token: {'present' if token_present else 'absent'}")
    typer.echo(f"workload socket: {layout.workload_socket}")


@app.command()
def validate(
    settings: str | None = _SETTINGS_OPTION,
) -> None:
    """Validate configuration and check that binaries and configs exist."""
    config = _load_settings_or_exit(settings)

    problems: list[str] = []
    for label, binary in (("server binary", config.server_binary), ("agent binary", config.agent_binary)):
        if not binary.is_file():
            problems.append(f"{label} not found: {binary}")
    for label, conf in (("server config", config.server_config), ("agent config", config.agent_config)):
        if not conf.is_file():
            problems.append(f"{label} not found: {conf}")

    if problems:
        typer.echo("Validation failed:", err=True)
        for problem in problems:
            typer.echo(f"  - {problem}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR)

    typer.echo("Configuration valid.")
    typer.echo(f"  Server: {config.server_binary} -config {config.server_config}")
    typer.echo(f"  Agent:  {config.agent_binary} -config {config.agent_config}")
    typer.echo(f"  Tests:  {' '.join(config.tests.command)}")


if __name__ == "__main__":
    app()
