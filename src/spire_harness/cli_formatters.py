# src/spire_harness/cli_formatters.py
"""Renders orchestrator events for the CLI.

Console output is one bracketed line per stage transition plus a final
summary; JSON output is one object per line with an "event" key. Errors
and readiness warnings go to stderr in console mode.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import typer

from spire_harness.contracts.events import (
    ReadinessTimedOut,
    RunSummary,
    StageCompleted,
    StageError,
    StageStarted,
    TeardownCompleted,
)
from spire_harness.core.events import EventBusProtocol


def _format_duration(seconds: float) -> str:
    return f"{seconds:.2f}s" if seconds < 60 else f"{seconds / 60:.1f}m"


def create_console_formatters() -> dict[type, Callable[..., None]]:
    """Create console formatters for human-readable CLI output."""

    def _format_stage_started(event: StageStarted) -> None:
        target_info = f" → {event.target}" if event.target else ""
        typer.echo(f"[{event.stage.value.upper()}] Starting{target_info}...")

    def _format_stage_completed(event: StageCompleted) -> None:
        typer.echo(f"[{event.stage.value.upper()}] ✓ Completed in {_format_duration(event.duration_seconds)}")

    def _format_stage_error(event: StageError) -> None:
        typer.echo(f"[{event.stage.value.upper()}] ✗ Error: {event.error_message}", err=True)

    def _format_readiness_timed_out(event: ReadinessTimedOut) -> None:
        action = "aborting" if event.aborting else "continuing"
        typer.echo(
            f"[{event.stage.value.upper()}] ⚠ Not ready after {event.attempts} attempts "
            f"({_format_duration(event.elapsed_seconds)}), {action}",
            err=True,
        )

    def _format_teardown_completed(event: TeardownCompleted) -> None:
        typer.echo(f"[TEARDOWN] Stopped {event.stopped} process(es), removed {event.removed} path(s)")
        for error in event.errors:
            typer.echo(f"[TEARDOWN] ⚠ {error}", err=True)

    def _format_run_summary(event: RunSummary) -> None:
        status_symbols = {
            "completed": "✓",
            "tests_failed": "⚠",
            "failed": "✗",
        }
        symbol = status_symbols[event.status.value]
        detail = ""
        if event.failed_stage is not None:
            detail = f" | failed at {event.failed_stage.value}"
        elif event.test_returncode is not None:
            detail = f" | tests exited {event.test_returncode}"
        typer.echo(
            f"\n{symbol} Run {event.status.value.upper()}{detail} | "
            f"exit {event.exit_code} | {_format_duration(event.duration_seconds)} total"
        )

    return {
        StageStarted: _format_stage_started,
        StageCompleted: _format_stage_completed,
        StageError: _format_stage_error,
        ReadinessTimedOut: _format_readiness_timed_out,
        TeardownCompleted: _format_teardown_completed,
        RunSummary: _format_run_summary,
    }


def create_json_formatters() -> dict[type, Callable[..., None]]:
    """Create JSON formatters for structured CLI output."""

    def _format_stage_started_json(event: StageStarted) -> None:
        typer.echo(json.dumps({"event": "stage_started", "stage": event.stage.value, "target": event.target}))

    def _format_stage_completed_json(event: StageCompleted) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "stage_completed",
                    "stage": event.stage.value,
                    "duration_seconds": event.duration_seconds,
                }
            )
        )

    def _format_stage_error_json(event: StageError) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "stage_error",
                    "stage": event.stage.value,
                    "error": event.error_message,
                    "error_type": type(event.error).__name__,
                }
            ),
            err=True,
        )

    def _format_readiness_timed_out_json(event: ReadinessTimedOut) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "readiness_timed_out",
                    "stage": event.stage.value,
                    "attempts": event.attempts,
                    "elapsed_seconds": event.elapsed_seconds,
                    "aborting": event.aborting,
                }
            ),
            err=True,
        )

    def _format_teardown_completed_json(event: TeardownCompleted) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "teardown_completed",
                    "stopped": event.stopped,
                    "removed": event.removed,
                    "errors": list(event.errors),
                }
            )
        )

    def _format_run_summary_json(event: RunSummary) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "run_completed",
                    "status": event.status.value,
                    "exit_code": event.exit_code,
                    "duration_seconds": event.duration_seconds,
                    "failed_stage": event.failed_stage.value if event.failed_stage is not None else None,
                    "test_returncode": event.test_returncode,
                }
            )
        )

    return {
        StageStarted: _format_stage_started_json,
        StageCompleted: _format_stage_completed_json,
        StageError: _format_stage_error_json,
        ReadinessTimedOut: _format_readiness_timed_out_json,
        TeardownCompleted: _format_teardown_completed_json,
        RunSummary: _format_run_summary_json,
    }


def subscribe_formatters(
    event_bus: EventBusProtocol,
    formatters: dict[type, Callable[..., None]],
) -> None:
    """Subscribe all formatters to the event bus.

    Args:
        event_bus: The event bus to subscribe handlers to.
        formatters: Mapping from event type to handler callable.
    """
    for event_type, handler in formatters.items():
        event_bus.subscribe(event_type, handler)
