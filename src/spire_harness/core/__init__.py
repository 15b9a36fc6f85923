"""Core infrastructure: configuration, logging, event bus, run lock."""

from spire_harness.core.config import HarnessSettings, load_settings
from spire_harness.core.events import EventBus, EventBusProtocol, NullEventBus
from spire_harness.core.lock import run_lock
from spire_harness.core.logging import configure_logging, get_logger, stage_context

__all__ = [
    "EventBus",
    "EventBusProtocol",
    "HarnessSettings",
    "NullEventBus",
    "configure_logging",
    "get_logger",
    "load_settings",
    "run_lock",
    "stage_context",
]
