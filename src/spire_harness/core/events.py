# src/spire_harness/core/events.py
"""Synchronous event bus between the orchestrator and its presenters.

The orchestrator emits the frozen dataclasses from contracts.events;
cli_formatters subscribes console or JSON renderers. Library callers that
want no output use NullEventBus.
"""

from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

T = TypeVar("T")


class EventBusProtocol(Protocol):
    """Satisfied by both EventBus and NullEventBus."""

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None: ...

    def emit(self, event: T) -> None: ...


class EventBus:
    """Dispatches each event to the handlers registered for its exact type.

    Handlers run in subscription order on the emitting thread. A handler
    that raises aborts the emit and the exception reaches the orchestrator,
    so a broken formatter aborts the run instead of going silent.

    Example:
        bus = EventBus()
        bus.subscribe(StageStarted, lambda e: print(f"[{e.stage.upper()}] starting"))
        bus.emit(StageStarted(stage=Stage.SERVER_START))
    """

    def __init__(self) -> None:
        self._handlers: defaultdict[type, list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        self._handlers[event_type].append(handler)

    def emit(self, event: T) -> None:
        # .get avoids creating empty entries for unsubscribed types
        for handler in self._handlers.get(type(event), ()):
            handler(event)


class NullEventBus:
    """Discards everything.

    Deliberately not an EventBus subclass: subscribe() here never results
    in a callback, and a subclass would suggest otherwise.
    """

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        pass

    def emit(self, event: T) -> None:
        pass
