"""Progress/event sinks. Delivery is best-effort: a failing sink never breaks a crawl or scan."""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

from visibility_scanner.models import EventKind, ProgressEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def emit(self, event: ProgressEvent) -> None: ...


class LoggingEventSink:
    """Log every event; the default sink."""

    def __init__(self, level: int = logging.DEBUG) -> None:
        self._level = level

    def emit(self, event: ProgressEvent) -> None:
        logger.log(self._level, "[%s] %s %s", event.project_id, event.kind.value, event.data)


class CollectingEventSink:
    """Keep events in memory."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def emit(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[ProgressEvent]:
        return [e for e in self.events if e.kind == kind]


class FanOutEventSink:
    def __init__(self, sinks: Sequence[EventSink]) -> None:
        self._sinks = list(sinks)

    def emit(self, event: ProgressEvent) -> None:
        for sink in self._sinks:
            publish(sink, event)


def publish(sink: EventSink | None, event: ProgressEvent) -> None:
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception:
        logger.warning("Event sink %r rejected %s event", sink, event.kind.value, exc_info=True)


def emit(sink: EventSink | None, kind: EventKind, project_id: str, /, **data: Any) -> None:
    publish(sink, ProgressEvent(kind=kind, project_id=project_id, data=data))
