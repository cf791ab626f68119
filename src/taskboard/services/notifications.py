"""Notification sinks for lifecycle events pushed to live clients."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Literal, Protocol

from pydantic import BaseModel

from taskboard.models import utc_now

logger = logging.getLogger(__name__)

EventName = Literal[
    "task:created",
    "task:updated",
    "task:deleted",
    "task:claimed",
    "task:completed",
    "task:blocked",
    "tasks:archived",
]


class NotificationSink(Protocol):
    def emit(self, event: EventName, payload: dict[str, Any]) -> None: ...


class NotificationEvent(BaseModel):
    seq: int
    event: EventName
    payload: dict[str, Any]
    emitted_at: str


class LoggingNotifier:
    """Default sink: write each event to the log."""

    def emit(self, event: EventName, payload: dict[str, Any]) -> None:
        task = payload.get("task")
        task_id = task.get("id") if isinstance(task, dict) else payload.get("task_id")
        logger.info("notify event=%s task_id=%s", event, task_id)


class RecordingNotifier:
    """Keep the most recent events in memory for polling clients and tests."""

    def __init__(self, max_events: int = 200) -> None:
        self._events: deque[NotificationEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._seq = 0

    def emit(self, event: EventName, payload: dict[str, Any]) -> None:
        with self._lock:
            self._seq += 1
            self._events.append(
                NotificationEvent(
                    seq=self._seq,
                    event=event,
                    payload=payload,
                    emitted_at=utc_now().isoformat(),
                )
            )

    def events(self, *, after: int = 0) -> list[NotificationEvent]:
        with self._lock:
            return [item for item in self._events if item.seq > after]

    def names(self) -> list[str]:
        return [item.event for item in self.events()]


class CompositeNotifier:
    """Fan one event out to several sinks.

    A failing sink is logged and skipped; the lifecycle write has already
    committed by the time events are emitted.
    """

    def __init__(self, *sinks: NotificationSink) -> None:
        self.sinks = list(sinks)

    def emit(self, event: EventName, payload: dict[str, Any]) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event, payload)
            except Exception:  # noqa: BLE001
                logger.exception("notify event=%s sink=%s outcome=failed", event, type(sink).__name__)
