"""Push notifications for lifecycle and UI entries."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from task_engine.orchestrator.models import ContextEntry

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class NotificationEvent:
    """What the presentation layer learns about one appended entry."""

    context_id: str
    sequence_number: int
    operation: str
    timestamp: datetime
    actor_id: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry: ContextEntry) -> NotificationEvent:
        return cls(
            context_id=entry.context_id,
            sequence_number=entry.sequence_number,
            operation=entry.operation,
            timestamp=entry.timestamp,
            actor_id=entry.actor.id,
            data=entry.data,
        )


class NotificationSink(Protocol):
    def publish(self, event: NotificationEvent) -> None: ...


class LoggingNotificationSink:
    """Default sink: one log line per event."""

    def publish(self, event: NotificationEvent) -> None:
        logger.info(
            "Notify context=%s seq=%d operation=%s actor=%s",
            event.context_id,
            event.sequence_number,
            event.operation,
            event.actor_id,
        )


class RecordingNotificationSink:
    """Keeps published events in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[NotificationEvent] = []

    def publish(self, event: NotificationEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[NotificationEvent]:
        with self._lock:
            return list(self._events)

    def operations(self, context_id: str | None = None) -> list[str]:
        return [
            event.operation
            for event in self.events
            if context_id is None or event.context_id == context_id
        ]
