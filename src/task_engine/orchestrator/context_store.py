"""Context store: validated appends, checked reads and a bounded state cache."""

from __future__ import annotations

import copy
import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any
from uuid import uuid4

from task_engine.orchestrator.errors import StateCorruptionError, ValidationError
from task_engine.orchestrator.models import (
    Actor,
    ActorType,
    ContextEntry,
    ContextRecord,
    TaskContext,
    TaskState,
    TaskTemplate,
    Trigger,
)
from task_engine.orchestrator.notifications import (
    LoggingNotificationSink,
    NotificationEvent,
    NotificationSink,
)
from task_engine.orchestrator.operations import (
    PUBLISHED_OPERATIONS,
    EngineOperation,
    is_engine_operation,
    validate_payload,
)
from task_engine.orchestrator.repository import EventLogStore
from task_engine.orchestrator.state import StateComputer
from task_engine.storage.common import utc_now

logger = logging.getLogger(__name__)

ENGINE_ACTOR = Actor(type=ActorType.SYSTEM, id="task_engine", version="1")


class StateCache:
    """LRU map of `(context_id, history_length)` to derived state."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = capacity
        self._data: OrderedDict[tuple[str, int], TaskState] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: tuple[str, int]) -> TaskState | None:
        with self._lock:
            state = self._data.get(key)
            if state is None:
                return None
            self._data.move_to_end(key)
            return copy.deepcopy(state)

    def put(self, key: tuple[str, int], state: TaskState) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(state)
            self._data.move_to_end(key)
            while len(self._data) > self.capacity:
                self._data.popitem(last=False)

    def invalidate(self, context_id: str) -> None:
        with self._lock:
            for key in [key for key in self._data if key[0] == context_id]:
                del self._data[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class ContextStore:
    """Single entry point for reading and growing task context histories."""

    def __init__(
        self,
        log_store: EventLogStore,
        *,
        state_computer: StateComputer | None = None,
        cache_size: int = 128,
        notification_sink: NotificationSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.log_store = log_store
        self.state_computer = state_computer or StateComputer()
        self.cache = StateCache(cache_size)
        self.notification_sink = notification_sink or LoggingNotificationSink()
        self.clock = clock

    def create_context(
        self,
        template: TaskTemplate,
        *,
        tenant_id: str,
        initial_data: dict[str, Any] | None = None,
        context_id: str | None = None,
    ) -> TaskContext:
        """Register a context and append `task_created` as entry #1."""

        context_id = context_id or str(uuid4())
        now = self.clock()
        entry = ContextEntry(
            entry_id=str(uuid4()),
            context_id=context_id,
            sequence_number=1,
            timestamp=now,
            actor=ENGINE_ACTOR,
            operation=EngineOperation.TASK_CREATED.value,
            data={
                "template_id": template.id,
                "template_version": template.version,
                "initial_data": dict(initial_data or {}),
                "required_fields": list(template.required_fields),
            },
            reasoning=f"Task created from template {template.id} v{template.version}",
            trigger=Trigger(type="api", source="create_context", details={"tenant_id": tenant_id}),
        )
        validate_payload(entry.operation, entry.data)
        record = ContextRecord(
            context_id=context_id,
            task_template_id=template.id,
            tenant_id=tenant_id,
            created_at=now,
            template_snapshot=template,
        )
        self.log_store.create_context(record, entry)
        logger.info("Created context %s from template %s", context_id, template.id)
        self._publish(entry)
        return self.load(context_id)

    def append(self, context_id: str, entry: ContextEntry) -> None:
        """Append one entry; its sequence number must be exactly the next one."""

        if entry.context_id != context_id:
            raise ValidationError(
                f"entry belongs to context {entry.context_id}, not {context_id}",
            )
        if is_engine_operation(entry.operation):
            validate_payload(entry.operation, entry.data)
        self.log_store.append(entry, entry.sequence_number)
        self.cache.invalidate(context_id)
        logger.debug(
            "Appended #%d %s to context %s",
            entry.sequence_number,
            entry.operation,
            context_id,
        )
        self._publish(entry)

    def read(self, context_id: str) -> list[ContextEntry]:
        """Full ordered history, checked for structural invariants."""

        try:
            history = self.log_store.read_all(context_id)
            _check_history(context_id, history)
        except StateCorruptionError as error:
            self.flag_for_audit(context_id, error.reason)
            raise
        return history

    def load(self, context_id: str) -> TaskContext:
        record = self.log_store.get_context(context_id)
        history = self.read(context_id)
        key = (context_id, len(history))
        state = self.cache.get(key)
        if state is None:
            state = self.state_computer.compute(history)
            self.cache.put(key, state)
        return TaskContext(
            context_id=record.context_id,
            task_template_id=record.task_template_id,
            tenant_id=record.tenant_id,
            created_at=record.created_at,
            template_snapshot=record.template_snapshot,
            history=history,
            current_state=state,
        )

    def get_record(self, context_id: str) -> ContextRecord:
        return self.log_store.get_context(context_id)

    def list_contexts(self, tenant_id: str | None = None) -> list[ContextRecord]:
        return self.log_store.list_contexts(tenant_id)

    def flag_for_audit(self, context_id: str, reason: str) -> None:
        self.cache.invalidate(context_id)
        self.log_store.flag_for_audit(context_id, reason)

    def recorder(self, context: TaskContext) -> ContextRecorder:
        return ContextRecorder(self, context.context_id, history=context.history)

    def _publish(self, entry: ContextEntry) -> None:
        if entry.operation not in PUBLISHED_OPERATIONS:
            return
        try:
            self.notification_sink.publish(NotificationEvent.from_entry(entry))
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Notification for context %s #%d failed: %s",
                entry.context_id,
                entry.sequence_number,
                error,
            )


class ContextRecorder:
    """Builds and appends the next entries of one context."""

    def __init__(
        self,
        store: ContextStore,
        context_id: str,
        *,
        history: Sequence[ContextEntry],
    ) -> None:
        self.store = store
        self.context_id = context_id
        self.last_sequence_number = history[-1].sequence_number if history else 0
        self.last_timestamp = history[-1].timestamp if history else None
        self._lock = threading.Lock()

    def record(
        self,
        *,
        actor: Actor,
        operation: str,
        data: dict[str, Any],
        reasoning: str,
        trigger: Trigger | None = None,
    ) -> ContextEntry:
        with self._lock:
            now = self.store.clock()
            if self.last_timestamp is not None and now < self.last_timestamp:
                now = self.last_timestamp
            entry = ContextEntry(
                entry_id=str(uuid4()),
                context_id=self.context_id,
                sequence_number=self.last_sequence_number + 1,
                timestamp=now,
                actor=actor,
                operation=operation,
                data=data,
                reasoning=reasoning,
                trigger=trigger or Trigger(type="system", source="executor"),
            )
            self.store.append(self.context_id, entry)
            self.last_sequence_number = entry.sequence_number
            self.last_timestamp = entry.timestamp
            return entry

    def record_system(
        self,
        operation: EngineOperation,
        data: dict[str, Any],
        reasoning: str,
        *,
        trigger: Trigger | None = None,
    ) -> ContextEntry:
        return self.record(
            actor=ENGINE_ACTOR,
            operation=operation.value,
            data=data,
            reasoning=reasoning,
            trigger=trigger,
        )


def _check_history(context_id: str, history: Sequence[ContextEntry]) -> None:
    if not history:
        raise StateCorruptionError(context_id, "history is empty")
    if history[0].operation != EngineOperation.TASK_CREATED.value:
        raise StateCorruptionError(
            context_id,
            f"first entry is {history[0].operation!r}, expected task_created",
        )
    previous: ContextEntry | None = None
    for index, entry in enumerate(history):
        if entry.context_id != context_id:
            raise StateCorruptionError(
                context_id,
                f"entry #{entry.sequence_number} belongs to context {entry.context_id}",
            )
        if entry.sequence_number != index + 1:
            raise StateCorruptionError(
                context_id,
                f"sequence gap: position {index + 1} holds #{entry.sequence_number}",
            )
        if previous is not None and entry.timestamp < previous.timestamp:
            raise StateCorruptionError(
                context_id,
                f"timestamp of #{entry.sequence_number} precedes #{previous.sequence_number}",
            )
        previous = entry
