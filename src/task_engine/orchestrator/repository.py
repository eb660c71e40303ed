"""Event log stores: the persistent side of a context's history."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from task_engine.orchestrator.errors import (
    ConcurrencyConflict,
    ContextNotFoundError,
    StateCorruptionError,
    ValidationError,
)
from task_engine.orchestrator.models import (
    Actor,
    ActorType,
    ContextEntry,
    ContextRecord,
    TaskTemplate,
    Trigger,
    to_utc_aware,
)
from task_engine.storage.alembic_runner import upgrade_head
from task_engine.storage.common import build_sqlite_engine
from task_engine.storage.sqlmodel_models import ContextEntryRow, TaskContextRow

logger = logging.getLogger(__name__)


class EventLogStore(Protocol):
    """Append-only per-context log with an optimistic sequence check."""

    def create_context(self, record: ContextRecord, first_entry: ContextEntry) -> None: ...

    def append(self, entry: ContextEntry, expected_sequence_number: int) -> None: ...

    def read_all(self, context_id: str) -> list[ContextEntry]: ...

    def get_context(self, context_id: str) -> ContextRecord: ...

    def list_contexts(self, tenant_id: str | None = None) -> list[ContextRecord]: ...

    def flag_for_audit(self, context_id: str, reason: str) -> None: ...

    def close(self) -> None: ...


class SqliteEventLogStore:
    """Log persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_context(self, record: ContextRecord, first_entry: ContextEntry) -> None:
        with Session(self.engine) as session:
            session.add(
                TaskContextRow(
                    context_id=record.context_id,
                    task_template_id=record.task_template_id,
                    tenant_id=record.tenant_id,
                    created_at=record.created_at,
                    template_json=json.dumps(record.template_snapshot.to_dict(), sort_keys=True),
                    audit_required=record.audit_required,
                    audit_reason=record.audit_reason,
                ),
            )
            try:
                session.flush()
                session.add(_to_entry_row(first_entry))
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConcurrencyConflict(record.context_id, expected=1, actual=2) from error

    def append(self, entry: ContextEntry, expected_sequence_number: int) -> None:
        with Session(self.engine) as session:
            if session.get(TaskContextRow, entry.context_id) is None:
                raise ContextNotFoundError(entry.context_id)
            last = session.exec(
                select(ContextEntryRow.sequence_number, ContextEntryRow.timestamp)
                .where(ContextEntryRow.context_id == entry.context_id)
                .order_by(col(ContextEntryRow.sequence_number).desc())
                .limit(1),
            ).first()
            next_free = (last[0] if last is not None else 0) + 1
            if expected_sequence_number != next_free:
                raise ConcurrencyConflict(
                    entry.context_id,
                    expected=expected_sequence_number,
                    actual=next_free,
                )
            _check_not_before(entry, last[1] if last is not None else None)
            session.add(_to_entry_row(entry))
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConcurrencyConflict(
                    entry.context_id,
                    expected=expected_sequence_number,
                    actual=expected_sequence_number + 1,
                ) from error

    def read_all(self, context_id: str) -> list[ContextEntry]:
        with Session(self.engine) as session:
            if session.get(TaskContextRow, context_id) is None:
                raise ContextNotFoundError(context_id)
            rows = session.exec(
                select(ContextEntryRow)
                .where(ContextEntryRow.context_id == context_id)
                .order_by(col(ContextEntryRow.sequence_number).asc()),
            ).all()
        return [_to_entry(row) for row in rows]

    def get_context(self, context_id: str) -> ContextRecord:
        with Session(self.engine) as session:
            row = session.get(TaskContextRow, context_id)
            if row is None:
                raise ContextNotFoundError(context_id)
            return _to_context_record(row)

    def list_contexts(self, tenant_id: str | None = None) -> list[ContextRecord]:
        with Session(self.engine) as session:
            statement = select(TaskContextRow).order_by(col(TaskContextRow.created_at).asc())
            if tenant_id is not None:
                statement = statement.where(TaskContextRow.tenant_id == tenant_id)
            rows = session.exec(statement).all()
            return [_to_context_record(row) for row in rows]

    def flag_for_audit(self, context_id: str, reason: str) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskContextRow)
                .where(col(TaskContextRow.context_id) == context_id)
                .values(audit_required=True, audit_reason=reason),
            )
            if int(result.rowcount or 0) != 1:  # type: ignore[attr-defined]
                raise ContextNotFoundError(context_id)
            session.commit()
        logger.warning("Context %s flagged for manual audit: %s", context_id, reason)


class InMemoryEventLogStore:
    """Lock-guarded in-process log; entries are kept serialized like the SQL rows."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ContextRecord] = {}
        self._logs: dict[str, list[str]] = {}

    def close(self) -> None:
        """Nothing to release."""

    def create_context(self, record: ContextRecord, first_entry: ContextEntry) -> None:
        with self._lock:
            if record.context_id in self._records:
                raise ConcurrencyConflict(record.context_id, expected=1, actual=2)
            self._records[record.context_id] = record
            self._logs[record.context_id] = [json.dumps(first_entry.to_dict())]

    def append(self, entry: ContextEntry, expected_sequence_number: int) -> None:
        with self._lock:
            log = self._logs.get(entry.context_id)
            if log is None:
                raise ContextNotFoundError(entry.context_id)
            next_free = len(log) + 1
            if expected_sequence_number != next_free:
                raise ConcurrencyConflict(
                    entry.context_id,
                    expected=expected_sequence_number,
                    actual=next_free,
                )
            last_timestamp = None
            if log:
                last_timestamp = ContextEntry.from_dict(json.loads(log[-1])).timestamp
            _check_not_before(entry, last_timestamp)
            log.append(json.dumps(entry.to_dict()))

    def read_all(self, context_id: str) -> list[ContextEntry]:
        with self._lock:
            log = self._logs.get(context_id)
            if log is None:
                raise ContextNotFoundError(context_id)
            raw_entries = list(log)
        entries: list[ContextEntry] = []
        for raw in raw_entries:
            try:
                entries.append(ContextEntry.from_dict(json.loads(raw)))
            except (KeyError, TypeError, ValueError, ValidationError) as error:
                raise StateCorruptionError(context_id, f"unreadable entry: {error}") from error
        return entries

    def get_context(self, context_id: str) -> ContextRecord:
        with self._lock:
            record = self._records.get(context_id)
        if record is None:
            raise ContextNotFoundError(context_id)
        return record

    def list_contexts(self, tenant_id: str | None = None) -> list[ContextRecord]:
        with self._lock:
            records = list(self._records.values())
        if tenant_id is not None:
            records = [record for record in records if record.tenant_id == tenant_id]
        return sorted(records, key=lambda record: record.created_at)

    def flag_for_audit(self, context_id: str, reason: str) -> None:
        with self._lock:
            record = self._records.get(context_id)
            if record is None:
                raise ContextNotFoundError(context_id)
            self._records[context_id] = replace(record, audit_required=True, audit_reason=reason)
        logger.warning("Context %s flagged for manual audit: %s", context_id, reason)


def _check_not_before(entry: ContextEntry, last_timestamp: datetime | None) -> None:
    if last_timestamp is None:
        return
    if to_utc_aware(entry.timestamp) < to_utc_aware(last_timestamp):
        raise ValidationError(
            f"entry #{entry.sequence_number} on {entry.context_id} is timestamped "
            f"{entry.timestamp.isoformat()}, before the last entry at {last_timestamp.isoformat()}",
        )


def _to_entry_row(entry: ContextEntry) -> ContextEntryRow:
    return ContextEntryRow(
        entry_id=entry.entry_id,
        context_id=entry.context_id,
        sequence_number=entry.sequence_number,
        timestamp=entry.timestamp,
        actor_type=entry.actor.type.value,
        actor_id=entry.actor.id,
        actor_version=entry.actor.version,
        operation=entry.operation,
        data_json=json.dumps(entry.data, sort_keys=True),
        reasoning=entry.reasoning,
        trigger_json=json.dumps(entry.trigger.to_dict(), sort_keys=True),
    )


def _to_entry(row: ContextEntryRow) -> ContextEntry:
    try:
        return ContextEntry(
            entry_id=row.entry_id,
            context_id=row.context_id,
            sequence_number=row.sequence_number,
            timestamp=to_utc_aware(row.timestamp),
            actor=Actor(
                type=ActorType(row.actor_type),
                id=row.actor_id,
                version=row.actor_version,
            ),
            operation=row.operation,
            data=_load_object(row.data_json),
            reasoning=row.reasoning,
            trigger=Trigger.from_dict(_load_object(row.trigger_json)),
        )
    except (TypeError, ValueError, ValidationError) as error:
        raise StateCorruptionError(
            row.context_id,
            f"unreadable entry #{row.sequence_number}: {error}",
        ) from error


def _to_context_record(row: TaskContextRow) -> ContextRecord:
    return ContextRecord(
        context_id=row.context_id,
        task_template_id=row.task_template_id,
        tenant_id=row.tenant_id,
        created_at=to_utc_aware(row.created_at),
        template_snapshot=TaskTemplate.from_dict(_load_object(row.template_json)),
        audit_required=bool(row.audit_required),
        audit_reason=row.audit_reason,
    )


def _load_object(raw: str) -> dict[str, Any]:
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("stored JSON payload must be an object")
    return payload
