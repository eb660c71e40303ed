"""Controllers for task engine CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from task_engine.config import Settings
from task_engine.orchestrator.context_store import ContextStore
from task_engine.orchestrator.errors import StateCorruptionError, ValidationError
from task_engine.orchestrator.executor import cancel_context
from task_engine.orchestrator.models import DriveResult, TaskState, to_utc_aware
from task_engine.orchestrator.services import open_engine, open_store
from task_engine.orchestrator.state import StateComputer, StateDiff, flatten
from task_engine.orchestrator.templates import resolve_template


@dataclass(slots=True)
class CreateTaskCommand:
    """CLI input for creating a task context."""

    db_path: Path | None
    template_id: str | None
    template_file: Path | None
    initial_data: str | None
    tenant_id: str | None
    drive: bool


@dataclass(slots=True)
class DriveTaskCommand:
    """CLI input for driving a task until it pauses or ends."""

    db_path: Path | None
    context_id: str


@dataclass(slots=True)
class RespondCommand:
    """CLI input for answering a pending UI request."""

    db_path: Path | None
    context_id: str
    request_id: str
    value: str | None
    json_payload: str | None
    user_id: str


@dataclass(slots=True)
class SkipCommand:
    """CLI input for skipping a pending UI request."""

    db_path: Path | None
    context_id: str
    request_id: str
    reason: str
    user_id: str


@dataclass(slots=True)
class CancelCommand:
    """CLI input for cancelling a task."""

    db_path: Path | None
    context_id: str
    reason: str


@dataclass(slots=True)
class InspectCommand:
    """CLI input for state inspection."""

    db_path: Path | None
    context_id: str
    show_data: bool


@dataclass(slots=True)
class HistoryCommand:
    """CLI input for history listing."""

    db_path: Path | None
    context_id: str
    show_data: bool


@dataclass(slots=True)
class ReplayCommand:
    """CLI input for point-in-time reconstruction."""

    db_path: Path | None
    context_id: str
    sequence_number: int | None
    at: str | None


@dataclass(slots=True)
class ListContextsCommand:
    """CLI input for context listing."""

    db_path: Path | None
    tenant_id: str | None


class OrchestratorCliController:
    """Controller that handles task engine commands."""

    def create(self, command: CreateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        template = resolve_template(
            template_id=command.template_id,
            template_file=command.template_file,
        )
        initial_data = _parse_json_object(command.initial_data, option="--data")
        tenant_id = command.tenant_id or settings.tenant_id

        if not command.drive:
            with open_store(settings) as store:
                context = store.create_context(
                    template,
                    tenant_id=tenant_id,
                    initial_data=initial_data,
                )
            return [
                f"Context created: {context.context_id}",
                f"Template: {template.id} v{template.version}",
                f"Tenant: {tenant_id}",
            ]

        with open_engine(settings) as engine:
            context = engine.store.create_context(
                template,
                tenant_id=tenant_id,
                initial_data=initial_data,
            )
            result = engine.executor.drive(context.context_id)
        return [
            f"Context created: {context.context_id}",
            f"Template: {template.id} v{template.version}",
            f"Tenant: {tenant_id}",
            *_result_lines(result),
        ]

    def drive(self, command: DriveTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_engine(settings) as engine:
            result = engine.executor.drive(command.context_id)
        return _result_lines(result)

    def respond(self, command: RespondCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_engine(settings) as engine:
            state = engine.store.load(command.context_id).current_state
            response = _build_response(state, command)
            result = engine.executor.submit_response(
                command.context_id,
                command.request_id,
                response,
                user_id=command.user_id,
            )
        return [f"Response recorded: {command.request_id}", *_result_lines(result)]

    def skip(self, command: SkipCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_engine(settings) as engine:
            result = engine.executor.skip_request(
                command.context_id,
                command.request_id,
                command.reason,
                user_id=command.user_id,
            )
        return [f"Request skipped: {command.request_id}", *_result_lines(result)]

    def cancel(self, command: CancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_store(settings) as store:
            result = cancel_context(store, command.context_id, command.reason)
        return _result_lines(result)

    def inspect(self, command: InspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_store(settings) as store:
            record = store.get_record(command.context_id)
            context = store.load(command.context_id)

        lines = [
            f"Context: {context.context_id}",
            f"Template: {context.task_template_id}",
            f"Tenant: {context.tenant_id}",
            f"Created: {context.created_at.isoformat()}",
            f"Audit required: {_audit_label(record.audit_required, record.audit_reason)}",
            f"Entries: {len(context.history)}",
            *_state_lines(context.current_state),
        ]
        plan = context.current_state.plan
        if plan is not None:
            lines.append(f"Plan: {' -> '.join(plan.phase_ids)}")
        if command.show_data:
            lines.append("Data:")
            lines.extend(
                f"  {key}={json.dumps(value, sort_keys=True)}"
                for key, value in sorted(flatten(context.current_state.data).items())
            )
        return lines

    def history(self, command: HistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_store(settings) as store:
            history = store.read(command.context_id)

        lines = [f"Entries: {len(history)}"]
        for entry in history:
            lines.append(
                f"  #{entry.sequence_number} {entry.timestamp.isoformat()} "
                f"{entry.actor.type.value}:{entry.actor.id} {entry.operation} "
                f"- {entry.reasoning or '-'}",
            )
            if command.show_data:
                lines.append(f"      data={json.dumps(entry.data, sort_keys=True)}")
        return lines

    def replay(self, command: ReplayCommand) -> list[str]:
        if (command.sequence_number is None) == (command.at is None):
            raise ValidationError("pass exactly one of --sequence or --at")

        settings = Settings.from_env(db_path=command.db_path)
        with open_store(settings) as store:
            context = store.load(command.context_id)

        computer = StateComputer()
        if command.sequence_number is not None:
            label = f"#{command.sequence_number}"
            past = computer.compute_at_sequence(context.history, command.sequence_number)
        else:
            moment = _parse_moment(str(command.at))
            label = moment.isoformat()
            past = computer.compute_at_time(context.history, moment)

        lines = [f"State at {label}:", *_state_lines(past)]
        lines.append("Changes since then:")
        lines.extend(_diff_lines(computer.diff_states(past, context.current_state)))
        return lines

    def list_contexts(self, command: ListContextsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_store(settings) as store:
            records = store.list_contexts(command.tenant_id)
            states = {
                record.context_id: _safe_state(store, record.context_id) for record in records
            }

        lines = [f"Contexts: {len(records)}"]
        for record in records:
            state = states[record.context_id]
            status = state.status.value if state is not None else "unreadable"
            lines.append(
                f"  {record.context_id} template={record.task_template_id} "
                f"tenant={record.tenant_id} status={status} "
                f"created={record.created_at.isoformat()}"
                + (" audit_required" if record.audit_required else ""),
            )
        return lines


def _safe_state(store: ContextStore, context_id: str) -> TaskState | None:
    try:
        return store.load(context_id).current_state
    except StateCorruptionError:
        return None


def _result_lines(result: DriveResult) -> list[str]:
    lines = [f"Outcome: {result.outcome.value}"]
    if result.reason:
        lines.append(f"Reason: {result.reason}")
    lines.extend(_state_lines(result.state))
    return lines


def _state_lines(state: TaskState) -> list[str]:
    lines = [
        f"Status: {state.status.value}",
        f"Phase: {state.phase or '-'}",
        f"Completeness: {state.completeness}%",
        f"Data completeness: {state.data_completeness}%",
        f"Last entry: #{state.last_sequence_number}",
    ]
    if state.failure is not None:
        lines.append(
            f"Failure: {state.failure.failed_operation} "
            f"{state.failure.error_class}: {state.failure.reason}",
        )
    if state.pending_user_interactions:
        lines.append(f"Pending requests: {len(state.pending_user_interactions)}")
        ordered = sorted(
            state.pending_user_interactions,
            key=lambda item: (item.request.order if item.request.order is not None else 1_000_000),
        )
        for item in ordered:
            field_path = item.request.semantic_data.get("field")
            lines.append(
                f"  {item.request_id} [{item.priority}] {item.title}"
                + (f" field={field_path}" if field_path else "")
                + (f" group={item.request.group}" if item.request.group else "")
                + (f" skippable ({item.request.skip_reason})" if item.request.skippable else ""),
            )
    for anomaly in state.anomalies:
        lines.append(f"Anomaly: {anomaly}")
    return lines


def _diff_lines(diff: StateDiff) -> list[str]:
    if diff.is_empty:
        return ["  none"]
    lines = []
    if diff.status is not None:
        lines.append(f"  status: {diff.status[0]} -> {diff.status[1]}")
    if diff.phase is not None:
        lines.append(f"  phase: {diff.phase[0] or '-'} -> {diff.phase[1] or '-'}")
    if diff.completeness is not None:
        lines.append(f"  completeness: {diff.completeness[0]}% -> {diff.completeness[1]}%")
    lines.extend(f"  + {key}" for key in diff.added_keys)
    lines.extend(f"  ~ {key}" for key in diff.changed_keys)
    lines.extend(f"  - {key}" for key in diff.removed_keys)
    return lines


def _build_response(state: TaskState, command: RespondCommand) -> dict[str, Any]:
    if (command.value is None) == (command.json_payload is None):
        raise ValidationError("pass exactly one of --value or --json")
    if command.json_payload is not None:
        return _parse_json_object(command.json_payload, option="--json")

    pending = {item.request_id: item for item in state.pending_user_interactions}
    item = pending.get(command.request_id)
    if item is None:
        raise ValidationError(
            f"request {command.request_id!r} is not pending on {command.context_id}",
        )
    field_path = item.request.semantic_data.get("field")
    if not isinstance(field_path, str) or not field_path:
        raise ValidationError(
            f"request {command.request_id!r} names no field; answer it with --json",
        )
    return nest(field_path, command.value)


def nest(path: str, value: Any) -> dict[str, Any]:
    """Build `{"a": {"b": value}}` from `"a.b"`."""

    result: Any = value
    for segment in reversed(path.split(".")):
        result = {segment: result}
    return result


def _parse_json_object(raw: str | None, *, option: str) -> dict[str, Any]:
    if raw is None:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValidationError(f"{option} is not valid JSON: {error.msg}") from error
    if not isinstance(payload, dict):
        raise ValidationError(f"{option} must be a JSON object")
    return payload


def _parse_moment(raw: str) -> datetime:
    try:
        return to_utc_aware(datetime.fromisoformat(raw))
    except ValueError as error:
        raise ValidationError(f"--at must be an ISO-8601 timestamp, got {raw!r}") from error


def _audit_label(required: bool, reason: str | None) -> str:
    if not required:
        return "no"
    return f"yes ({reason or '-'})"
