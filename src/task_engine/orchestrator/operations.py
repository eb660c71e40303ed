"""Closed set of engine operations and their payload envelopes.

Each engine operation carries a payload whose shape is checked before the
entry reaches the log. Operations outside this set are agent facts: they are
stored as-is and merged into derived data by the state fold.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any

from task_engine.orchestrator.errors import ValidationError


class EngineOperation(str, Enum):
    """Operations written by the engine itself."""

    TASK_CREATED = "task_created"
    EXECUTION_PLAN_CREATED = "execution_plan_created"
    PHASE_STARTED = "phase_started"
    AGENT_EXECUTED = "agent_executed"
    UI_REQUEST_GENERATED = "ui_request_generated"
    USER_RESPONSE_RECEIVED = "user_response_received"
    UI_REQUEST_SKIPPED = "ui_request_skipped"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"


ENGINE_OPERATIONS = frozenset(operation.value for operation in EngineOperation)
TERMINAL_OPERATIONS = frozenset(
    {
        EngineOperation.TASK_COMPLETED.value,
        EngineOperation.TASK_FAILED.value,
        EngineOperation.TASK_CANCELLED.value,
    },
)
PUBLISHED_OPERATIONS = frozenset(
    {
        EngineOperation.TASK_CREATED.value,
        EngineOperation.EXECUTION_PLAN_CREATED.value,
        EngineOperation.PHASE_STARTED.value,
        EngineOperation.UI_REQUEST_GENERATED.value,
        EngineOperation.TASK_COMPLETED.value,
        EngineOperation.TASK_FAILED.value,
        EngineOperation.TASK_CANCELLED.value,
    },
)
AGENT_STATUSES = ("completed", "needs_input", "error")


def is_engine_operation(operation: str) -> bool:
    return operation in ENGINE_OPERATIONS


def validate_payload(operation: str, data: Any) -> None:
    """Raise ValidationError when a known operation carries a malformed payload."""

    if not isinstance(data, dict):
        raise ValidationError(f"{operation} payload must be an object")
    validator = _VALIDATORS.get(operation)
    if validator is None:
        return
    try:
        validator(data)
    except ValidationError as error:
        raise ValidationError(f"{operation}: {error}") from error


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} must be a non-empty string")
    return value


def _require_index(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{key} must be a non-negative integer")
    return value


def _require_dict(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ValidationError(f"{key} must be an object")
    return value


def _require_list(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a list")
    return value


def _require_str_list(data: dict[str, Any], key: str, *, allow_empty: bool = True) -> list[str]:
    values = _require_list(data, key)
    if not allow_empty and not values:
        raise ValidationError(f"{key} must not be empty")
    for index, value in enumerate(values):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{key}[{index}] must be a non-empty string")
    return values


def _validate_task_created(data: dict[str, Any]) -> None:
    _require_str(data, "template_id")
    _require_str(data, "template_version")
    _require_dict(data, "initial_data")
    if "required_fields" in data:
        _require_str_list(data, "required_fields")


def _validate_execution_plan_created(data: dict[str, Any]) -> None:
    plan = _require_dict(data, "plan")
    phases = _require_list(plan, "phases")
    if not phases:
        raise ValidationError("plan.phases must not be empty")
    seen: set[str] = set()
    for index, phase in enumerate(phases):
        if not isinstance(phase, dict):
            raise ValidationError(f"plan.phases[{index}] must be an object")
        phase_id = _require_str(phase, "id")
        if phase_id in seen:
            raise ValidationError(f"plan.phases[{index}].id duplicates {phase_id!r}")
        seen.add(phase_id)
        _require_str_list(phase, "agents", allow_empty=False)
    _require_str_list(data, "agent_ids")


def _validate_phase_started(data: dict[str, Any]) -> None:
    _require_index(data, "phase_index")
    _require_str(data, "phase_id")
    if not isinstance(data.get("goal", ""), str):
        raise ValidationError("goal must be a string")


def _validate_agent_executed(data: dict[str, Any]) -> None:
    _require_index(data, "phase_index")
    _require_index(data, "agent_index")
    _require_str(data, "phase_id")
    _require_str(data, "agent_id")
    status = _require_str(data, "status")
    if status not in AGENT_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(AGENT_STATUSES)}")


def _validate_ui_request_generated(data: dict[str, Any]) -> None:
    requests = _require_list(data, "requests")
    if not requests:
        raise ValidationError("requests must not be empty")
    request_ids: list[str] = []
    for index, request in enumerate(requests):
        if not isinstance(request, dict):
            raise ValidationError(f"requests[{index}] must be an object")
        request_ids.append(_require_str(request, "request_id"))
        _require_dict(request, "semantic_data")
    if len(set(request_ids)) != len(request_ids):
        raise ValidationError("requests contain duplicate request_id values")
    original_ids = _require_str_list(data, "original_request_ids")
    if set(original_ids) != set(request_ids):
        raise ValidationError("original_request_ids must match the request ids")
    _require_str(data, "agent_id")
    if not isinstance(data.get("ordering_reasoning", ""), str):
        raise ValidationError("ordering_reasoning must be a string")


def _validate_user_response_received(data: dict[str, Any]) -> None:
    _require_str(data, "request_id")
    _require_dict(data, "response")


def _validate_ui_request_skipped(data: dict[str, Any]) -> None:
    _require_str(data, "request_id")
    _require_str(data, "reason")


def _validate_task_completed(data: dict[str, Any]) -> None:
    _require_str_list(data, "phase_ids", allow_empty=False)


def _validate_task_failed(data: dict[str, Any]) -> None:
    _require_str(data, "failed_operation")
    _require_str(data, "error_class")
    _require_str(data, "reason")


def _validate_task_cancelled(data: dict[str, Any]) -> None:
    _require_str(data, "reason")


_VALIDATORS: dict[str, Callable[[dict[str, Any]], None]] = {
    EngineOperation.TASK_CREATED.value: _validate_task_created,
    EngineOperation.EXECUTION_PLAN_CREATED.value: _validate_execution_plan_created,
    EngineOperation.PHASE_STARTED.value: _validate_phase_started,
    EngineOperation.AGENT_EXECUTED.value: _validate_agent_executed,
    EngineOperation.UI_REQUEST_GENERATED.value: _validate_ui_request_generated,
    EngineOperation.USER_RESPONSE_RECEIVED.value: _validate_user_response_received,
    EngineOperation.UI_REQUEST_SKIPPED.value: _validate_ui_request_skipped,
    EngineOperation.TASK_COMPLETED.value: _validate_task_completed,
    EngineOperation.TASK_FAILED.value: _validate_task_failed,
    EngineOperation.TASK_CANCELLED.value: _validate_task_cancelled,
}
