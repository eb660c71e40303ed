"""Pure fold of a context history into derived task state."""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from task_engine.orchestrator.errors import ValidationError
from task_engine.orchestrator.models import (
    ContextEntry,
    ExecutionCursor,
    ExecutionPlan,
    InteractionStatus,
    PendingUserInteraction,
    TaskFailure,
    TaskState,
    TaskStatus,
    UIRequest,
    to_utc_aware,
)
from task_engine.orchestrator.operations import (
    TERMINAL_OPERATIONS,
    EngineOperation,
    is_engine_operation,
    validate_payload,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StateDiff:
    """Difference between two derived states."""

    status: tuple[str, str] | None = None
    phase: tuple[str | None, str | None] | None = None
    completeness: tuple[int, int] | None = None
    added_keys: list[str] = field(default_factory=list)
    changed_keys: list[str] = field(default_factory=list)
    removed_keys: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return (
            self.status is None
            and self.phase is None
            and self.completeness is None
            and not self.added_keys
            and not self.changed_keys
            and not self.removed_keys
        )


class StateComputer:
    """Derive `TaskState` from history; holds no state between calls."""

    def compute(self, history: Sequence[ContextEntry]) -> TaskState:
        fold = _Fold()
        for entry in history:
            fold.apply(entry)
        return fold.finish()

    def compute_at_sequence(
        self,
        history: Sequence[ContextEntry],
        sequence_number: int,
    ) -> TaskState:
        """State as it was right after entry `sequence_number` was appended."""

        return self.compute(
            [entry for entry in history if entry.sequence_number <= sequence_number],
        )

    def compute_at_time(self, history: Sequence[ContextEntry], timestamp: datetime) -> TaskState:
        """State as it was at `timestamp`, including entries recorded exactly then."""

        moment = to_utc_aware(timestamp)
        return self.compute([entry for entry in history if entry.timestamp <= moment])

    @staticmethod
    def diff_states(before: TaskState, after: TaskState) -> StateDiff:
        diff = StateDiff()
        if before.status != after.status:
            diff.status = (before.status.value, after.status.value)
        if before.phase != after.phase:
            diff.phase = (before.phase, after.phase)
        if before.completeness != after.completeness:
            diff.completeness = (before.completeness, after.completeness)
        before_flat = flatten(before.data)
        after_flat = flatten(after.data)
        diff.added_keys = sorted(set(after_flat) - set(before_flat))
        diff.removed_keys = sorted(set(before_flat) - set(after_flat))
        diff.changed_keys = sorted(
            key
            for key in set(before_flat) & set(after_flat)
            if before_flat[key] != after_flat[key]
        )
        return diff


class _Fold:
    def __init__(self) -> None:
        self.state = TaskState()
        self.terminal = False
        self.raised: dict[str, tuple[UIRequest, str]] = {}
        self.resolved: set[str] = set()
        self.executed: set[tuple[int, int]] = set()
        self.awaiting: dict[tuple[int, int], set[str]] = {}
        self.last_raised: set[str] = set()
        self.required_fields: list[str] = []

    def apply(self, entry: ContextEntry) -> None:
        state = self.state
        state.last_sequence_number = entry.sequence_number
        state.updated_at = entry.timestamp

        if not is_engine_operation(entry.operation):
            state.data = deep_merge(state.data, entry.data)
            return

        try:
            validate_payload(entry.operation, entry.data)
        except ValidationError as error:
            self._anomaly(entry, f"malformed payload ignored ({error})")
            return

        operation = EngineOperation(entry.operation)
        if operation is EngineOperation.USER_RESPONSE_RECEIVED:
            state.data = deep_merge(state.data, entry.data["response"])

        if self.terminal:
            if entry.operation in TERMINAL_OPERATIONS:
                self._anomaly(entry, "terminal entry after the task already ended")
            return

        handler = _HANDLERS[operation]
        handler(self, entry)

    def finish(self) -> TaskState:
        state = self.state
        if self.terminal:
            state.pending_user_interactions = []
        else:
            state.pending_user_interactions = [
                PendingUserInteraction(
                    request_id=request_id,
                    agent_id=agent_id,
                    title=request.title,
                    priority=request.priority,
                    status=(
                        InteractionStatus.SKIPPABLE
                        if request.skippable
                        else InteractionStatus.PENDING
                    ),
                    request=request,
                )
                for request_id, (request, agent_id) in self.raised.items()
                if request_id not in self.resolved
            ]
            if state.status is not TaskStatus.CREATED:
                state.status = (
                    TaskStatus.WAITING_FOR_INPUT
                    if state.pending_user_interactions
                    else TaskStatus.IN_PROGRESS
                )

        state.executed_steps = len(self.executed) + sum(
            1 for request_ids in self.awaiting.values() if request_ids <= self.resolved
        )
        state.completeness = _completeness(state)
        state.data_completeness = _data_completeness(state.data, self.required_fields)
        return state

    def _anomaly(self, entry: ContextEntry, message: str) -> None:
        text = f"#{entry.sequence_number} {entry.operation}: {message}"
        self.state.anomalies.append(text)
        logger.debug("State fold anomaly on context %s: %s", entry.context_id, text)

    def _task_created(self, entry: ContextEntry) -> None:
        self.state.status = TaskStatus.IN_PROGRESS
        self.state.data = deep_merge(self.state.data, entry.data["initial_data"])
        self.required_fields = list(entry.data.get("required_fields", []))

    def _plan_created(self, entry: ContextEntry) -> None:
        state = self.state
        state.plan = ExecutionPlan.from_dict(entry.data["plan"])
        state.cursor = ExecutionCursor()
        state.current_phase_index = None
        state.phase = None
        self.executed.clear()
        self.awaiting.clear()

    def _phase_started(self, entry: ContextEntry) -> None:
        self.state.current_phase_index = int(entry.data["phase_index"])
        self.state.phase = str(entry.data["phase_id"])

    def _agent_executed(self, entry: ContextEntry) -> None:
        phase_index = int(entry.data["phase_index"])
        agent_index = int(entry.data["agent_index"])
        if entry.data["status"] == "error":
            self.state.cursor = ExecutionCursor(phase_index=phase_index, agent_index=agent_index)
            return
        if entry.data["status"] == "needs_input":
            # counts as done once every request it raised is answered or skipped
            self.awaiting[(phase_index, agent_index)] = set(self.last_raised)
            self.executed.discard((phase_index, agent_index))
        else:
            self.executed.add((phase_index, agent_index))
            self.awaiting.pop((phase_index, agent_index), None)
        self.state.cursor = _advance(self.state.plan, phase_index, agent_index)

    def _ui_request_generated(self, entry: ContextEntry) -> None:
        agent_id = str(entry.data["agent_id"])
        self.last_raised = set()
        for raw_request in entry.data["requests"]:
            request = UIRequest.from_dict(raw_request)
            self.last_raised.add(request.request_id)
            self.raised[request.request_id] = (request, agent_id)
            self.resolved.discard(request.request_id)

    def _request_resolved(self, entry: ContextEntry) -> None:
        request_id = str(entry.data["request_id"])
        if request_id not in self.raised:
            self._anomaly(entry, f"references unknown request {request_id!r}")
        self.resolved.add(request_id)

    def _task_completed(self, entry: ContextEntry) -> None:
        plan = self.state.plan
        if plan is None:
            self._anomaly(entry, "completion recorded before any plan")
            return
        missing = set(plan.phase_ids) - set(entry.data["phase_ids"])
        if missing:
            self._anomaly(entry, f"completion misses phases {sorted(missing)}")
            return
        self.state.status = TaskStatus.COMPLETED
        self.terminal = True

    def _task_failed(self, entry: ContextEntry) -> None:
        self.state.status = TaskStatus.FAILED
        self.state.failure = TaskFailure(
            failed_operation=str(entry.data["failed_operation"]),
            error_class=str(entry.data["error_class"]),
            reason=str(entry.data["reason"]),
            sequence_number=entry.sequence_number,
        )
        self.terminal = True

    def _task_cancelled(self, entry: ContextEntry) -> None:
        self.state.status = TaskStatus.CANCELLED
        self.terminal = True


_HANDLERS = {
    EngineOperation.TASK_CREATED: _Fold._task_created,
    EngineOperation.EXECUTION_PLAN_CREATED: _Fold._plan_created,
    EngineOperation.PHASE_STARTED: _Fold._phase_started,
    EngineOperation.AGENT_EXECUTED: _Fold._agent_executed,
    EngineOperation.UI_REQUEST_GENERATED: _Fold._ui_request_generated,
    EngineOperation.USER_RESPONSE_RECEIVED: _Fold._request_resolved,
    EngineOperation.UI_REQUEST_SKIPPED: _Fold._request_resolved,
    EngineOperation.TASK_COMPLETED: _Fold._task_completed,
    EngineOperation.TASK_FAILED: _Fold._task_failed,
    EngineOperation.TASK_CANCELLED: _Fold._task_cancelled,
}


def _advance(plan: ExecutionPlan | None, phase_index: int, agent_index: int) -> ExecutionCursor:
    if plan is None or phase_index >= len(plan.phases):
        return ExecutionCursor(phase_index=phase_index, agent_index=agent_index + 1)
    if agent_index + 1 < len(plan.phases[phase_index].agents):
        return ExecutionCursor(phase_index=phase_index, agent_index=agent_index + 1)
    return ExecutionCursor(phase_index=phase_index + 1, agent_index=0)


def _completeness(state: TaskState) -> int:
    if state.status is TaskStatus.COMPLETED:
        return 100
    if state.plan is None or state.plan.total_agent_steps == 0:
        return 0
    return min(99, state.executed_steps * 100 // state.plan.total_agent_steps)


def _data_completeness(data: Mapping[str, Any], required_fields: Sequence[str]) -> int:
    if not required_fields:
        return 100
    filled = len(required_fields) - len(missing_fields(data, required_fields))
    return filled * 100 // len(required_fields)


def deep_merge(base: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
    """Merge nested mappings; later keys win, inputs are left untouched."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in update.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def flatten(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings into dotted keys."""

    flat: dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping) and value:
            flat.update(flatten(value, path))
        else:
            flat[path] = value
    return flat


def lookup_path(data: Mapping[str, Any], path: str) -> Any:
    """Return the value at a dotted path, or None when any segment is missing."""

    current: Any = data
    for segment in path.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            return None
        current = current[segment]
    return current


def missing_fields(data: Mapping[str, Any], paths: Iterable[str]) -> list[str]:
    """Dotted paths whose value is absent or a blank string."""

    missing: list[str] = []
    for path in paths:
        value = lookup_path(data, path)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(path)
    return missing
