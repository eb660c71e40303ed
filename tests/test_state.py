from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import allure

from task_engine.orchestrator.context_store import ENGINE_ACTOR
from task_engine.orchestrator.models import (
    Actor,
    ActorType,
    ContextEntry,
    ExecutionCursor,
    InteractionStatus,
    TaskStatus,
    Trigger,
)
from task_engine.orchestrator.state import StateComputer, deep_merge, flatten, lookup_path

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("State Computation"),
]

_START = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)
_USER = Actor(type=ActorType.USER, id="owner")
_PLAN = {
    "phases": [
        {"id": "A", "goal": "profile", "agents": ["agent1"]},
        {"id": "B", "goal": "details", "agents": ["agent2"]},
    ],
    "reasoning": "two phases",
}


class _History:
    def __init__(self) -> None:
        self.entries: list[ContextEntry] = []

    def add(
        self,
        operation: str,
        data: dict[str, Any],
        *,
        actor: Actor = ENGINE_ACTOR,
        minutes: int | None = None,
    ) -> _History:
        sequence_number = len(self.entries) + 1
        offset = sequence_number if minutes is None else minutes
        self.entries.append(
            ContextEntry(
                entry_id=f"e{sequence_number}",
                context_id="ctx-1",
                sequence_number=sequence_number,
                timestamp=_START + timedelta(minutes=offset),
                actor=actor,
                operation=operation,
                data=data,
                reasoning=f"step {sequence_number}",
                trigger=Trigger(type="test", source="test_state"),
            ),
        )
        return self

    def created(self, initial_data: dict[str, Any] | None = None) -> _History:
        return self.add(
            "task_created",
            {"template_id": "simple", "template_version": "1", "initial_data": initial_data or {}},
        )

    def planned(self) -> _History:
        return self.add(
            "execution_plan_created",
            {"plan": _PLAN, "agent_ids": ["agent1", "agent2"]},
        )

    def phase(self, index: int) -> _History:
        return self.add(
            "phase_started",
            {"phase_index": index, "phase_id": _PLAN["phases"][index]["id"], "goal": ""},
        )

    def executed(self, phase_index: int, agent_id: str, status: str = "completed") -> _History:
        return self.add(
            "agent_executed",
            {
                "phase_index": phase_index,
                "agent_index": 0,
                "phase_id": _PLAN["phases"][phase_index]["id"],
                "agent_id": agent_id,
                "status": status,
            },
        )

    def asked(self, *request_ids: str, agent_id: str = "agent2") -> _History:
        requests = [
            {
                "request_id": request_id,
                "template_type": "form_field",
                "priority": "high",
                "semantic_data": {"title": request_id.title()},
                "created_by": agent_id,
                "order": index,
            }
            for index, request_id in enumerate(request_ids)
        ]
        return self.add(
            "ui_request_generated",
            {
                "requests": requests,
                "original_request_ids": list(request_ids),
                "ordering_reasoning": "as asked",
                "agent_id": agent_id,
            },
        )

    def answered(self, request_id: str, response: dict[str, Any]) -> _History:
        return self.add(
            "user_response_received",
            {"request_id": request_id, "response": response},
            actor=_USER,
        )


def _paused_history() -> _History:
    return (
        _History()
        .created({"user": {"email": "owner@example.com"}})
        .planned()
        .phase(0)
        .executed(0, "agent1")
        .phase(1)
        .asked("businessName")
        .executed(1, "agent2", status="needs_input")
    )


def test_compute_is_referentially_transparent() -> None:
    history = _paused_history().entries
    computer = StateComputer()

    first = computer.compute(history)
    first.data["user"]["email"] = "mutated@example.com"
    second = computer.compute(history)
    third = computer.compute(history)

    assert second == third
    assert second.data["user"]["email"] == "owner@example.com"


def test_unanswered_request_means_waiting_for_input() -> None:
    state = StateComputer().compute(_paused_history().entries)

    assert state.status is TaskStatus.WAITING_FOR_INPUT
    assert len(state.pending_user_interactions) == 1
    pending = state.pending_user_interactions[0]
    assert pending.request_id == "businessName"
    assert pending.agent_id == "agent2"
    assert pending.status is InteractionStatus.PENDING
    assert state.phase == "B"
    assert state.cursor == ExecutionCursor(phase_index=2, agent_index=0)
    assert state.completeness == 50


def test_answer_clears_pending_and_merges_response() -> None:
    history = _paused_history().answered("businessName", {"business": {"name": "Acme"}})

    state = StateComputer().compute(history.entries)

    assert state.status is TaskStatus.IN_PROGRESS
    assert state.pending_user_interactions == []
    assert state.data == {"user": {"email": "owner@example.com"}, "business": {"name": "Acme"}}
    assert state.completeness == 99


def test_completion_referencing_every_phase_is_terminal() -> None:
    history = (
        _paused_history()
        .answered("businessName", {"business": {"name": "Acme"}})
        .add("task_completed", {"phase_ids": ["A", "B"]})
    )

    state = StateComputer().compute(history.entries)

    assert state.status is TaskStatus.COMPLETED
    assert state.completeness == 100
    assert state.anomalies == []


def test_completion_missing_a_phase_is_ignored() -> None:
    history = _paused_history().answered("businessName", {}).add(
        "task_completed",
        {"phase_ids": ["A"]},
    )

    state = StateComputer().compute(history.entries)

    assert state.status is TaskStatus.IN_PROGRESS
    assert len(state.anomalies) == 1
    assert "misses phases ['B']" in state.anomalies[0]


def test_entries_after_terminal_entry_do_not_revive_the_task() -> None:
    history = (
        _paused_history()
        .add("task_cancelled", {"reason": "owner left"})
        .add("late_fact", {"late": {"value": 1}}, actor=Actor(type=ActorType.AGENT, id="agent2"))
        .executed(1, "agent2")
        .add("task_completed", {"phase_ids": ["A", "B"]})
    )

    state = StateComputer().compute(history.entries)

    assert state.status is TaskStatus.CANCELLED
    assert state.pending_user_interactions == []
    assert state.data["late"] == {"value": 1}
    assert len(state.anomalies) == 1
    assert "already ended" in state.anomalies[0]


def test_unknown_operations_merge_data_and_later_keys_win() -> None:
    agent = Actor(type=ActorType.AGENT, id="agent1")
    history = (
        _History()
        .created({"business": {"name": "Old", "state": "CA"}})
        .add("some_future_operation", {"business": {"name": "New"}, "score": 1}, actor=agent)
        .add("another_one", {"score": 2}, actor=agent)
    )

    state = StateComputer().compute(history.entries)

    assert state.data == {"business": {"name": "New", "state": "CA"}, "score": 2}
    assert state.anomalies == []


def test_malformed_engine_payload_is_recorded_as_anomaly() -> None:
    history = _History().created().add("phase_started", {"phase_id": "A"})

    state = StateComputer().compute(history.entries)

    assert state.status is TaskStatus.IN_PROGRESS
    assert state.phase is None
    assert "phase_index" in state.anomalies[0]


def test_data_completeness_tracks_required_fields() -> None:
    history = _History().add(
        "task_created",
        {
            "template_id": "simple",
            "template_version": "1",
            "initial_data": {"user": {"email": "owner@example.com", "name": " "}},
            "required_fields": ["user.email", "user.name", "business.name", "business.state"],
        },
    )
    computer = StateComputer()

    before = computer.compute(history.entries)
    history.add("business_found", {"business": {"name": "Acme", "state": "CA"}})
    after = computer.compute(history.entries)

    assert before.data_completeness == 25
    assert after.data_completeness == 75
    assert after.completeness == 0


def test_data_completeness_without_required_fields_is_full() -> None:
    assert StateComputer().compute(_History().created().entries).data_completeness == 100


def test_skip_marker_resolves_request() -> None:
    history = _paused_history().add(
        "ui_request_skipped",
        {"request_id": "businessName", "reason": "not known yet"},
        actor=_USER,
    )

    state = StateComputer().compute(history.entries)

    assert state.pending_user_interactions == []
    assert state.status is TaskStatus.IN_PROGRESS


def test_error_status_keeps_cursor_on_the_failing_agent() -> None:
    history = _History().created().planned().phase(0).executed(0, "agent1", status="error")

    state = StateComputer().compute(history.entries)

    assert state.cursor == ExecutionCursor(phase_index=0, agent_index=0)
    assert state.executed_steps == 0


def test_failure_is_exposed_with_operation_and_reason() -> None:
    history = _History().created().add(
        "task_failed",
        {
            "failed_operation": "plan_generation",
            "error_class": "UpstreamServiceError",
            "reason": "plan_generation failed after 3 attempts: overloaded",
        },
    )

    state = StateComputer().compute(history.entries)

    assert state.status is TaskStatus.FAILED
    assert state.failure is not None
    assert state.failure.failed_operation == "plan_generation"
    assert state.failure.sequence_number == 2


def test_point_in_time_reconstruction() -> None:
    history = _paused_history().answered("businessName", {"business": {"name": "Acme"}}).entries
    computer = StateComputer()

    at_sequence = computer.compute_at_sequence(history, 7)
    at_time = computer.compute_at_time(history, history[6].timestamp)
    before_anything = computer.compute_at_time(history, _START)

    assert at_sequence == at_time
    assert at_sequence.status is TaskStatus.WAITING_FOR_INPUT
    assert at_sequence.last_sequence_number == 7
    assert before_anything.status is TaskStatus.CREATED
    assert before_anything.last_sequence_number == 0


def test_point_in_time_accepts_naive_timestamps_as_utc() -> None:
    history = _paused_history().entries
    naive = history[2].timestamp.replace(tzinfo=None)

    state = StateComputer().compute_at_time(history, naive)

    assert state.last_sequence_number == 3


def test_diff_states_reports_status_phase_and_keys() -> None:
    history = _paused_history().answered("businessName", {"business": {"name": "Acme"}}).entries
    computer = StateComputer()

    diff = computer.diff_states(computer.compute_at_sequence(history, 1), computer.compute(history))

    assert diff.status is None
    assert diff.phase == (None, "B")
    assert diff.completeness == (0, 99)
    assert diff.added_keys == ["business.name"]
    assert diff.changed_keys == []
    assert not diff.is_empty
    assert computer.diff_states(computer.compute(history), computer.compute(history)).is_empty


def test_mapping_helpers() -> None:
    base = {"a": {"b": 1, "c": 2}}

    merged = deep_merge(base, {"a": {"c": 3, "d": 4}})

    assert merged == {"a": {"b": 1, "c": 3, "d": 4}}
    assert base == {"a": {"b": 1, "c": 2}}
    assert flatten(merged) == {"a.b": 1, "a.c": 3, "a.d": 4}
    assert lookup_path(merged, "a.d") == 4
    assert lookup_path(merged, "a.z") is None
    assert lookup_path({"a": 1}, "a.b") is None
