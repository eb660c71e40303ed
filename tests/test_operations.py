from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import allure
import pytest

from task_engine.orchestrator.errors import ValidationError
from task_engine.orchestrator.models import Actor, ActorType, ContextEntry, Trigger
from task_engine.orchestrator.notifications import (
    LoggingNotificationSink,
    NotificationEvent,
    RecordingNotificationSink,
)
from task_engine.orchestrator.operations import (
    PUBLISHED_OPERATIONS,
    TERMINAL_OPERATIONS,
    EngineOperation,
    is_engine_operation,
    validate_payload,
)

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Engine Operations"),
]

_REQUEST = {"request_id": "email", "semantic_data": {"title": "Email"}}


@pytest.mark.parametrize(
    ("operation", "data"),
    [
        ("task_created", {"template_id": "t", "template_version": "1", "initial_data": {}}),
        (
            "execution_plan_created",
            {"plan": {"phases": [{"id": "A", "agents": ["a1"]}]}, "agent_ids": ["a1"]},
        ),
        ("phase_started", {"phase_index": 0, "phase_id": "A", "goal": "profile"}),
        (
            "agent_executed",
            {
                "phase_index": 0,
                "agent_index": 1,
                "phase_id": "A",
                "agent_id": "a1",
                "status": "needs_input",
            },
        ),
        (
            "ui_request_generated",
            {"requests": [_REQUEST], "original_request_ids": ["email"], "agent_id": "a1"},
        ),
        ("user_response_received", {"request_id": "email", "response": {"user": {}}}),
        ("ui_request_skipped", {"request_id": "email", "reason": "later"}),
        ("task_completed", {"phase_ids": ["A"]}),
        (
            "task_failed",
            {"failed_operation": "agent:a1", "error_class": "AgentError", "reason": "boom"},
        ),
        ("task_cancelled", {"reason": "owner left"}),
        ("anything_an_agent_says", {"free": ["form"]}),
    ],
)
def test_well_formed_payloads_pass(operation: str, data: dict[str, Any]) -> None:
    validate_payload(operation, data)


@pytest.mark.parametrize(
    ("operation", "data", "message"),
    [
        ("task_created", {"template_id": "t", "template_version": "1"}, "initial_data"),
        ("execution_plan_created", {"plan": {"phases": []}, "agent_ids": []}, "must not be empty"),
        (
            "execution_plan_created",
            {
                "plan": {"phases": [{"id": "A", "agents": ["a"]}, {"id": "A", "agents": ["b"]}]},
                "agent_ids": [],
            },
            "duplicates",
        ),
        ("phase_started", {"phase_index": -1, "phase_id": "A"}, "phase_index"),
        ("phase_started", {"phase_index": True, "phase_id": "A"}, "phase_index"),
        (
            "agent_executed",
            {
                "phase_index": 0,
                "agent_index": 0,
                "phase_id": "A",
                "agent_id": "a1",
                "status": "done",
            },
            "status must be one of",
        ),
        ("ui_request_generated", {"requests": [], "agent_id": "a1"}, "must not be empty"),
        (
            "ui_request_generated",
            {"requests": [_REQUEST, _REQUEST], "original_request_ids": ["email"], "agent_id": "a"},
            "duplicate",
        ),
        (
            "ui_request_generated",
            {"requests": [_REQUEST], "original_request_ids": ["phone"], "agent_id": "a1"},
            "must match",
        ),
        ("user_response_received", {"request_id": "email", "response": "yes"}, "response"),
        ("task_completed", {"phase_ids": []}, "must not be empty"),
        ("task_failed", {"failed_operation": "x", "reason": "boom"}, "error_class"),
        ("task_cancelled", {"reason": ""}, "reason"),
        ("anything_an_agent_says", ["not", "an", "object"], "must be an object"),
    ],
)
def test_malformed_payloads_name_the_operation(
    operation: str,
    data: Any,
    message: str,
) -> None:
    with pytest.raises(ValidationError, match=message) as raised:
        validate_payload(operation, data)

    assert str(raised.value).startswith(operation)


def test_operation_sets() -> None:
    assert is_engine_operation("agent_executed")
    assert not is_engine_operation("business_discovered")
    assert TERMINAL_OPERATIONS == {"task_completed", "task_failed", "task_cancelled"}
    assert TERMINAL_OPERATIONS <= PUBLISHED_OPERATIONS
    assert EngineOperation.AGENT_EXECUTED.value not in PUBLISHED_OPERATIONS
    assert EngineOperation.USER_RESPONSE_RECEIVED.value not in PUBLISHED_OPERATIONS


def _entry(operation: str, context_id: str = "ctx-1") -> ContextEntry:
    return ContextEntry(
        entry_id="e1",
        context_id=context_id,
        sequence_number=4,
        timestamp=datetime(2026, 10, 18, 9, 0, tzinfo=UTC),
        actor=Actor(type=ActorType.SYSTEM, id="task_engine"),
        operation=operation,
        data={"reason": "owner left"},
        reasoning="cancelled",
        trigger=Trigger(type="user", source="cli"),
    )


def test_notification_sinks(caplog) -> None:
    recording = RecordingNotificationSink()
    event = NotificationEvent.from_entry(_entry("task_cancelled"))

    recording.publish(event)
    recording.publish(NotificationEvent.from_entry(_entry("task_created", context_id="ctx-2")))
    with caplog.at_level(logging.INFO, logger="task_engine.orchestrator.notifications"):
        LoggingNotificationSink().publish(event)

    assert event.actor_id == "task_engine"
    assert event.data == {"reason": "owner left"}
    assert recording.operations() == ["task_cancelled", "task_created"]
    assert recording.operations("ctx-2") == ["task_created"]
    assert "operation=task_cancelled" in caplog.text
