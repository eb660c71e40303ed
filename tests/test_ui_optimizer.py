from __future__ import annotations

import json
from typing import Any

import allure
import pytest
from scripted import SIMPLE_TEMPLATE, ScriptedReasoning, form_request

from task_engine.orchestrator.context_store import ContextStore
from task_engine.orchestrator.errors import UpstreamServiceError, ValidationError
from task_engine.orchestrator.models import TaskStatus, UIRequest
from task_engine.orchestrator.repository import InMemoryEventLogStore
from task_engine.orchestrator.retry import RetryPolicy
from task_engine.orchestrator.ui_optimizer import (
    UIRequestOptimizer,
    apply_ordering,
    build_optimizer_messages,
)

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("UI Request Optimizer"),
]


def _requests() -> list[UIRequest]:
    return [
        form_request("email", priority="low", field="user.email"),
        form_request("name", priority="high", field="user.name"),
        form_request("state", field="business.state"),
    ]


def _optimizer(reasoning: ScriptedReasoning, *, enabled: bool = True) -> UIRequestOptimizer:
    return UIRequestOptimizer(
        reasoning,
        retry_policy=RetryPolicy(
            max_attempts=3,
            base_seconds=0.0,
            max_seconds=0.0,
            sleep=lambda _: None,
        ),
        enabled=enabled,
    )


def test_apply_ordering_annotates_order_groups_and_skippable() -> None:
    requests = _requests()

    ordered, reasoning = apply_ordering(
        requests,
        {
            "order": ["name", "state", "email"],
            "groups": {"identity": ["name", "email"]},
            "skippable": [{"request_id": "state", "reason": "state is on the record"}],
            "reasoning": "Name unlocks the lookup",
        },
    )

    assert [request.request_id for request in ordered] == ["name", "state", "email"]
    assert [request.order for request in ordered] == [0, 1, 2]
    assert [request.group for request in ordered] == ["identity", None, "identity"]
    assert [request.skippable for request in ordered] == [False, True, False]
    assert ordered[1].skip_reason == "state is on the record"
    assert reasoning == "Name unlocks the lookup"
    assert all(request.order is None for request in requests)


def test_apply_ordering_accepts_group_list_and_bare_skippable_ids() -> None:
    ordered, reasoning = apply_ordering(
        _requests(),
        {
            "order": ["email", "name", "state"],
            "groups": [{"name": "contact", "request_ids": ["email"]}],
            "skippable": ["name"],
        },
    )

    by_id = {request.request_id: request for request in ordered}
    assert by_id["email"].group == "contact"
    assert by_id["name"].skippable is True
    assert by_id["name"].skip_reason == "Answer inferable from existing data"
    assert reasoning == "Ordered by request optimizer"


@pytest.mark.parametrize(
    "payload",
    [
        {"order": ["name", "email"]},
        {"order": ["name", "email", "state", "phone"]},
        {"order": ["name", "name", "email"]},
        {"order": "name,email,state"},
        {"order": ["name", "email", "state"], "groups": {"g": ["phone"]}},
        {"order": ["name", "email", "state"], "groups": "g"},
        {"order": ["name", "email", "state"], "skippable": ["phone"]},
        {"order": ["name", "email", "state"], "skippable": [3]},
    ],
)
def test_apply_ordering_rejects_lost_or_invented_ids(payload: dict[str, Any]) -> None:
    with pytest.raises(UpstreamServiceError) as raised:
        apply_ordering(_requests(), payload)

    assert raised.value.retryable is True
    assert raised.value.reason_code == "optimizer_malformed_output"


def test_optimize_records_one_entry_and_keeps_every_request() -> None:
    store = ContextStore(InMemoryEventLogStore())
    context = store.create_context(SIMPLE_TEMPLATE, tenant_id="t")
    reasoning = ScriptedReasoning(
        orderings=[{"order": ["name", "state", "email"], "reasoning": "Name first"}],
    )

    ordered = _optimizer(reasoning).optimize(
        store.recorder(context),
        _requests(),
        {"user": {"name": "Ada"}},
        "agent2",
    )

    assert [request.request_id for request in ordered] == ["name", "state", "email"]
    history = store.read(context.context_id)
    assert [entry.operation for entry in history] == ["task_created", "ui_request_generated"]
    generated = history[-1].data
    assert generated["original_request_ids"] == ["email", "name", "state"]
    assert [item["request_id"] for item in generated["requests"]] == ["name", "state", "email"]
    assert generated["agent_id"] == "agent2"
    assert history[-1].reasoning == "Name first"

    state = store.load(context.context_id).current_state
    assert state.status is TaskStatus.WAITING_FOR_INPUT
    assert {item.request_id for item in state.pending_user_interactions} == {
        "email",
        "name",
        "state",
    }
    assert reasoning.requests[0]["state_data"] == {"user": {"name": "Ada"}}


def test_optimize_retries_until_the_ordering_is_complete() -> None:
    store = ContextStore(InMemoryEventLogStore())
    context = store.create_context(SIMPLE_TEMPLATE, tenant_id="t")
    reasoning = ScriptedReasoning(
        orderings=[
            "garbage",
            {"order": ["email"]},
            {"order": ["state", "email", "name"]},
        ],
    )

    ordered = _optimizer(reasoning).optimize(store.recorder(context), _requests(), {}, "agent2")

    assert [request.request_id for request in ordered] == ["state", "email", "name"]
    assert reasoning.tasks == ["optimize_ui_requests"] * 3
    assert len(store.read(context.context_id)) == 2


def test_optimize_exhaustion_appends_nothing() -> None:
    store = ContextStore(InMemoryEventLogStore())
    context = store.create_context(SIMPLE_TEMPLATE, tenant_id="t")
    reasoning = ScriptedReasoning(orderings=[{"order": ["email"]}])

    with pytest.raises(UpstreamServiceError) as raised:
        _optimizer(reasoning).optimize(store.recorder(context), _requests(), {}, "agent2")

    assert raised.value.retryable is False
    assert len(store.read(context.context_id)) == 1


def test_optimize_requires_requests() -> None:
    store = ContextStore(InMemoryEventLogStore())
    context = store.create_context(SIMPLE_TEMPLATE, tenant_id="t")

    with pytest.raises(ValidationError, match="at least one"):
        _optimizer(ScriptedReasoning()).optimize(store.recorder(context), [], {}, "agent2")


def test_disabled_optimizer_keeps_agent_order_without_reasoning_calls() -> None:
    store = ContextStore(InMemoryEventLogStore())
    context = store.create_context(SIMPLE_TEMPLATE, tenant_id="t")
    reasoning = ScriptedReasoning()

    ordered = _optimizer(reasoning, enabled=False).optimize(
        store.recorder(context),
        _requests(),
        {},
        "agent2",
    )

    assert [request.request_id for request in ordered] == ["email", "name", "state"]
    assert [request.order for request in ordered] == [0, 1, 2]
    assert reasoning.tasks == []
    assert "disabled" in store.read(context.context_id)[-1].reasoning


def test_optimizer_prompt_carries_requests_and_schema() -> None:
    messages = build_optimizer_messages(_requests(), {"business": {"state": "CA"}})

    request = json.loads(messages[-1].content)
    assert request["task"] == "optimize_ui_requests"
    assert [item["request_id"] for item in request["requests"]] == ["email", "name", "state"]
    assert request["state_data"] == {"business": {"state": "CA"}}
    assert set(request["response_schema"]) == {"order", "groups", "skippable", "reasoning"}
