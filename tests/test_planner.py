from __future__ import annotations

import json
from typing import Any

import allure
import pytest
from scripted import SIMPLE_TEMPLATE, ScriptedAgent, ScriptedReasoning, plan_payload

from task_engine.orchestrator.agents.registry import AgentRegistry
from task_engine.orchestrator.context_store import ContextStore
from task_engine.orchestrator.errors import UpstreamServiceError, ValidationError
from task_engine.orchestrator.planner import PlanGenerator, build_plan_messages, parse_plan
from task_engine.orchestrator.repository import InMemoryEventLogStore
from task_engine.orchestrator.retry import RetryPolicy

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Plan Generation"),
]


@pytest.fixture
def store() -> ContextStore:
    return ContextStore(InMemoryEventLogStore())


@pytest.fixture
def registry() -> AgentRegistry:
    return AgentRegistry([ScriptedAgent("agent1"), ScriptedAgent("agent2")])


def _planner(reasoning: ScriptedReasoning, *, attempts: int = 3) -> PlanGenerator:
    return PlanGenerator(
        reasoning,
        retry_policy=RetryPolicy(
            max_attempts=attempts,
            base_seconds=0.0,
            max_seconds=0.0,
            sleep=lambda _: None,
        ),
    )


def _generate(store: ContextStore, registry: AgentRegistry, reasoning: ScriptedReasoning):
    context = store.create_context(SIMPLE_TEMPLATE, tenant_id="t")
    plan = _planner(reasoning).generate(
        store.recorder(context),
        context.template_snapshot,
        context.current_state,
        registry,
    )
    return context.context_id, plan


def test_plan_without_phases_is_rejected_and_history_is_unchanged(
    store: ContextStore,
    registry: AgentRegistry,
) -> None:
    reasoning = ScriptedReasoning(plans=[{"reasoning": "forgot the phases"}])

    with pytest.raises(ValidationError, match="phases list"):
        _generate(store, registry, reasoning)

    (record,) = store.list_contexts()
    assert [entry.operation for entry in store.read(record.context_id)] == ["task_created"]
    assert reasoning.tasks == ["plan_execution"]


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"phases": []}, "must not be empty"),
        (plan_payload(("A", ["ghost"])), "unknown agent 'ghost'"),
        (plan_payload(("A", ["agent1"]), ("A", ["agent2"])), "duplicates 'A'"),
        ({"phases": [{"id": "A", "agents": []}]}, "non-empty list"),
        ({"phases": ["A"]}, "must be an object"),
        ({"phases": [{"id": " ", "agents": ["agent1"]}]}, "non-empty string"),
    ],
)
def test_parse_plan_rejects_structurally_invalid_plans(
    registry: AgentRegistry,
    payload: dict[str, Any],
    message: str,
) -> None:
    with pytest.raises(ValidationError, match=message):
        parse_plan(payload, registry)


def test_parse_plan_accepts_camel_and_snake_case_durations(registry: AgentRegistry) -> None:
    plan = parse_plan(
        {
            "phases": [
                {"id": "A", "agents": ["agent1"], "estimatedDuration": "5m"},
                {"id": "B", "agents": ["agent2", "agent1"], "estimated_duration": "2m"},
            ],
            "reasoning": "profile first",
            "user_input_points": ["B"],
            "estimatedTotalDuration": "7m",
        },
        registry,
    )

    assert plan.phase_ids == ["A", "B"]
    assert [phase.estimated_duration for phase in plan.phases] == ["5m", "2m"]
    assert plan.user_input_points == ("B",)
    assert plan.estimated_total_duration == "7m"
    assert plan.total_agent_steps == 3


def test_generate_records_exactly_one_plan_entry(
    store: ContextStore,
    registry: AgentRegistry,
) -> None:
    reasoning = ScriptedReasoning(plans=[plan_payload(("A", ["agent1"]), ("B", ["agent2"]))])

    context_id, plan = _generate(store, registry, reasoning)

    history = store.read(context_id)
    assert [entry.operation for entry in history] == ["task_created", "execution_plan_created"]
    assert history[-1].data["agent_ids"] == ["agent1", "agent2"]
    assert [phase["id"] for phase in history[-1].data["plan"]["phases"]] == ["A", "B"]
    assert history[-1].reasoning == "Scripted plan"
    state = store.load(context_id).current_state
    assert state.plan == plan
    assert state.plan is not None
    assert state.plan.phase_ids == ["A", "B"]


def test_malformed_answer_is_retried_and_fenced_json_accepted(
    store: ContextStore,
    registry: AgentRegistry,
) -> None:
    fenced = "```json\n" + json.dumps(plan_payload(("A", ["agent1"]))) + "\n```"
    reasoning = ScriptedReasoning(plans=["this is not json", fenced])

    context_id, plan = _generate(store, registry, reasoning)

    assert plan.phase_ids == ["A"]
    assert reasoning.tasks == ["plan_execution", "plan_execution"]
    assert len(store.read(context_id)) == 2


def test_exhausted_retries_raise_non_retryable_error_without_appending(
    store: ContextStore,
    registry: AgentRegistry,
) -> None:
    reasoning = ScriptedReasoning(plans=["still not json"])

    with pytest.raises(UpstreamServiceError) as raised:
        _generate(store, registry, reasoning)

    assert raised.value.retryable is False
    assert raised.value.reason_code == "planner_malformed_output"
    assert "after 3 attempts" in str(raised.value)
    assert reasoning.tasks == ["plan_execution"] * 3
    (record,) = store.list_contexts()
    assert len(store.read(record.context_id)) == 1


def test_non_retryable_upstream_error_is_not_retried(
    store: ContextStore,
    registry: AgentRegistry,
) -> None:
    reasoning = ScriptedReasoning(
        plans=[
            UpstreamServiceError(
                "invalid api key",
                retryable=False,
                reason_code="http_access_or_auth",
            ),
        ],
    )

    with pytest.raises(UpstreamServiceError, match="invalid api key"):
        _generate(store, registry, reasoning)

    assert reasoning.tasks == ["plan_execution"]


def test_second_plan_for_the_same_task_is_rejected(
    store: ContextStore,
    registry: AgentRegistry,
) -> None:
    reasoning = ScriptedReasoning(plans=[plan_payload(("A", ["agent1"]))])
    context_id, _ = _generate(store, registry, reasoning)
    context = store.load(context_id)

    with pytest.raises(ValidationError, match="already recorded"):
        _planner(reasoning).generate(
            store.recorder(context),
            context.template_snapshot,
            context.current_state,
            registry,
        )

    assert len(store.read(context_id)) == 2


def test_plan_prompt_lists_agents_template_and_schema(
    store: ContextStore,
    registry: AgentRegistry,
) -> None:
    context = store.create_context(
        SIMPLE_TEMPLATE,
        tenant_id="t",
        initial_data={"user": {"name": "Ada"}},
    )

    messages = build_plan_messages(SIMPLE_TEMPLATE, context.current_state, registry)

    assert [message.role for message in messages] == ["system", "user"]
    request = json.loads(messages[-1].content)
    assert request["task"] == "plan_execution"
    assert [agent["id"] for agent in request["available_agents"]] == ["agent1", "agent2"]
    assert request["available_agents"][0]["default_operation"] == "run"
    assert request["template"]["id"] == "simple"
    assert request["state"]["data"] == {"user": {"name": "Ada"}}
    assert "phases" in request["response_schema"]
