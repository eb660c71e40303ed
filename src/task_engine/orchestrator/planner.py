"""Plan generation through the reasoning service."""

from __future__ import annotations

import json
import logging
from typing import Any

from task_engine.orchestrator.agents.registry import AgentRegistry
from task_engine.orchestrator.context_store import ContextRecorder
from task_engine.orchestrator.errors import ValidationError
from task_engine.orchestrator.models import ExecutionPlan, Phase, TaskState, TaskTemplate
from task_engine.orchestrator.operations import EngineOperation
from task_engine.orchestrator.reasoning import (
    JSON_OBJECT_FORMAT,
    ChatMessage,
    ReasoningService,
    parse_json_object,
)
from task_engine.orchestrator.retry import RetryPolicy

logger = logging.getLogger(__name__)

PLAN_RESPONSE_SCHEMA: dict[str, Any] = {
    "phases": [
        {
            "id": "<unique phase id>",
            "goal": "<what this phase achieves>",
            "agents": ["<agent id from available_agents>"],
            "strategy": "<how the agents should approach it>",
            "estimatedDuration": "<free text>",
        },
    ],
    "reasoning": "<why this plan satisfies the template goals>",
    "userInputPoints": ["<phase id where user input is expected>"],
    "estimatedTotalDuration": "<free text>",
}

_SYSTEM_PROMPT = (
    "You plan the execution of a business task. Split the work into ordered phases; "
    "each phase names one or more agents, chosen only from available_agents, that run "
    "in sequence. Ask the user for as little as possible. "
    "Answer with a single JSON object matching response_schema."
)


class PlanGenerator:
    """Builds the execution plan once per task and records it."""

    def __init__(
        self,
        reasoning: ReasoningService,
        *,
        retry_policy: RetryPolicy,
        temperature: float = 0.2,
    ) -> None:
        self.reasoning = reasoning
        self.retry_policy = retry_policy
        self.temperature = temperature

    def generate(
        self,
        recorder: ContextRecorder,
        template: TaskTemplate,
        state: TaskState,
        registry: AgentRegistry,
    ) -> ExecutionPlan:
        """Return the recorded plan; raise without appending anything on failure."""

        if state.plan is not None:
            raise ValidationError("an execution plan is already recorded for this task")

        messages = build_plan_messages(template, state, registry)

        def _attempt() -> dict[str, Any]:
            raw = self.reasoning.complete(
                messages,
                response_format=JSON_OBJECT_FORMAT,
                temperature=self.temperature,
            )
            return parse_json_object(raw, service="planner")

        payload = self.retry_policy.call(_attempt, operation="plan_generation")
        plan = parse_plan(payload, registry)
        recorder.record_system(
            EngineOperation.EXECUTION_PLAN_CREATED,
            {"plan": plan.to_dict(), "agent_ids": registry.ids()},
            plan.reasoning or f"Plan with {len(plan.phases)} phases",
        )
        logger.info(
            "Recorded plan for context %s: %s",
            recorder.context_id,
            " -> ".join(plan.phase_ids),
        )
        return plan


def build_plan_messages(
    template: TaskTemplate,
    state: TaskState,
    registry: AgentRegistry,
) -> list[ChatMessage]:
    request = {
        "task": "plan_execution",
        "template": template.to_dict(),
        "state": {"status": state.status.value, "data": state.data},
        "available_agents": [capability.to_dict() for capability in registry.capabilities()],
        "response_schema": PLAN_RESPONSE_SCHEMA,
    }
    return [
        ChatMessage(role="system", content=_SYSTEM_PROMPT),
        ChatMessage(role="user", content=json.dumps(request, indent=2, sort_keys=True)),
    ]


def parse_plan(payload: dict[str, Any], registry: AgentRegistry) -> ExecutionPlan:
    """Validate a reasoning-service plan against the registry."""

    raw_phases = payload.get("phases")
    if not isinstance(raw_phases, list):
        raise ValidationError("plan response must contain a phases list")
    if not raw_phases:
        raise ValidationError("plan response phases must not be empty")

    phases: list[Phase] = []
    seen: set[str] = set()
    for index, raw_phase in enumerate(raw_phases):
        if not isinstance(raw_phase, dict):
            raise ValidationError(f"phases[{index}] must be an object")
        phase_id = raw_phase.get("id")
        if not isinstance(phase_id, str) or not phase_id.strip():
            raise ValidationError(f"phases[{index}].id must be a non-empty string")
        if phase_id in seen:
            raise ValidationError(f"phases[{index}].id duplicates {phase_id!r}")
        seen.add(phase_id)

        agents = raw_phase.get("agents")
        if not isinstance(agents, list) or not agents:
            raise ValidationError(f"phases[{index}].agents must be a non-empty list")
        for agent_id in agents:
            if not isinstance(agent_id, str) or agent_id not in registry:
                raise ValidationError(f"phases[{index}] references unknown agent {agent_id!r}")

        phases.append(
            Phase(
                id=phase_id,
                goal=str(raw_phase.get("goal") or ""),
                agents=tuple(agents),
                strategy=str(raw_phase.get("strategy") or ""),
                estimated_duration=str(
                    raw_phase.get("estimatedDuration") or raw_phase.get("estimated_duration") or "",
                ),
            ),
        )

    user_input_points = payload.get("userInputPoints", payload.get("user_input_points")) or []
    if not isinstance(user_input_points, list):
        raise ValidationError("userInputPoints must be a list")
    reasoning = payload.get("reasoning") or ""
    if not isinstance(reasoning, str):
        raise ValidationError("plan reasoning must be a string")

    return ExecutionPlan(
        phases=tuple(phases),
        reasoning=reasoning,
        user_input_points=tuple(str(item) for item in user_input_points),
        estimated_total_duration=str(
            payload.get("estimatedTotalDuration") or payload.get("estimated_total_duration") or "",
        ),
    )
