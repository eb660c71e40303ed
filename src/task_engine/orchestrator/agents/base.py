"""Request/response agent protocol and the self-recording hook agents write through."""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Protocol

from task_engine.orchestrator.context_store import ContextRecorder
from task_engine.orchestrator.errors import ValidationError
from task_engine.orchestrator.models import (
    Actor,
    ActorType,
    ContextEntry,
    ExecutionPlan,
    TaskContext,
    TaskStatus,
    TaskTemplate,
    Trigger,
    UIRequest,
)
from task_engine.orchestrator.operations import is_engine_operation

logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    COMPLETED = "completed"
    NEEDS_INPUT = "needs_input"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class TaskSnapshot:
    """Read-only copy of the context an agent works on."""

    context_id: str
    tenant_id: str
    template: TaskTemplate
    status: TaskStatus
    phase: str | None
    plan: ExecutionPlan | None
    data: dict[str, Any]

    @classmethod
    def from_context(cls, context: TaskContext) -> TaskSnapshot:
        state = context.current_state
        return cls(
            context_id=context.context_id,
            tenant_id=context.tenant_id,
            template=context.template_snapshot,
            status=state.status,
            phase=state.phase,
            plan=state.plan,
            data=copy.deepcopy(state.data),
        )


class FactRecorder:
    """Appends agent facts to one context under the agent's own actor."""

    def __init__(self, recorder: ContextRecorder, *, actor: Actor, trigger: Trigger) -> None:
        self._recorder = recorder
        self.actor = actor
        self.trigger = trigger

    def record_fact(self, operation: str, data: dict[str, Any], reasoning: str) -> ContextEntry:
        if is_engine_operation(operation):
            raise ValidationError(f"agents cannot record engine operation {operation!r}")
        if not isinstance(data, dict):
            raise ValidationError("fact data must be an object")
        return self._recorder.record(
            actor=self.actor,
            operation=operation,
            data=data,
            reasoning=reasoning,
            trigger=self.trigger,
        )


@dataclass(slots=True)
class AgentRequest:
    task_context_snapshot: TaskSnapshot
    operation: str
    parameters: dict[str, Any]
    recorder: FactRecorder

    def record_fact(self, operation: str, data: dict[str, Any], reasoning: str) -> ContextEntry:
        return self.recorder.record_fact(operation, data, reasoning)


@dataclass(slots=True, frozen=True)
class ContextUpdate:
    """Fact the executor appends on the agent's behalf before acting on the response."""

    operation: str
    data: dict[str, Any]
    reasoning: str = ""


@dataclass(slots=True)
class AgentResponse:
    status: AgentStatus
    reasoning: str
    data: dict[str, Any] = field(default_factory=dict)
    ui_requests: list[UIRequest] = field(default_factory=list)
    next_agent_hint: str | None = None
    context_update: ContextUpdate | None = None

    @classmethod
    def completed(cls, reasoning: str, **kwargs: Any) -> AgentResponse:
        return cls(status=AgentStatus.COMPLETED, reasoning=reasoning, **kwargs)

    @classmethod
    def needs_input(
        cls,
        reasoning: str,
        ui_requests: list[UIRequest],
        **kwargs: Any,
    ) -> AgentResponse:
        return cls(
            status=AgentStatus.NEEDS_INPUT,
            reasoning=reasoning,
            ui_requests=ui_requests,
            **kwargs,
        )

    @classmethod
    def error(cls, reasoning: str, **kwargs: Any) -> AgentResponse:
        return cls(status=AgentStatus.ERROR, reasoning=reasoning, **kwargs)


class AgentProtocol(Protocol):
    agent_id: str
    version: str
    description: str
    operations: type[Enum]
    default_operation: Enum

    def execute(self, request: AgentRequest) -> AgentResponse: ...


class BaseAgent(ABC):
    """Dispatches a request to `handle` after resolving it to a declared operation."""

    agent_id: ClassVar[str]
    version: ClassVar[str] = "1"
    description: ClassVar[str] = ""
    operations: ClassVar[type[Enum]]
    default_operation: ClassVar[Enum]

    def execute(self, request: AgentRequest) -> AgentResponse:
        try:
            operation = self.operations(request.operation)
        except ValueError:
            supported = ", ".join(str(item.value) for item in self.operations)
            return AgentResponse.error(
                f"{self.agent_id} does not support operation {request.operation!r} "
                f"(supported: {supported})",
            )
        return self.handle(operation, request)

    @abstractmethod
    def handle(self, operation: Enum, request: AgentRequest) -> AgentResponse:
        """Run one supported operation."""

    def actor(self) -> Actor:
        return Actor(type=ActorType.AGENT, id=self.agent_id, version=self.version)


def validate_response(response: Any, *, agent_id: str) -> AgentResponse:
    """Check the structure of whatever an agent returned."""

    if not isinstance(response, AgentResponse):
        raise ValidationError(
            f"agent {agent_id} returned {type(response).__name__}, expected AgentResponse",
        )
    if not isinstance(response.status, AgentStatus):
        raise ValidationError(f"agent {agent_id} returned unknown status {response.status!r}")
    if not isinstance(response.reasoning, str) or not response.reasoning.strip():
        raise ValidationError(f"agent {agent_id} response reasoning must be a non-empty string")
    if not isinstance(response.data, dict):
        raise ValidationError(f"agent {agent_id} response data must be an object")
    if not all(isinstance(item, UIRequest) for item in response.ui_requests):
        raise ValidationError(f"agent {agent_id} ui_requests must be UIRequest objects")
    request_ids = [item.request_id for item in response.ui_requests]
    if len(set(request_ids)) != len(request_ids):
        raise ValidationError(f"agent {agent_id} ui_requests contain duplicate request ids")
    if response.status is AgentStatus.NEEDS_INPUT and not response.ui_requests:
        raise ValidationError(f"agent {agent_id} asked for input without any ui_requests")
    update = response.context_update
    if update is not None:
        if not isinstance(update, ContextUpdate) or not isinstance(update.data, dict):
            raise ValidationError(f"agent {agent_id} context_update must be a ContextUpdate")
        if not update.operation.strip() or is_engine_operation(update.operation):
            raise ValidationError(
                f"agent {agent_id} context_update operation {update.operation!r} is not allowed",
            )
    return response
