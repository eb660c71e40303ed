"""Domain models for task contexts, their history and derived state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from task_engine.orchestrator.errors import ValidationError


class ActorType(str, Enum):
    """Who produced a history entry."""

    SYSTEM = "system"
    AGENT = "agent"
    USER = "user"


class TaskStatus(str, Enum):
    """Derived task lifecycle states."""

    CREATED = "created"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class InteractionStatus(str, Enum):
    """Status of an unanswered UI request."""

    PENDING = "pending"
    SKIPPABLE = "skippable"


class DriveOutcome(str, Enum):
    """Where a drive call left the task."""

    PAUSED_FOR_INPUT = "paused_for_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class Actor:
    """Producer of an entry."""

    type: ActorType
    id: str
    version: str = "1"

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type.value, "id": self.id, "version": self.version}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Actor:
        return cls(
            type=ActorType(str(payload["type"])),
            id=str(payload["id"]),
            version=str(payload.get("version", "1")),
        )


@dataclass(slots=True, frozen=True)
class Trigger:
    """What caused an entry to be appended."""

    type: str
    source: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "source": self.source, "details": dict(self.details)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Trigger:
        details = payload.get("details")
        return cls(
            type=str(payload.get("type", "")),
            source=str(payload.get("source", "")),
            details=dict(details) if isinstance(details, dict) else {},
        )


@dataclass(slots=True, frozen=True)
class ContextEntry:
    """One immutable fact in a task context history."""

    entry_id: str
    context_id: str
    sequence_number: int
    timestamp: datetime
    actor: Actor
    operation: str
    data: dict[str, Any]
    reasoning: str
    trigger: Trigger

    def __post_init__(self) -> None:
        if self.sequence_number < 1:
            raise ValidationError("sequence_number must be >= 1")
        if not self.operation.strip():
            raise ValidationError("operation must be a non-empty string")
        if self.actor.type is not ActorType.USER and not self.reasoning.strip():
            raise ValidationError(
                f"reasoning is mandatory for {self.actor.type.value} actor entries",
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "context_id": self.context_id,
            "sequence_number": self.sequence_number,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor.to_dict(),
            "operation": self.operation,
            "data": self.data,
            "reasoning": self.reasoning,
            "trigger": self.trigger.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ContextEntry:
        return cls(
            entry_id=str(payload["entry_id"]),
            context_id=str(payload["context_id"]),
            sequence_number=int(payload["sequence_number"]),
            timestamp=to_utc_aware(datetime.fromisoformat(str(payload["timestamp"]))),
            actor=Actor.from_dict(payload["actor"]),
            operation=str(payload["operation"]),
            data=dict(payload.get("data") or {}),
            reasoning=str(payload.get("reasoning") or ""),
            trigger=Trigger.from_dict(payload.get("trigger") or {}),
        )


@dataclass(slots=True, frozen=True)
class Phase:
    """One ordered step group of an execution plan."""

    id: str
    goal: str
    agents: tuple[str, ...]
    strategy: str = ""
    estimated_duration: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "agents": list(self.agents),
            "strategy": self.strategy,
            "estimated_duration": self.estimated_duration,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Phase:
        return cls(
            id=str(payload["id"]),
            goal=str(payload.get("goal", "")),
            agents=tuple(str(agent_id) for agent_id in payload.get("agents", ())),
            strategy=str(payload.get("strategy") or ""),
            estimated_duration=str(payload.get("estimated_duration") or ""),
        )


@dataclass(slots=True, frozen=True)
class ExecutionPlan:
    """Ordered phases produced once per task by the planner."""

    phases: tuple[Phase, ...]
    reasoning: str
    user_input_points: tuple[str, ...] = ()
    estimated_total_duration: str = ""

    @property
    def phase_ids(self) -> list[str]:
        return [phase.id for phase in self.phases]

    @property
    def total_agent_steps(self) -> int:
        return sum(len(phase.agents) for phase in self.phases)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phases": [phase.to_dict() for phase in self.phases],
            "reasoning": self.reasoning,
            "user_input_points": list(self.user_input_points),
            "estimated_total_duration": self.estimated_total_duration,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionPlan:
        return cls(
            phases=tuple(Phase.from_dict(item) for item in payload.get("phases", ())),
            reasoning=str(payload.get("reasoning") or ""),
            user_input_points=tuple(str(item) for item in payload.get("user_input_points", ())),
            estimated_total_duration=str(payload.get("estimated_total_duration") or ""),
        )


@dataclass(slots=True)
class UIRequest:
    """Semantic description of data needed from the user."""

    request_id: str
    template_type: str
    priority: str
    semantic_data: dict[str, Any]
    created_by: str
    created_at: datetime | None = None
    order: int | None = None
    group: str | None = None
    skippable: bool = False
    skip_reason: str | None = None

    @property
    def title(self) -> str:
        title = self.semantic_data.get("title")
        if isinstance(title, str) and title.strip():
            return title
        return self.request_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "template_type": self.template_type,
            "priority": self.priority,
            "semantic_data": self.semantic_data,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "order": self.order,
            "group": self.group,
            "skippable": self.skippable,
            "skip_reason": self.skip_reason,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> UIRequest:
        created_at = payload.get("created_at")
        order = payload.get("order")
        return cls(
            request_id=str(payload["request_id"]),
            template_type=str(payload.get("template_type") or "form"),
            priority=str(payload.get("priority") or "medium"),
            semantic_data=dict(payload.get("semantic_data") or {}),
            created_by=str(payload.get("created_by") or ""),
            created_at=(
                to_utc_aware(datetime.fromisoformat(str(created_at))) if created_at else None
            ),
            order=int(order) if order is not None else None,
            group=str(payload["group"]) if payload.get("group") else None,
            skippable=bool(payload.get("skippable", False)),
            skip_reason=str(payload["skip_reason"]) if payload.get("skip_reason") else None,
        )


@dataclass(slots=True, frozen=True)
class PendingUserInteraction:
    """Derived view of a UI request still waiting for a response or skip."""

    request_id: str
    agent_id: str
    title: str
    priority: str
    status: InteractionStatus
    request: UIRequest


@dataclass(slots=True, frozen=True)
class TaskFailure:
    """Recorded failure of a task."""

    failed_operation: str
    error_class: str
    reason: str
    sequence_number: int


@dataclass(slots=True, frozen=True)
class ExecutionCursor:
    """Next phase/agent position to execute."""

    phase_index: int = 0
    agent_index: int = 0


@dataclass(slots=True)
class TaskState:
    """State derived by folding a context history."""

    status: TaskStatus = TaskStatus.CREATED
    phase: str | None = None
    current_phase_index: int | None = None
    plan: ExecutionPlan | None = None
    cursor: ExecutionCursor = field(default_factory=ExecutionCursor)
    data: dict[str, Any] = field(default_factory=dict)
    completeness: int = 0
    data_completeness: int = 0
    executed_steps: int = 0
    pending_user_interactions: list[PendingUserInteraction] = field(default_factory=list)
    failure: TaskFailure | None = None
    anomalies: list[str] = field(default_factory=list)
    last_sequence_number: int = 0
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(slots=True, frozen=True)
class TemplateGoal:
    """Goal declared by a task template."""

    id: str
    description: str
    required: bool = True
    success_criteria: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "required": self.required,
            "success_criteria": list(self.success_criteria),
        }


@dataclass(slots=True, frozen=True)
class TaskTemplate:
    """Declarative task definition copied into every context at creation."""

    id: str
    version: str
    name: str
    description: str = ""
    category: str = ""
    goals: tuple[TemplateGoal, ...] = ()
    required_fields: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "goals": [goal.to_dict() for goal in self.goals],
            "required_fields": list(self.required_fields),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskTemplate:
        for key in ("id", "version", "name"):
            value = payload.get(key)
            if not isinstance(value, (str, int)) or not str(value).strip():
                raise ValidationError(f"template {key} must be a non-empty string")
        raw_goals = payload.get("goals") or []
        if not isinstance(raw_goals, list):
            raise ValidationError("template goals must be a list")
        goals: list[TemplateGoal] = []
        for index, raw_goal in enumerate(raw_goals):
            if not isinstance(raw_goal, dict) or not raw_goal.get("id"):
                raise ValidationError(f"template goals[{index}] must be an object with an id")
            goals.append(
                TemplateGoal(
                    id=str(raw_goal["id"]),
                    description=str(raw_goal.get("description") or ""),
                    required=bool(raw_goal.get("required", True)),
                    success_criteria=tuple(
                        str(item) for item in raw_goal.get("success_criteria") or ()
                    ),
                ),
            )
        raw_fields = payload.get("required_fields") or []
        if not isinstance(raw_fields, list) or not all(
            isinstance(item, str) and item.strip() for item in raw_fields
        ):
            raise ValidationError("template required_fields must be a list of dotted paths")
        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("template metadata must be an object")
        return cls(
            id=str(payload["id"]),
            version=str(payload["version"]),
            name=str(payload["name"]),
            description=str(payload.get("description") or ""),
            category=str(payload.get("category") or ""),
            goals=tuple(goals),
            required_fields=tuple(raw_fields),
            metadata=dict(metadata),
        )


@dataclass(slots=True, frozen=True)
class ContextRecord:
    """Context metadata kept beside the log."""

    context_id: str
    task_template_id: str
    tenant_id: str
    created_at: datetime
    template_snapshot: TaskTemplate
    audit_required: bool = False
    audit_reason: str | None = None


@dataclass(slots=True)
class TaskContext:
    """Context metadata, full history and the state derived from it."""

    context_id: str
    task_template_id: str
    tenant_id: str
    created_at: datetime
    template_snapshot: TaskTemplate
    history: list[ContextEntry]
    current_state: TaskState


@dataclass(slots=True, frozen=True)
class DriveResult:
    """Outcome of one executor drive call."""

    context_id: str
    outcome: DriveOutcome
    state: TaskState
    reason: str | None = None


def to_utc_aware(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
