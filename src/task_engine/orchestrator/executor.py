"""Phase executor: plans once, runs agents one at a time, pauses for input and resumes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any

from task_engine.orchestrator.agents.base import (
    AgentProtocol,
    AgentRequest,
    AgentResponse,
    AgentStatus,
    FactRecorder,
    TaskSnapshot,
    validate_response,
)
from task_engine.orchestrator.agents.registry import AgentRegistry
from task_engine.orchestrator.context_store import ContextRecorder, ContextStore
from task_engine.orchestrator.errors import (
    ConcurrencyConflict,
    StateCorruptionError,
    TaskEngineError,
    UpstreamServiceError,
    ValidationError,
)
from task_engine.orchestrator.models import (
    Actor,
    ActorType,
    DriveOutcome,
    DriveResult,
    ExecutionPlan,
    Phase,
    TaskContext,
    TaskState,
    TaskStatus,
    Trigger,
)
from task_engine.orchestrator.operations import EngineOperation
from task_engine.orchestrator.planner import PlanGenerator
from task_engine.orchestrator.ui_optimizer import UIRequestOptimizer

logger = logging.getLogger(__name__)

_CANCEL_ATTEMPTS = 3


@dataclass(slots=True)
class _Progress:
    operation: str = "drive"


@dataclass(slots=True)
class _ContextLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    holders: int = 0


class PhaseExecutor:
    """Single writer per context; every decision lands in the context history."""

    def __init__(
        self,
        store: ContextStore,
        registry: AgentRegistry,
        planner: PlanGenerator,
        optimizer: UIRequestOptimizer,
        *,
        agent_timeout_seconds: float = 30.0,
        auto_skip_inferable: bool = False,
        max_concurrent_agents: int = 4,
    ) -> None:
        self.store = store
        self.registry = registry
        self.planner = planner
        self.optimizer = optimizer
        self.agent_timeout_seconds = agent_timeout_seconds
        self.auto_skip_inferable = auto_skip_inferable
        self._locks: dict[str, _ContextLock] = {}
        self._locks_guard = threading.Lock()
        self._agent_slots = threading.BoundedSemaphore(max_concurrent_agents)
        self._abandoned: list[threading.Thread] = []

    def close(self) -> None:
        with self._locks_guard:
            stuck = [thread for thread in self._abandoned if thread.is_alive()]
            self._abandoned.clear()
        if stuck:
            logger.warning(
                "%d timed-out agent call(s) still running at shutdown: %s",
                len(stuck),
                ", ".join(thread.name for thread in stuck),
            )

    def drive(self, context_id: str) -> DriveResult:
        """Advance the task as far as it can go without user input."""

        with self._context_lock(context_id):
            record = self.store.get_record(context_id)
            if record.audit_required:
                raise StateCorruptionError(
                    context_id,
                    f"context is flagged for manual audit ({record.audit_reason})",
                )
            context = self.store.load(context_id)
            state = context.current_state
            if state.is_terminal or state.pending_user_interactions:
                return _result(context_id, state)

            progress = _Progress()
            try:
                return self._run(context, progress)
            except UpstreamServiceError as error:
                self._record_failure(context_id, progress.operation, error)
                return _result(context_id, self.store.load(context_id).current_state)
            except StateCorruptionError:
                raise
            except Exception as error:
                self._record_failure(context_id, progress.operation, error)
                raise

    def submit_response(
        self,
        context_id: str,
        request_id: str,
        response: dict[str, Any],
        *,
        user_id: str = "user",
    ) -> DriveResult:
        """Record the user's answer and resume once nothing else is pending."""

        if not isinstance(response, dict):
            raise ValidationError("response must be an object")
        return self._resolve_request(
            context_id,
            request_id,
            actor=Actor(type=ActorType.USER, id=user_id),
            operation=EngineOperation.USER_RESPONSE_RECEIVED,
            data={"request_id": request_id, "response": response},
            reasoning=f"User answered {request_id}",
            trigger=Trigger(type="user_event", source="submit_response"),
        )

    def skip_request(
        self,
        context_id: str,
        request_id: str,
        reason: str,
        *,
        user_id: str = "user",
    ) -> DriveResult:
        """Record an explicit skip marker and resume once nothing else is pending."""

        return self._resolve_request(
            context_id,
            request_id,
            actor=Actor(type=ActorType.USER, id=user_id),
            operation=EngineOperation.UI_REQUEST_SKIPPED,
            data={"request_id": request_id, "reason": reason},
            reasoning=f"User skipped {request_id}: {reason}",
            trigger=Trigger(type="user_event", source="skip_request"),
        )

    def cancel(self, context_id: str, reason: str) -> DriveResult:
        """Append `task_cancelled`; does not wait for a running drive."""

        return cancel_context(self.store, context_id, reason)

    def _resolve_request(  # noqa: PLR0913
        self,
        context_id: str,
        request_id: str,
        *,
        actor: Actor,
        operation: EngineOperation,
        data: dict[str, Any],
        reasoning: str,
        trigger: Trigger,
    ) -> DriveResult:
        with self._context_lock(context_id):
            context = self.store.load(context_id)
            state = context.current_state
            if state.is_terminal:
                raise ValidationError(
                    f"context {context_id} is {state.status.value}; it takes no more input",
                )
            pending_ids = {item.request_id for item in state.pending_user_interactions}
            if request_id not in pending_ids:
                raise ValidationError(f"request {request_id!r} is not pending on {context_id}")

            self.store.recorder(context).record(
                actor=actor,
                operation=operation.value,
                data=data,
                reasoning=reasoning,
                trigger=trigger,
            )
            state = self.store.load(context_id).current_state
            if state.pending_user_interactions:
                return _result(context_id, state)
            return self.drive(context_id)

    def _run(self, context: TaskContext, progress: _Progress) -> DriveResult:
        context_id = context.context_id
        recorder = self.store.recorder(context)
        plan = context.current_state.plan
        if plan is None:
            progress.operation = "plan_generation"
            plan = self.planner.generate(
                recorder,
                context.template_snapshot,
                context.current_state,
                self.registry,
            )
            context = self.store.load(context_id)

        state = context.current_state
        phase_index = state.cursor.phase_index
        agent_index = state.cursor.agent_index
        current_phase_index = state.current_phase_index

        while phase_index < len(plan.phases):
            phase = plan.phases[phase_index]
            if current_phase_index != phase_index:
                progress.operation = EngineOperation.PHASE_STARTED.value
                recorder.record_system(
                    EngineOperation.PHASE_STARTED,
                    {"phase_index": phase_index, "phase_id": phase.id, "goal": phase.goal},
                    f"Starting phase {phase.id}: {phase.goal or 'no goal given'}",
                )
                current_phase_index = phase_index

            while agent_index < len(phase.agents):
                context = self.store.load(context_id)
                if context.current_state.is_terminal:
                    return _result(context_id, context.current_state)
                recorder = self.store.recorder(context)

                agent_id = phase.agents[agent_index]
                progress.operation = f"agent:{agent_id}"
                response = self._call_agent(
                    context,
                    recorder,
                    plan=plan,
                    phase=phase,
                    phase_index=phase_index,
                    agent_index=agent_index,
                )
                outcome = self._record_response(
                    context_id,
                    recorder,
                    response,
                    phase=phase,
                    phase_index=phase_index,
                    agent_index=agent_index,
                    agent_id=agent_id,
                    progress=progress,
                )
                if outcome is not None:
                    return outcome
                agent_index += 1

            phase_index += 1
            agent_index = 0

        progress.operation = EngineOperation.TASK_COMPLETED.value
        self.store.recorder(self.store.load(context_id)).record_system(
            EngineOperation.TASK_COMPLETED,
            {"phase_ids": plan.phase_ids},
            f"All {len(plan.phases)} phases completed",
        )
        logger.info("Context %s completed", context_id)
        return _result(context_id, self.store.load(context_id).current_state)

    def _call_agent(  # noqa: PLR0913
        self,
        context: TaskContext,
        recorder: ContextRecorder,
        *,
        plan: ExecutionPlan,
        phase: Phase,
        phase_index: int,
        agent_index: int,
    ) -> AgentResponse:
        agent_id = phase.agents[agent_index]
        agent: AgentProtocol = self.registry.get(agent_id)
        request = AgentRequest(
            task_context_snapshot=TaskSnapshot.from_context(context),
            operation=str(agent.default_operation.value),
            parameters={
                "phase_id": phase.id,
                "goal": phase.goal,
                "strategy": phase.strategy,
                "phase_index": phase_index,
                "agent_index": agent_index,
                "user_input_points": list(plan.user_input_points),
            },
            recorder=FactRecorder(
                recorder,
                actor=Actor(type=ActorType.AGENT, id=agent_id, version=agent.version),
                trigger=Trigger(
                    type="phase",
                    source=phase.id,
                    details={"phase_index": phase_index, "agent_index": agent_index},
                ),
            ),
        )
        logger.info(
            "Context %s phase %s: running agent %s (%s)",
            context.context_id,
            phase.id,
            agent_id,
            request.operation,
        )
        if not self._agent_slots.acquire(timeout=self.agent_timeout_seconds):
            return AgentResponse.error(
                f"No agent slot freed up for {agent_id} within {self.agent_timeout_seconds:g}s",
            )
        future: Future[AgentResponse] = Future()
        thread = threading.Thread(
            target=_run_agent,
            args=(agent, request, future),
            name=f"agent-{agent_id}-{context.context_id}",
            daemon=True,
        )
        try:
            thread.start()
            response = future.result(timeout=self.agent_timeout_seconds)
        except FutureTimeoutError:
            with self._locks_guard:
                self._abandoned = [item for item in self._abandoned if item.is_alive()]
                self._abandoned.append(thread)
            logger.warning("Agent %s timed out on context %s", agent_id, context.context_id)
            return AgentResponse.error(
                f"Agent {agent_id} timed out after {self.agent_timeout_seconds:g}s",
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Agent %s raised on context %s: %s", agent_id, context.context_id, error)
            return AgentResponse.error(f"Agent {agent_id} raised {type(error).__name__}: {error}")
        finally:
            self._agent_slots.release()
        return validate_response(response, agent_id=agent_id)

    def _record_response(  # noqa: PLR0913
        self,
        context_id: str,
        recorder: ContextRecorder,
        response: AgentResponse,
        *,
        phase: Phase,
        phase_index: int,
        agent_index: int,
        agent_id: str,
        progress: _Progress,
    ) -> DriveResult | None:
        """Append the response; return a result when the drive has to stop here."""

        try:
            self._record_update(recorder, response, agent_id)
            if response.status is AgentStatus.NEEDS_INPUT:
                progress.operation = "ui_request_optimization"
                self._raise_ui_requests(context_id, recorder, response, agent_id)
                progress.operation = f"agent:{agent_id}"
            self._record_executed(recorder, response, phase, phase_index, agent_index, agent_id)
        except ConcurrencyConflict:
            latest = self.store.load(context_id)
            if not latest.current_state.is_terminal:
                raise
            late = self.store.recorder(latest)
            self._record_update(late, response, agent_id)
            self._record_executed(late, response, phase, phase_index, agent_index, agent_id)
            logger.info(
                "Agent %s finished after context %s ended; result kept as history",
                agent_id,
                context_id,
            )
            return _result(context_id, self.store.load(context_id).current_state)

        if response.status is AgentStatus.ERROR:
            recorder.record_system(
                EngineOperation.TASK_FAILED,
                {
                    "failed_operation": f"agent:{agent_id}",
                    "error_class": "AgentError",
                    "reason": response.reasoning,
                },
                f"Agent {agent_id} failed in phase {phase.id}: {response.reasoning}",
            )
            logger.warning("Context %s failed at agent %s", context_id, agent_id)
            return _result(context_id, self.store.load(context_id).current_state)

        if response.status is AgentStatus.NEEDS_INPUT:
            state = self.store.load(context_id).current_state
            if state.pending_user_interactions:
                return _result(context_id, state)
        return None

    def _record_update(
        self,
        recorder: ContextRecorder,
        response: AgentResponse,
        agent_id: str,
    ) -> None:
        update = response.context_update
        if update is None:
            return
        agent = self.registry.get(agent_id)
        recorder.record(
            actor=Actor(type=ActorType.AGENT, id=agent_id, version=agent.version),
            operation=update.operation,
            data=update.data,
            reasoning=update.reasoning or response.reasoning,
            trigger=Trigger(type="agent_response", source=agent_id),
        )

    def _record_executed(  # noqa: PLR0913
        self,
        recorder: ContextRecorder,
        response: AgentResponse,
        phase: Phase,
        phase_index: int,
        agent_index: int,
        agent_id: str,
    ) -> None:
        recorder.record_system(
            EngineOperation.AGENT_EXECUTED,
            {
                "phase_index": phase_index,
                "agent_index": agent_index,
                "phase_id": phase.id,
                "agent_id": agent_id,
                "status": response.status.value,
            },
            response.reasoning,
            trigger=Trigger(type="agent_response", source=agent_id),
        )

    def _raise_ui_requests(
        self,
        context_id: str,
        recorder: ContextRecorder,
        response: AgentResponse,
        agent_id: str,
    ) -> None:
        now = self.store.clock()
        requests = [
            replace(
                request,
                created_at=request.created_at or now,
                created_by=request.created_by or agent_id,
            )
            for request in response.ui_requests
        ]
        state_data = self.store.load(context_id).current_state.data
        ordered = self.optimizer.optimize(recorder, requests, state_data, agent_id)
        if not self.auto_skip_inferable:
            return
        for request in ordered:
            if not request.skippable:
                continue
            recorder.record_system(
                EngineOperation.UI_REQUEST_SKIPPED,
                {
                    "request_id": request.request_id,
                    "reason": request.skip_reason or "Answer inferable from existing data",
                },
                f"Auto-skipped {request.request_id}: answer inferable from existing data",
                trigger=Trigger(type="system", source="auto_skip_inferable"),
            )

    def _record_failure(self, context_id: str, operation: str, error: Exception) -> None:
        try:
            latest = self.store.load(context_id)
            if latest.current_state.is_terminal:
                return
            self.store.recorder(latest).record_system(
                EngineOperation.TASK_FAILED,
                {
                    "failed_operation": operation,
                    "error_class": type(error).__name__,
                    "reason": str(error) or type(error).__name__,
                },
                f"{operation} failed: {error}",
            )
        except Exception as append_error:  # noqa: BLE001
            logger.warning(
                "Could not record failure of %s on context %s: %s",
                operation,
                context_id,
                append_error,
            )
            return
        logger.warning("Context %s failed during %s: %s", context_id, operation, error)

    @contextmanager
    def _context_lock(self, context_id: str) -> Iterator[None]:
        with self._locks_guard:
            holder = self._locks.get(context_id)
            if holder is None:
                holder = self._locks[context_id] = _ContextLock()
            holder.holders += 1
        try:
            with holder.lock:
                yield
        finally:
            with self._locks_guard:
                holder.holders -= 1
                if holder.holders == 0:
                    del self._locks[context_id]


def _run_agent(agent: AgentProtocol, request: AgentRequest, future: Future[AgentResponse]) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        future.set_result(agent.execute(request))
    except BaseException as error:  # noqa: BLE001
        future.set_exception(error)


def _result(context_id: str, state: TaskState) -> DriveResult:
    if state.status is TaskStatus.COMPLETED:
        return DriveResult(context_id=context_id, outcome=DriveOutcome.COMPLETED, state=state)
    if state.status is TaskStatus.FAILED:
        return DriveResult(
            context_id=context_id,
            outcome=DriveOutcome.FAILED,
            state=state,
            reason=state.failure.reason if state.failure else None,
        )
    if state.status is TaskStatus.CANCELLED:
        return DriveResult(context_id=context_id, outcome=DriveOutcome.CANCELLED, state=state)
    if state.pending_user_interactions:
        return DriveResult(
            context_id=context_id,
            outcome=DriveOutcome.PAUSED_FOR_INPUT,
            state=state,
        )
    raise TaskEngineError(
        f"context {context_id} stopped in status {state.status.value} without a pause point",
    )


def cancel_context(store: ContextStore, context_id: str, reason: str) -> DriveResult:
    """Append `task_cancelled` unless the task already ended; retried on append races."""

    last_error: ConcurrencyConflict | None = None
    for _ in range(_CANCEL_ATTEMPTS):
        context = store.load(context_id)
        if context.current_state.is_terminal:
            return _result(context_id, context.current_state)
        try:
            store.recorder(context).record_system(
                EngineOperation.TASK_CANCELLED,
                {"reason": reason},
                f"Task cancelled: {reason}",
                trigger=Trigger(type="api", source="cancel"),
            )
        except ConcurrencyConflict as error:
            last_error = error
            continue
        logger.info("Cancelled context %s: %s", context_id, reason)
        return _result(context_id, store.load(context_id).current_state)
    assert last_error is not None
    raise last_error
