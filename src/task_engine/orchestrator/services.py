"""Wiring of store, reasoning adapters, agents and executor from settings."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from task_engine.config import Settings
from task_engine.orchestrator.agents.builtin import build_builtin_registry
from task_engine.orchestrator.agents.registry import AgentRegistry
from task_engine.orchestrator.context_store import ContextStore
from task_engine.orchestrator.executor import PhaseExecutor
from task_engine.orchestrator.notifications import NotificationSink
from task_engine.orchestrator.planner import PlanGenerator
from task_engine.orchestrator.reasoning import ReasoningService, build_reasoning_service
from task_engine.orchestrator.repository import (
    EventLogStore,
    InMemoryEventLogStore,
    SqliteEventLogStore,
)
from task_engine.orchestrator.retry import RetryPolicy
from task_engine.orchestrator.toolchain import LocalToolChain, ToolChain
from task_engine.orchestrator.ui_optimizer import UIRequestOptimizer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskEngine:
    """Everything a caller needs to create, drive and inspect tasks."""

    settings: Settings
    store: ContextStore
    executor: PhaseExecutor
    registry: AgentRegistry
    toolchain: ToolChain


def build_log_store(settings: Settings) -> EventLogStore:
    if settings.store.backend == "memory":
        return InMemoryEventLogStore()
    store = SqliteEventLogStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    return store


@contextmanager
def open_engine(  # noqa: PLR0913
    settings: Settings,
    *,
    reasoning: ReasoningService | None = None,
    toolchain: ToolChain | None = None,
    registry: AgentRegistry | None = None,
    notification_sink: NotificationSink | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[TaskEngine]:
    """Build the engine for the duration of a `with` block."""

    settings.validate()
    if reasoning is None:
        settings.validate_for_reasoning()
        reasoning = build_reasoning_service(settings.reasoning)
    owned_toolchain: LocalToolChain | None = None
    if toolchain is None:
        owned_toolchain = LocalToolChain(timeout_seconds=settings.executor.tool_timeout_seconds)
        toolchain = owned_toolchain
    registry = registry or build_builtin_registry(toolchain)
    retry_policy = RetryPolicy.from_settings(settings.retry, sleep=sleep)

    log_store = build_log_store(settings)
    store = ContextStore(
        log_store,
        cache_size=settings.store.state_cache_size,
        notification_sink=notification_sink,
    )
    executor = PhaseExecutor(
        store,
        registry,
        PlanGenerator(
            reasoning,
            retry_policy=retry_policy,
            temperature=settings.reasoning.temperature,
        ),
        UIRequestOptimizer(
            reasoning,
            retry_policy=retry_policy,
            enabled=settings.executor.optimizer_enabled,
            temperature=settings.reasoning.temperature,
        ),
        agent_timeout_seconds=settings.executor.agent_timeout_seconds,
        auto_skip_inferable=settings.executor.auto_skip_inferable,
        max_concurrent_agents=settings.executor.max_concurrent_agents,
    )
    logger.debug("Task engine ready (store=%s)", settings.store.backend)
    try:
        yield TaskEngine(
            settings=settings,
            store=store,
            executor=executor,
            registry=registry,
            toolchain=toolchain,
        )
    finally:
        executor.close()
        if owned_toolchain is not None:
            owned_toolchain.close()
        log_store.close()


@contextmanager
def open_store(
    settings: Settings,
    *,
    notification_sink: NotificationSink | None = None,
) -> Iterator[ContextStore]:
    """Context store alone, for commands that never call agents or the reasoning service."""

    settings.validate()
    log_store = build_log_store(settings)
    try:
        yield ContextStore(
            log_store,
            cache_size=settings.store.state_cache_size,
            notification_sink=notification_sink,
        )
    finally:
        log_store.close()
