"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable, Iterator
from contextlib import ExitStack
from pathlib import Path

import pytest

from task_engine.config import ExecutorSettings, RetrySettings, Settings, StoreSettings
from task_engine.orchestrator.agents.base import AgentProtocol
from task_engine.orchestrator.agents.registry import AgentRegistry
from task_engine.orchestrator.notifications import NotificationSink
from task_engine.orchestrator.reasoning import ReasoningService
from task_engine.orchestrator.services import TaskEngine, open_engine

ECHO_REASONER_COMMAND_TEMPLATE = (
    f"{sys.executable} -m task_engine.orchestrator.echo_reasoner --prompt-file {{prompt_file}}"
)
_SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture()
def echo_reasoner(monkeypatch) -> str:
    """Point the CLI reasoning backend at the deterministic echo reasoner."""

    # the reasoner runs in a subprocess that must import task_engine
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(filter(None, [str(_SRC_DIR), os.environ.get("PYTHONPATH")])),
    )
    monkeypatch.setenv("TASK_ENGINE_REASONING_BACKEND", "cli")
    monkeypatch.setenv("TASK_ENGINE_REASONING_COMMAND", ECHO_REASONER_COMMAND_TEMPLATE)
    return ECHO_REASONER_COMMAND_TEMPLATE


@pytest.fixture()
def make_engine(tmp_path: Path) -> Iterator[Callable[..., TaskEngine]]:
    """Factory for engines over scripted agents; everything is closed at teardown."""

    stack = ExitStack()

    def _make(  # noqa: PLR0913
        agents: list[AgentProtocol],
        reasoning: ReasoningService,
        *,
        backend: str = "memory",
        notification_sink: NotificationSink | None = None,
        retry_attempts: int = 3,
        agent_timeout_seconds: float = 5.0,
        optimizer_enabled: bool = True,
        auto_skip_inferable: bool = False,
        max_concurrent_agents: int = 4,
    ) -> TaskEngine:
        settings = Settings(
            db_path=tmp_path / "engine.db",
            store=StoreSettings(backend=backend),
            retry=RetrySettings(max_attempts=retry_attempts, base_seconds=0.0, max_seconds=0.0),
            executor=ExecutorSettings(
                agent_timeout_seconds=agent_timeout_seconds,
                optimizer_enabled=optimizer_enabled,
                auto_skip_inferable=auto_skip_inferable,
                max_concurrent_agents=max_concurrent_agents,
            ),
        )
        return stack.enter_context(
            open_engine(
                settings,
                reasoning=reasoning,
                registry=AgentRegistry(agents),
                notification_sink=notification_sink,
                sleep=lambda _: None,
            ),
        )

    yield _make
    stack.close()
