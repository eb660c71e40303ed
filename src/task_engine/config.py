"""Runtime configuration for the task orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_STORE_BACKENDS = ("sqlite", "memory")
SUPPORTED_REASONING_BACKENDS = ("cli", "http")


@dataclass(slots=True)
class StoreSettings:
    """Event log and state cache settings."""

    backend: str = "sqlite"
    state_cache_size: int = 128
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class RetrySettings:
    """Bounded exponential backoff for reasoning-service calls."""

    max_attempts: int = 3
    base_seconds: float = 0.5
    max_seconds: float = 8.0


@dataclass(slots=True)
class ReasoningSettings:
    """Reasoning service adapter settings."""

    backend: str = "cli"
    command_template: str = ""
    model: str = "default"
    http_url: str = "http://127.0.0.1:8080/v1/chat/completions"
    api_key: str | None = None
    timeout_seconds: float = 60.0
    temperature: float = 0.2


@dataclass(slots=True)
class ExecutorSettings:
    """Phase executor settings."""

    agent_timeout_seconds: float = 30.0
    tool_timeout_seconds: float = 10.0
    optimizer_enabled: bool = True
    auto_skip_inferable: bool = False
    max_concurrent_agents: int = 4


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".task_engine.db")
    tenant_id: str = "default"
    store: StoreSettings = field(default_factory=StoreSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    reasoning: ReasoningSettings = field(default_factory=ReasoningSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_ENGINE_DB_PATH", ".task_engine.db")),
            tenant_id=os.getenv("TASK_ENGINE_TENANT_ID", "default"),
            store=StoreSettings(
                backend=os.getenv("TASK_ENGINE_STORE_BACKEND", "sqlite").strip().lower(),
                state_cache_size=int(os.getenv("TASK_ENGINE_STATE_CACHE_SIZE", "128")),
                sqlite_busy_timeout_ms=int(
                    os.getenv("TASK_ENGINE_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("TASK_ENGINE_RETRY_MAX_ATTEMPTS", "3")),
                base_seconds=float(os.getenv("TASK_ENGINE_RETRY_BASE_SECONDS", "0.5")),
                max_seconds=float(os.getenv("TASK_ENGINE_RETRY_MAX_SECONDS", "8.0")),
            ),
            reasoning=ReasoningSettings(
                backend=os.getenv("TASK_ENGINE_REASONING_BACKEND", "cli").strip().lower(),
                command_template=os.getenv("TASK_ENGINE_REASONING_COMMAND", ""),
                model=os.getenv("TASK_ENGINE_REASONING_MODEL", "default"),
                http_url=os.getenv(
                    "TASK_ENGINE_REASONING_URL",
                    "http://127.0.0.1:8080/v1/chat/completions",
                ),
                api_key=os.getenv("TASK_ENGINE_REASONING_API_KEY") or None,
                timeout_seconds=float(os.getenv("TASK_ENGINE_REASONING_TIMEOUT_SECONDS", "60")),
                temperature=float(os.getenv("TASK_ENGINE_REASONING_TEMPERATURE", "0.2")),
            ),
            executor=ExecutorSettings(
                agent_timeout_seconds=float(
                    os.getenv("TASK_ENGINE_AGENT_TIMEOUT_SECONDS", "30"),
                ),
                tool_timeout_seconds=float(os.getenv("TASK_ENGINE_TOOL_TIMEOUT_SECONDS", "10")),
                optimizer_enabled=_env_bool("TASK_ENGINE_OPTIMIZER_ENABLED", default=True),
                auto_skip_inferable=_env_bool("TASK_ENGINE_AUTO_SKIP_INFERABLE", default=False),
                max_concurrent_agents=int(os.getenv("TASK_ENGINE_MAX_CONCURRENT_AGENTS", "4")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.store.backend not in SUPPORTED_STORE_BACKENDS:
            raise ValueError(
                "TASK_ENGINE_STORE_BACKEND must be one of: "
                + ", ".join(SUPPORTED_STORE_BACKENDS),
            )
        if self.store.state_cache_size <= 0:
            raise ValueError("TASK_ENGINE_STATE_CACHE_SIZE must be > 0.")
        if self.store.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASK_ENGINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.retry.max_attempts <= 0:
            raise ValueError("TASK_ENGINE_RETRY_MAX_ATTEMPTS must be > 0.")
        if self.retry.base_seconds < 0:
            raise ValueError("TASK_ENGINE_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError(
                "TASK_ENGINE_RETRY_MAX_SECONDS must be >= TASK_ENGINE_RETRY_BASE_SECONDS.",
            )
        if self.executor.agent_timeout_seconds <= 0:
            raise ValueError("TASK_ENGINE_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.executor.tool_timeout_seconds <= 0:
            raise ValueError("TASK_ENGINE_TOOL_TIMEOUT_SECONDS must be > 0.")
        if self.executor.max_concurrent_agents <= 0:
            raise ValueError("TASK_ENGINE_MAX_CONCURRENT_AGENTS must be > 0.")
        if not self.tenant_id.strip():
            raise ValueError("TASK_ENGINE_TENANT_ID must be a non-empty string.")

    def validate_for_reasoning(self) -> None:
        """Raise configuration error if the reasoning adapter cannot be built."""

        if self.reasoning.backend not in SUPPORTED_REASONING_BACKENDS:
            raise ValueError(
                "TASK_ENGINE_REASONING_BACKEND must be one of: "
                + ", ".join(SUPPORTED_REASONING_BACKENDS),
            )
        if self.reasoning.timeout_seconds <= 0:
            raise ValueError("TASK_ENGINE_REASONING_TIMEOUT_SECONDS must be > 0.")
        template = self.reasoning.command_template
        if self.reasoning.backend == "cli" and not (
            "{prompt}" in template or "{prompt_file}" in template
        ):
            raise ValueError(
                "TASK_ENGINE_REASONING_COMMAND must be set and include {prompt} or {prompt_file} "
                "when TASK_ENGINE_REASONING_BACKEND=cli.",
            )
        if self.reasoning.backend == "http" and not self.reasoning.http_url.strip():
            raise ValueError(
                "TASK_ENGINE_REASONING_URL must be set when TASK_ENGINE_REASONING_BACKEND=http.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
