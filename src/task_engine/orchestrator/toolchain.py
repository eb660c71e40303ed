"""Tool invocation boundary used by agents."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

ToolFunction = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(slots=True, frozen=True)
class ToolResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def ok(cls, data: dict[str, Any]) -> ToolResult:
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


class ToolChain(Protocol):
    def execute_tool(self, name: str, args: dict[str, Any]) -> ToolResult: ...

    def is_tool_available(self, name: str) -> bool: ...


class LocalToolChain:
    """Python callables registered by name, each call bounded by a timeout."""

    def __init__(self, *, timeout_seconds: float = 10.0, max_workers: int = 4) -> None:
        self.timeout_seconds = timeout_seconds
        self._tools: dict[str, ToolFunction] = {}
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tool")

    def register(self, name: str, fn: ToolFunction) -> None:
        with self._lock:
            if name in self._tools:
                raise ValueError(f"Tool already registered: {name}")
            self._tools[name] = fn

    def is_tool_available(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def execute_tool(self, name: str, args: dict[str, Any]) -> ToolResult:
        with self._lock:
            fn = self._tools.get(name)
        if fn is None:
            return ToolResult.failure(f"Tool not available: {name}")

        future = self._pool.submit(fn, dict(args))
        try:
            result = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning("Tool %s timed out after %.1fs", name, self.timeout_seconds)
            return ToolResult.failure(f"Tool {name} timed out after {self.timeout_seconds:g}s")
        except Exception as error:  # noqa: BLE001
            logger.warning("Tool %s failed: %s", name, error)
            return ToolResult.failure(f"Tool {name} failed: {type(error).__name__}: {error}")

        if not isinstance(result, dict):
            return ToolResult.failure(
                f"Tool {name} returned {type(result).__name__}, expected an object",
            )
        return ToolResult.ok(result)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
