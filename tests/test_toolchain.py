from __future__ import annotations

import threading
from collections.abc import Iterator

import allure
import pytest

from task_engine.orchestrator.toolchain import LocalToolChain, ToolResult

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Tool Chain"),
]


@pytest.fixture
def toolchain() -> Iterator[LocalToolChain]:
    chain = LocalToolChain(timeout_seconds=0.2)
    yield chain
    chain.close()


def test_registered_tool_runs_on_a_copy_of_args(toolchain: LocalToolChain) -> None:
    def _echo(args: dict) -> dict:
        args["touched"] = True
        return {"echo": args["value"]}

    toolchain.register("echo", _echo)
    original = {"value": 7}

    result = toolchain.execute_tool("echo", original)

    assert result == ToolResult.ok({"echo": 7})
    assert original == {"value": 7}
    assert toolchain.is_tool_available("echo")


def test_duplicate_registration_is_rejected(toolchain: LocalToolChain) -> None:
    toolchain.register("echo", lambda args: {})

    with pytest.raises(ValueError, match="already registered"):
        toolchain.register("echo", lambda args: {})


def test_missing_tool_is_a_failure_result(toolchain: LocalToolChain) -> None:
    result = toolchain.execute_tool("lookup", {})

    assert result.success is False
    assert result.error == "Tool not available: lookup"
    assert not toolchain.is_tool_available("lookup")


def test_raising_and_non_dict_tools_become_failures(toolchain: LocalToolChain) -> None:
    def _broken(args: dict) -> dict:
        raise RuntimeError("disk full")

    toolchain.register("broken", _broken)
    toolchain.register("listy", lambda args: [1, 2])  # type: ignore[arg-type,return-value]

    broken = toolchain.execute_tool("broken", {})
    listy = toolchain.execute_tool("listy", {})

    assert broken.error == "Tool broken failed: RuntimeError: disk full"
    assert listy.success is False
    assert "expected an object" in (listy.error or "")


def test_slow_tool_times_out(toolchain: LocalToolChain) -> None:
    release = threading.Event()

    def _slow(args: dict) -> dict:
        release.wait(5)
        return {}

    toolchain.register("slow", _slow)

    result = toolchain.execute_tool("slow", {})
    release.set()

    assert result.success is False
    assert "timed out after 0.2s" in (result.error or "")
