"""Deterministic local reasoning command for demos and CLI integration tests.

Reads the prompt rendered by `CliReasoningService`, decodes the JSON request in
its USER section and prints a plan or an ordering without calling any model.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

_PRIORITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    args = parser.parse_args(argv)

    request = _read_request(Path(args.prompt_file).read_text("utf-8"))
    task = request.get("task")
    if task == "plan_execution":
        answer = _plan(request)
    elif task == "optimize_ui_requests":
        answer = _order(request)
    else:
        print(f"unsupported task: {task!r}", file=sys.stderr)
        return 2
    print(json.dumps(answer))
    return 0


def _read_request(prompt: str) -> dict[str, Any]:
    marker = "USER:\n"
    start = prompt.rfind(marker)
    if start < 0:
        raise SystemExit("prompt has no USER section")
    payload, _ = json.JSONDecoder().raw_decode(prompt[start + len(marker) :].lstrip())
    return payload


def _plan(request: dict[str, Any]) -> dict[str, Any]:
    capabilities = {item["id"]: item for item in request.get("available_agents", [])}
    preferred = request.get("template", {}).get("metadata", {}).get("agents") or list(capabilities)
    agent_ids = [agent_id for agent_id in preferred if agent_id in capabilities]
    phases = [
        {
            "id": f"{index + 1:02d}_{agent_id}",
            "goal": capabilities[agent_id].get("description", ""),
            "agents": [agent_id],
            "strategy": "sequential",
            "estimatedDuration": "1m",
        }
        for index, agent_id in enumerate(agent_ids)
    ]
    return {
        "phases": phases,
        "reasoning": "One phase per agent, in template order",
        "userInputPoints": [phase["id"] for phase in phases],
        "estimatedTotalDuration": f"{len(phases)}m",
    }


def _order(request: dict[str, Any]) -> dict[str, Any]:
    requests = request.get("requests", [])
    state_data = request.get("state_data", {})
    ranked = sorted(
        enumerate(requests),
        key=lambda pair: (_PRIORITY_RANK.get(pair[1].get("priority"), 9), pair[0]),
    )
    groups: dict[str, list[str]] = {}
    skippable: list[dict[str, str]] = []
    for _, item in ranked:
        semantic = item.get("semantic_data", {})
        group = semantic.get("group")
        if group:
            groups.setdefault(str(group), []).append(item["request_id"])
        field = semantic.get("field")
        if isinstance(field, str) and _known(state_data, field):
            skippable.append({"request_id": item["request_id"], "reason": f"{field} already known"})
    return {
        "order": [item["request_id"] for _, item in ranked],
        "groups": groups,
        "skippable": skippable,
        "reasoning": "Highest priority first, grouped by section",
    }


def _known(data: dict[str, Any], path: str) -> bool:
    current: Any = data
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return False
        current = current[segment]
    return current not in (None, "")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
