"""Progressive disclosure: reorder, group and skip-mark pending UI requests."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Any

from task_engine.orchestrator.context_store import ContextRecorder
from task_engine.orchestrator.errors import UpstreamServiceError, ValidationError
from task_engine.orchestrator.models import UIRequest
from task_engine.orchestrator.operations import EngineOperation
from task_engine.orchestrator.reasoning import (
    JSON_OBJECT_FORMAT,
    ChatMessage,
    ReasoningService,
    parse_json_object,
)
from task_engine.orchestrator.retry import RetryPolicy

logger = logging.getLogger(__name__)

OPTIMIZER_RESPONSE_SCHEMA: dict[str, Any] = {
    "order": ["<every request_id exactly once, most constraining first>"],
    "groups": {"<group name>": ["<request_id>"]},
    "skippable": [{"request_id": "<request_id>", "reason": "<why the answer is known>"}],
    "reasoning": "<why this order>",
}

_SYSTEM_PROMPT = (
    "You order questions for a user filling in a business task. Put the most "
    "constraining or valuable question first, group related fields, and mark as "
    "skippable any request whose answer is already present in state_data. Never drop "
    "a request: order must list every request_id exactly once. "
    "Answer with a single JSON object matching response_schema."
)


class UIRequestOptimizer:
    """Records exactly one `ui_request_generated` entry per batch of requests."""

    def __init__(
        self,
        reasoning: ReasoningService,
        *,
        retry_policy: RetryPolicy,
        enabled: bool = True,
        temperature: float = 0.2,
    ) -> None:
        self.reasoning = reasoning
        self.retry_policy = retry_policy
        self.enabled = enabled
        self.temperature = temperature

    def optimize(
        self,
        recorder: ContextRecorder,
        requests: list[UIRequest],
        state_data: dict[str, Any],
        agent_id: str,
    ) -> list[UIRequest]:
        if not requests:
            raise ValidationError("optimizer needs at least one UI request")

        if self.enabled:
            messages = build_optimizer_messages(requests, state_data)

            def _attempt() -> tuple[list[UIRequest], str]:
                raw = self.reasoning.complete(
                    messages,
                    response_format=JSON_OBJECT_FORMAT,
                    temperature=self.temperature,
                )
                return apply_ordering(requests, parse_json_object(raw, service="optimizer"))

            ordered, ordering_reasoning = self.retry_policy.call(
                _attempt,
                operation="ui_request_optimization",
            )
        else:
            ordered = [replace(request, order=index) for index, request in enumerate(requests)]
            ordering_reasoning = "Request optimizer disabled; original order kept"

        recorder.record_system(
            EngineOperation.UI_REQUEST_GENERATED,
            {
                "requests": [request.to_dict() for request in ordered],
                "original_request_ids": [request.request_id for request in requests],
                "ordering_reasoning": ordering_reasoning,
                "agent_id": agent_id,
            },
            ordering_reasoning,
        )
        logger.info(
            "Context %s waits for %d UI requests from %s",
            recorder.context_id,
            len(ordered),
            agent_id,
        )
        return ordered


def build_optimizer_messages(
    requests: list[UIRequest],
    state_data: dict[str, Any],
) -> list[ChatMessage]:
    request = {
        "task": "optimize_ui_requests",
        "requests": [item.to_dict() for item in requests],
        "state_data": state_data,
        "response_schema": OPTIMIZER_RESPONSE_SCHEMA,
    }
    return [
        ChatMessage(role="system", content=_SYSTEM_PROMPT),
        ChatMessage(role="user", content=json.dumps(request, indent=2, sort_keys=True)),
    ]


def apply_ordering(
    requests: list[UIRequest],
    payload: dict[str, Any],
) -> tuple[list[UIRequest], str]:
    """Annotate requests per the optimizer answer; any lost or invented id is malformed."""

    by_id = {request.request_id: request for request in requests}
    order = payload.get("order")
    if not isinstance(order, list) or not all(isinstance(item, str) for item in order):
        raise _malformed("order must be a list of request ids")
    if len(order) != len(set(order)) or set(order) != set(by_id):
        raise _malformed(
            f"order ids {sorted(set(order))} do not match request ids {sorted(by_id)}",
        )

    groups = _parse_groups(payload.get("groups"), by_id)
    skippable = _parse_skippable(payload.get("skippable"), by_id)
    reasoning = payload.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning.strip():
        reasoning = "Ordered by request optimizer"

    ordered = [
        replace(
            by_id[request_id],
            order=index,
            group=groups.get(request_id, by_id[request_id].group),
            skippable=request_id in skippable,
            skip_reason=skippable.get(request_id),
        )
        for index, request_id in enumerate(order)
    ]
    return ordered, reasoning


def _parse_groups(raw: Any, by_id: dict[str, UIRequest]) -> dict[str, str]:
    if raw is None:
        return {}
    pairs: list[tuple[str, Any]]
    if isinstance(raw, dict):
        pairs = list(raw.items())
    elif isinstance(raw, list):
        pairs = []
        for item in raw:
            if not isinstance(item, dict):
                raise _malformed("groups entries must be objects")
            pairs.append((str(item.get("name") or ""), item.get("request_ids")))
    else:
        raise _malformed("groups must be an object or a list")

    assignment: dict[str, str] = {}
    for name, request_ids in pairs:
        if not name or not isinstance(request_ids, list):
            raise _malformed("each group needs a name and a request_ids list")
        for request_id in request_ids:
            if request_id not in by_id:
                raise _malformed(f"group {name!r} references unknown request {request_id!r}")
            assignment[request_id] = name
    return assignment


def _parse_skippable(raw: Any, by_id: dict[str, UIRequest]) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, list):
        raise _malformed("skippable must be a list")
    marked: dict[str, str] = {}
    for item in raw:
        if isinstance(item, str):
            request_id, reason = item, "Answer inferable from existing data"
        elif isinstance(item, dict):
            request_id = item.get("request_id")
            reason = str(item.get("reason") or "Answer inferable from existing data")
        else:
            raise _malformed("skippable entries must be ids or objects")
        if request_id not in by_id:
            raise _malformed(f"skippable references unknown request {request_id!r}")
        marked[str(request_id)] = reason
    return marked


def _malformed(message: str) -> UpstreamServiceError:
    return UpstreamServiceError(
        f"optimizer returned an unusable ordering: {message}",
        retryable=True,
        reason_code="optimizer_malformed_output",
    )
