"""Helpers shared by the built-in agents for field-level UI requests."""

from __future__ import annotations

import re
from typing import Any

from task_engine.orchestrator.models import UIRequest

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

FIELD_OPTIONS: dict[str, tuple[str, ...]] = {
    "business.entityType": ("LLC", "Corporation", "Partnership", "Sole Proprietorship"),
}


def humanize(path: str) -> str:
    words: list[str] = []
    for segment in path.split("."):
        words.extend(_CAMEL_BOUNDARY.sub(" ", segment).split())
    return " ".join(word.capitalize() for word in words)


def field_request(path: str, *, created_by: str, priority: str = "medium") -> UIRequest:
    options = FIELD_OPTIONS.get(path)
    semantic_data: dict[str, Any] = {
        "field": path,
        "title": humanize(path),
        "input_type": "select" if options else "text",
        "group": path.split(".", 1)[0],
    }
    if options:
        semantic_data["options"] = list(options)
    return UIRequest(
        request_id=path,
        template_type="form_field",
        priority=priority,
        semantic_data=semantic_data,
        created_by=created_by,
    )
