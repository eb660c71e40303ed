"""Asks the user for required profile fields the task does not know yet."""

from __future__ import annotations

import re
from enum import Enum

from task_engine.orchestrator.agents.base import AgentRequest, AgentResponse, BaseAgent
from task_engine.orchestrator.agents.builtin.fields import field_request
from task_engine.orchestrator.state import lookup_path, missing_fields

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ProfileOperation(str, Enum):
    COLLECT_PROFILE = "collect_profile"
    VALIDATE_PROFILE = "validate_profile"


class ProfileCollectorAgent(BaseAgent):
    agent_id = "profile_collector"
    description = (
        "Collects the template's required profile fields from the user, "
        "asking only for values not already known."
    )
    operations = ProfileOperation
    default_operation = ProfileOperation.COLLECT_PROFILE

    def handle(self, operation: Enum, request: AgentRequest) -> AgentResponse:
        if operation is ProfileOperation.VALIDATE_PROFILE:
            return self._validate(request)
        return self._collect(request)

    def _collect(self, request: AgentRequest) -> AgentResponse:
        snapshot = request.task_context_snapshot
        required = snapshot.template.required_fields
        missing = missing_fields(snapshot.data, required)
        request.record_fact(
            "profile_fields_checked",
            {
                "agent_outputs": {
                    self.agent_id: {
                        "required_fields": list(required),
                        "missing_fields": missing,
                    },
                },
            },
            f"{len(required) - len(missing)} of {len(required)} required fields already known",
        )
        if not missing:
            return AgentResponse.completed("All required profile fields are present")
        return AgentResponse.needs_input(
            f"Missing required fields: {', '.join(missing)}",
            [
                field_request(path, created_by=self.agent_id, priority="high")
                for path in missing
            ],
        )

    def _validate(self, request: AgentRequest) -> AgentResponse:
        snapshot = request.task_context_snapshot
        invalid: list[str] = []
        for path in snapshot.template.required_fields:
            value = lookup_path(snapshot.data, path)
            if path.endswith("email") and isinstance(value, str):
                if not _EMAIL_PATTERN.match(value.strip()):
                    invalid.append(path)
        if invalid:
            return AgentResponse.needs_input(
                f"Fields failed validation: {', '.join(invalid)}",
                [
                    field_request(path, created_by=self.agent_id, priority="high")
                    for path in invalid
                ],
            )
        return AgentResponse.completed("Profile fields passed validation")
