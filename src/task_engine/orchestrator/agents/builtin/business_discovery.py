"""Looks up business records through the tool chain, asking the user on a miss."""

from __future__ import annotations

from enum import Enum

from task_engine.orchestrator.agents.base import (
    AgentRequest,
    AgentResponse,
    BaseAgent,
    ContextUpdate,
)
from task_engine.orchestrator.agents.builtin.fields import field_request
from task_engine.orchestrator.state import lookup_path, missing_fields
from task_engine.orchestrator.toolchain import ToolChain

BUSINESS_LOOKUP_TOOL = "business_lookup"
DISCOVERY_FIELDS = ("business.entityType", "business.state", "business.formationDate")


class DiscoveryOperation(str, Enum):
    SEARCH_BUSINESS = "search_business"


class BusinessDiscoveryAgent(BaseAgent):
    agent_id = "business_discovery"
    description = (
        "Searches public business records for the business named in the task "
        "and fills in entity type, state and formation date; asks the user when "
        "no record is found."
    )
    operations = DiscoveryOperation
    default_operation = DiscoveryOperation.SEARCH_BUSINESS

    def __init__(self, toolchain: ToolChain) -> None:
        self.toolchain = toolchain

    def handle(self, operation: Enum, request: AgentRequest) -> AgentResponse:
        snapshot = request.task_context_snapshot
        missing = missing_fields(snapshot.data, DISCOVERY_FIELDS)
        if not missing:
            return AgentResponse.completed("Business details already known; no lookup needed")

        name = lookup_path(snapshot.data, "business.name")
        if not isinstance(name, str) or not name.strip():
            # resume moves past this agent, so everything it needs is asked at once
            return AgentResponse.needs_input(
                "No business name to search records with; asking for the name and details",
                [
                    field_request("business.name", created_by=self.agent_id, priority="high"),
                    *(field_request(path, created_by=self.agent_id) for path in missing),
                ],
            )

        if not self.toolchain.is_tool_available(BUSINESS_LOOKUP_TOOL):
            request.record_fact(
                "toolchain_acquisition_failed_requesting_ui",
                {"agent_outputs": {self.agent_id: {"tool": BUSINESS_LOOKUP_TOOL}}},
                f"Tool {BUSINESS_LOOKUP_TOOL} is not available; asking the user instead",
            )
            return self._ask(missing, "Business lookup unavailable")

        result = self.toolchain.execute_tool(
            BUSINESS_LOOKUP_TOOL,
            {"name": name, "state": lookup_path(snapshot.data, "business.state")},
        )
        if not result.success:
            return AgentResponse.error(f"Business lookup failed: {result.error}")

        record = result.data.get("business")
        if not result.data.get("found") or not isinstance(record, dict):
            request.record_fact(
                "business_search_missed",
                {"agent_outputs": {self.agent_id: {"query": name, "found": False}}},
                f"No public record found for {name!r}",
            )
            return self._ask(missing, f"No public record found for {name!r}")

        discovered = {key: value for key, value in record.items() if value not in (None, "")}
        still_missing = [
            path
            for path in missing
            if path.split(".", 1)[1] not in discovered
        ]
        update = ContextUpdate(
            operation="business_discovered",
            data={"business": discovered},
            reasoning=f"Public record found for {name!r}",
        )
        if still_missing:
            return self._ask(
                still_missing,
                f"Record found for {name!r} but incomplete",
                context_update=update,
            )
        return AgentResponse.completed(
            f"Public record found for {name!r}",
            data={"business": discovered},
            context_update=update,
        )

    def _ask(
        self,
        paths: list[str],
        reason: str,
        *,
        context_update: ContextUpdate | None = None,
    ) -> AgentResponse:
        return AgentResponse.needs_input(
            f"{reason}; asking for {', '.join(paths)}",
            [field_request(path, created_by=self.agent_id) for path in paths],
            context_update=context_update,
        )
