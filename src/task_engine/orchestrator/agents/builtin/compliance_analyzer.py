"""Derives filing requirements from the collected business profile."""

from __future__ import annotations

from enum import Enum
from typing import Any

from task_engine.orchestrator.agents.base import (
    AgentRequest,
    AgentResponse,
    BaseAgent,
    ContextUpdate,
)
from task_engine.orchestrator.agents.builtin.fields import field_request
from task_engine.orchestrator.state import lookup_path, missing_fields

_ENTITY_REQUIREMENTS: dict[str, tuple[dict[str, Any], ...]] = {
    "LLC": (
        {
            "id": "llc_operating_agreement",
            "name": "LLC Operating Agreement",
            "category": "governance",
            "priority": "high",
            "frequency": "once",
        },
    ),
    "Corporation": (
        {
            "id": "corp_bylaws",
            "name": "Corporate Bylaws",
            "category": "governance",
            "priority": "critical",
            "frequency": "once",
        },
        {
            "id": "annual_board_meeting",
            "name": "Annual Board Meeting",
            "category": "governance",
            "priority": "high",
            "frequency": "annual",
        },
    ),
    "Partnership": (
        {
            "id": "partnership_agreement",
            "name": "Partnership Agreement",
            "category": "governance",
            "priority": "high",
            "frequency": "once",
        },
    ),
    "Sole Proprietorship": (
        {
            "id": "dba_filing",
            "name": "DBA (Doing Business As) Filing",
            "category": "filing",
            "priority": "critical",
            "frequency": "once",
        },
    ),
}
_STATE_REPORT_NAMES = {"CA": "Statement of Information"}
_PRIORITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}


class ComplianceOperation(str, Enum):
    ANALYZE_REQUIREMENTS = "analyze_requirements"


class ComplianceAnalyzerAgent(BaseAgent):
    agent_id = "compliance_analyzer"
    description = (
        "Determines governance, state and federal filing requirements from the "
        "business entity type and state of formation."
    )
    operations = ComplianceOperation
    default_operation = ComplianceOperation.ANALYZE_REQUIREMENTS

    def handle(self, operation: Enum, request: AgentRequest) -> AgentResponse:
        data = request.task_context_snapshot.data
        missing = missing_fields(data, ("business.entityType", "business.state"))
        if missing:
            return AgentResponse.needs_input(
                f"Compliance analysis needs {', '.join(missing)}",
                [
                    field_request(path, created_by=self.agent_id, priority="high")
                    for path in missing
                ],
            )

        entity_type = str(lookup_path(data, "business.entityType"))
        if entity_type not in _ENTITY_REQUIREMENTS:
            return AgentResponse.error(
                f"Unsupported entity type {entity_type!r}; expected one of "
                + ", ".join(_ENTITY_REQUIREMENTS),
            )
        state = str(lookup_path(data, "business.state")).strip().upper()
        requirements = analyze_requirements(
            entity_type=entity_type,
            state=state,
            has_ein=bool(lookup_path(data, "business.ein")),
        )
        critical_count = sum(1 for item in requirements if item["priority"] == "critical")
        reasoning = (
            f"Identified {len(requirements)} compliance requirements "
            f"({critical_count} critical) for a {state} {entity_type}"
        )
        return AgentResponse.completed(
            reasoning,
            data={"requirements_count": len(requirements)},
            context_update=ContextUpdate(
                operation="compliance_requirements_identified",
                data={
                    "compliance": {
                        "requirements": requirements,
                        "critical_count": critical_count,
                    },
                },
                reasoning=reasoning,
            ),
        )


def analyze_requirements(*, entity_type: str, state: str, has_ein: bool) -> list[dict[str, Any]]:
    """Static rule set: entity governance, state annual report and federal tax items."""

    requirements = [dict(item) for item in _ENTITY_REQUIREMENTS.get(entity_type, ())]
    requirements.append(
        {
            "id": "annual_report",
            "name": f"{state} {_STATE_REPORT_NAMES.get(state, 'Annual Report')}",
            "category": "filing",
            "priority": "high",
            "frequency": "annual",
        },
    )
    if not has_ein and entity_type != "Sole Proprietorship":
        requirements.append(
            {
                "id": "ein_registration",
                "name": "Federal EIN Registration",
                "category": "tax",
                "priority": "critical",
                "frequency": "once",
            },
        )
    requirements.append(
        {
            "id": "federal_income_tax",
            "name": "Federal Income Tax Return",
            "category": "tax",
            "priority": "high",
            "frequency": "annual",
        },
    )
    return sorted(requirements, key=lambda item: _PRIORITY_RANK[item["priority"]])
