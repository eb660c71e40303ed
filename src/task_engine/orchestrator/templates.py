"""Task templates: the built-in onboarding template and JSON template files."""

from __future__ import annotations

import json
from pathlib import Path

from task_engine.orchestrator.errors import ValidationError
from task_engine.orchestrator.models import TaskTemplate, TemplateGoal

BUSINESS_ONBOARDING_TEMPLATE = TaskTemplate(
    id="business_onboarding",
    version="1",
    name="Business Onboarding",
    description=(
        "Collect the owner's business profile, discover public records and "
        "derive the filings the business must keep up with."
    ),
    category="onboarding",
    goals=(
        TemplateGoal(
            id="profile",
            description="Know who the business is and how it is organized",
            success_criteria=("business.name", "business.entityType", "business.state"),
        ),
        TemplateGoal(
            id="compliance",
            description="List the governance, state and federal filings that apply",
            success_criteria=("compliance.requirements",),
        ),
        TemplateGoal(
            id="contact",
            description="Have a reachable owner email",
            required=False,
            success_criteria=("user.email",),
        ),
    ),
    required_fields=("business.name", "user.email"),
    metadata={
        "agents": ["profile_collector", "business_discovery", "compliance_analyzer"],
    },
)

BUILTIN_TEMPLATES: dict[str, TaskTemplate] = {
    BUSINESS_ONBOARDING_TEMPLATE.id: BUSINESS_ONBOARDING_TEMPLATE,
}


def load_template_file(path: Path) -> TaskTemplate:
    """Read a JSON template file."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except OSError as error:
        raise ValidationError(f"cannot read template file {path}: {error}") from error
    except json.JSONDecodeError as error:
        raise ValidationError(f"template file {path} is not valid JSON: {error.msg}") from error
    if not isinstance(payload, dict):
        raise ValidationError(f"template file {path} must contain a JSON object")
    return TaskTemplate.from_dict(payload)


def resolve_template(*, template_id: str | None, template_file: Path | None) -> TaskTemplate:
    if template_file is not None:
        return load_template_file(template_file)
    key = template_id or BUSINESS_ONBOARDING_TEMPLATE.id
    template = BUILTIN_TEMPLATES.get(key)
    if template is None:
        raise ValidationError(
            f"unknown template {key!r}; built-in templates: {', '.join(sorted(BUILTIN_TEMPLATES))}",
        )
    return template
