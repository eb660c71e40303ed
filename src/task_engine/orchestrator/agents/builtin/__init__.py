"""Onboarding agents shipped with the engine."""

from __future__ import annotations

from task_engine.orchestrator.agents.builtin.business_discovery import (
    BUSINESS_LOOKUP_TOOL,
    BusinessDiscoveryAgent,
)
from task_engine.orchestrator.agents.builtin.compliance_analyzer import ComplianceAnalyzerAgent
from task_engine.orchestrator.agents.builtin.profile_collector import ProfileCollectorAgent
from task_engine.orchestrator.agents.registry import AgentRegistry
from task_engine.orchestrator.toolchain import ToolChain


def build_builtin_registry(toolchain: ToolChain) -> AgentRegistry:
    return AgentRegistry(
        [
            ProfileCollectorAgent(),
            BusinessDiscoveryAgent(toolchain),
            ComplianceAnalyzerAgent(),
        ],
    )


__all__ = [
    "BUSINESS_LOOKUP_TOOL",
    "BusinessDiscoveryAgent",
    "ComplianceAnalyzerAgent",
    "ProfileCollectorAgent",
    "build_builtin_registry",
]
