"""Agent protocol, registry and built-in agents."""

from task_engine.orchestrator.agents.base import (
    AgentProtocol,
    AgentRequest,
    AgentResponse,
    AgentStatus,
    BaseAgent,
    ContextUpdate,
    FactRecorder,
    TaskSnapshot,
)
from task_engine.orchestrator.agents.registry import AgentCapability, AgentRegistry

__all__ = [
    "AgentCapability",
    "AgentProtocol",
    "AgentRegistry",
    "AgentRequest",
    "AgentResponse",
    "AgentStatus",
    "BaseAgent",
    "ContextUpdate",
    "FactRecorder",
    "TaskSnapshot",
]
