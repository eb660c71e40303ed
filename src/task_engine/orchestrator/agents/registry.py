"""Explicit agent registry injected into the planner and the executor."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from task_engine.orchestrator.agents.base import AgentProtocol


@dataclass(slots=True, frozen=True)
class AgentCapability:
    """What the planner is told about one agent."""

    id: str
    description: str
    operations: tuple[str, ...]
    default_operation: str
    version: str

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "description": self.description,
            "operations": list(self.operations),
            "default_operation": self.default_operation,
            "version": self.version,
        }


class AgentRegistry:
    """Agents keyed by capability id; built once at wiring time."""

    def __init__(self, agents: Iterable[AgentProtocol] = ()) -> None:
        self._agents: dict[str, AgentProtocol] = {}
        for agent in agents:
            self.register(agent)

    def register(self, agent: AgentProtocol) -> None:
        agent_id = agent.agent_id
        if not agent_id or not agent_id.strip():
            raise ValueError("agent_id must be a non-empty string")
        if agent_id in self._agents:
            raise ValueError(f"Agent already registered: {agent_id}")
        self._agents[agent_id] = agent

    def get(self, agent_id: str) -> AgentProtocol:
        try:
            return self._agents[agent_id]
        except KeyError as error:
            raise KeyError(f"Unknown agent: {agent_id}") from error

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def ids(self) -> list[str]:
        return list(self._agents)

    def capabilities(self) -> list[AgentCapability]:
        return [
            AgentCapability(
                id=agent.agent_id,
                description=agent.description,
                operations=tuple(str(item.value) for item in agent.operations),
                default_operation=str(agent.default_operation.value),
                version=agent.version,
            )
            for agent in self._agents.values()
        ]
