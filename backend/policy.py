"""Capability checks for facade operations."""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Protocol, runtime_checkable

from app_config import AppConfig

WILDCARD = "*"


@runtime_checkable
class Policy(Protocol):
    def allows(self, agent_id: str, tool: str) -> bool: ...


class AllowlistPolicy:
    """agent_id -> allowed tool names, with ``"*"`` matching any agent or tool."""

    def __init__(self, capabilities: Mapping[str, Iterable[str]]):
        self._capabilities: Dict[str, frozenset] = {
            str(agent).strip(): frozenset(str(tool).strip() for tool in tools)
            for agent, tools in (capabilities or {}).items()
        }

    @classmethod
    def from_config(cls, config: AppConfig) -> "AllowlistPolicy":
        return cls(config.policy.capabilities)

    def allows(self, agent_id: str, tool: str) -> bool:
        agent_id = (agent_id or "").strip()
        tool = (tool or "").strip()
        allowed = self._capabilities.get(agent_id)
        if allowed is None:
            allowed = self._capabilities.get(WILDCARD, frozenset())
        return WILDCARD in allowed or tool in allowed


class AllowAllPolicy:
    def allows(self, agent_id: str, tool: str) -> bool:
        return True
