"""Adapter registry: maps agent type names to AgentAdapter values."""
from __future__ import annotations

import logging

from ..errors import UnknownAgentTypeError
from .base import AgentAdapter

logger = logging.getLogger(__name__)

_ALIASES = {
    "claude": "claude",
    "claude-code": "claude",
    "claudecode": "claude",
    "codex": "codex",
    "openai": "codex",
    "openai-codex": "codex",
    "gemini": "gemini",
    "google": "gemini",
    "aider": "aider",
    "shell": "shell",
    "bash": "shell",
    "sh": "shell",
}


def normalize_agent_type(agent_type: str | None) -> str:
    """Map user-facing aliases onto adapter types. Unknown names become claude."""
    key = (agent_type or "").strip().lower()
    normalized = _ALIASES.get(key)
    if normalized is None:
        logger.debug("Unknown agent type %r, defaulting to claude", agent_type)
        return "claude"
    return normalized


class AdapterRegistry:
    """Registry of agent adapters keyed by ``agent_type``."""

    def __init__(self) -> None:
        self._adapters: dict[str, AgentAdapter] = {}

    def register(self, adapter: AgentAdapter) -> None:
        self._adapters[adapter.agent_type] = adapter
        logger.debug("Adapter registered: %s", adapter.agent_type)

    def get(self, agent_type: str) -> AgentAdapter | None:
        return self._adapters.get(agent_type)

    def get_or_raise(self, agent_type: str) -> AgentAdapter:
        adapter = self._adapters.get(agent_type)
        if adapter is None:
            raise UnknownAgentTypeError(agent_type, self.list_types())
        return adapter

    def list_types(self) -> list[str]:
        return list(self._adapters.keys())

    def preflight(self) -> list[dict]:
        """Which agent programs are installed on this machine."""
        report = []
        for adapter in self._adapters.values():
            installed = adapter.is_installed()
            report.append({
                "agent_type": adapter.agent_type,
                "display_name": adapter.display_name,
                "command": adapter.command,
                "installed": installed,
                "install_hint": adapter.install_hint,
            })
        missing = [r["agent_type"] for r in report if not r["installed"]]
        if missing:
            logger.info("Agent CLIs not installed: %s", ", ".join(missing))
        return report

    def __contains__(self, agent_type: object) -> bool:
        return agent_type in self._adapters


def build_default_registry() -> AdapterRegistry:
    from .builtin import BUILTIN_ADAPTERS

    registry = AdapterRegistry()
    for adapter in BUILTIN_ADAPTERS:
        registry.register(adapter)
    return registry
