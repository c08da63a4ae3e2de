"""Default reasoning function backed by the Claude Agent SDK.

The coordinator and stall classifier only need ``async (prompt) -> str``;
this module provides that on top of claude_agent_sdk.query() with no
tools and plan-mode permissions.
"""
from __future__ import annotations

import logging
import shutil

from claude_agent_sdk import ClaudeAgentOptions, query

from .config import ReasoningFn

logger = logging.getLogger(__name__)


class ClaudeReasoner:
    """Lightweight single-turn SDK call. Callable as a ReasoningFn."""

    def __init__(self, model: str | None = None) -> None:
        self._model = model

    async def __call__(self, prompt: str) -> str:
        options = ClaudeAgentOptions(
            system_prompt="",
            allowed_tools=[],
            permission_mode="plan",
            model=self._model,
        )
        result_text = ""
        async for message in query(prompt=prompt, options=options):
            if hasattr(message, "result"):
                result_text = message.result or ""
        logger.debug(
            "ClaudeReasoner: prompt=%d chars -> result=%d chars",
            len(prompt), len(result_text),
        )
        return result_text

    @staticmethod
    def is_available() -> bool:
        """Check if the claude CLI the SDK drives is installed."""
        return shutil.which("claude") is not None


def build_reasoner(model: str | None = None) -> ReasoningFn:
    return ClaudeReasoner(model=model)
