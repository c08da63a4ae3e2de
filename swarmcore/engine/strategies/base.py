"""Abstract execution strategy.

A strategy owns running sessions and reports everything through the
lifecycle event vocabulary in ``swarmcore.engine.events``. The session
manager never needs to know which implementation it is talking to.
"""
from __future__ import annotations

import abc
import logging
from typing import Any

from ..config import EventCallback
from ..events import EventRegistry, Unsubscribe
from ..models import (
    AutoResponseRule,
    SessionInfo,
    SpawnRequest,
    StallClassification,
)

logger = logging.getLogger(__name__)


class ExecutionStrategy(abc.ABC):
    """Spawns and drives PTY sessions; emits ``(session_id, event, data)``."""

    name = "abstract"

    def __init__(self) -> None:
        self._events = EventRegistry(f"{self.name}-strategy")

    def subscribe(self, callback: EventCallback) -> Unsubscribe:
        return self._events.subscribe(callback)

    def _emit(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        self._events.publish(session_id, event, data)

    async def start(self) -> None:
        """Prepare the strategy (e.g. launch a worker). Default: nothing."""

    @abc.abstractmethod
    async def spawn(self, request: SpawnRequest) -> SessionInfo:
        """Start the process; return once its handle exists."""

    @abc.abstractmethod
    async def send(self, session_id: str, text: str) -> int:
        """Type *text* followed by Enter. Returns characters written."""

    @abc.abstractmethod
    async def send_keys(self, session_id: str, keys: list[str]) -> None:
        ...

    @abc.abstractmethod
    async def stop(self, session_id: str) -> None:
        """Terminate the session. Unknown ids are a no-op."""

    @abc.abstractmethod
    async def add_rule(self, session_id: str, rule: AutoResponseRule) -> None:
        ...

    @abc.abstractmethod
    async def apply_stall_classification(
        self, session_id: str, result: StallClassification | None,
    ) -> None:
        ...

    @abc.abstractmethod
    def get(self, session_id: str) -> SessionInfo | None:
        ...

    @abc.abstractmethod
    def list(self) -> list[SessionInfo]:
        ...

    async def shutdown(self) -> None:
        """Stop every session and release resources."""
        for info in self.list():
            try:
                await self.stop(info.id)
            except Exception:
                logger.exception("Error stopping %s during shutdown", info.id)
