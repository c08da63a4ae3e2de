"""Strategy that runs PtySession objects directly in this event loop."""
from __future__ import annotations

import logging
from typing import Any

from .. import events
from ..adapters import AdapterRegistry
from ..config import SwarmConfig
from ..errors import SessionNotFoundError
from ..models import AutoResponseRule, SessionInfo, SpawnRequest, StallClassification
from .base import ExecutionStrategy
from .pty_session import PtySession

logger = logging.getLogger(__name__)


class InProcessStrategy(ExecutionStrategy):
    name = "inprocess"

    def __init__(self, adapters: AdapterRegistry, config: SwarmConfig | None = None) -> None:
        super().__init__()
        self._adapters = adapters
        self._config = config or SwarmConfig()
        self._sessions: dict[str, PtySession] = {}

    def _forward(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        # Status snapshots only matter across a process boundary.
        if event == events.STATUS:
            return
        self._emit(session_id, event, data)

    def _require(self, session_id: str) -> PtySession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def spawn(self, request: SpawnRequest) -> SessionInfo:
        adapter = self._adapters.get_or_raise(request.agent_type)
        session = PtySession(
            request,
            adapter,
            self._forward,
            cols=self._config.pty_cols,
            rows=self._config.pty_rows,
            stall_timeout_seconds=self._config.stall_timeout_seconds,
            stall_max_timeout_seconds=self._config.stall_max_timeout_seconds,
            stop_grace_seconds=self._config.stop_grace_seconds,
        )
        self._sessions[request.session_id] = session
        try:
            return await session.start()
        except Exception:
            self._sessions.pop(request.session_id, None)
            raise

    async def send(self, session_id: str, text: str) -> int:
        return await self._require(session_id).send(text)

    async def send_keys(self, session_id: str, keys: list[str]) -> None:
        await self._require(session_id).send_keys(keys)

    async def stop(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        try:
            await session.stop()
        finally:
            self._sessions.pop(session_id, None)

    async def add_rule(self, session_id: str, rule: AutoResponseRule) -> None:
        self._require(session_id).add_rule(rule)

    async def apply_stall_classification(
        self, session_id: str, result: StallClassification | None,
    ) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.apply_stall_classification(result)

    def get(self, session_id: str) -> SessionInfo | None:
        session = self._sessions.get(session_id)
        return session.info if session else None

    def list(self) -> list[SessionInfo]:
        return [s.info for s in self._sessions.values()]
