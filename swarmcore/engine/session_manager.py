"""Session manager: the single owner of the session table.

Spawning resolves an agent adapter, writes the agent's workspace files,
assembles per-session auto-response rules and hands a fully resolved
SpawnRequest to the execution strategy. Strategy events flow back
through ``_on_strategy_event``, which keeps output buffers, sends
deferred initial tasks, runs stall classification and forwards
lifecycle events to subscribers.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from . import events
from .adapters import AdapterRegistry, normalize_agent_type
from .ansi import strip_ansi
from .config import EventCallback, SwarmConfig
from .errors import OrchestrationError, SessionNotFoundError, SpawnFailureError
from .events import EventRegistry, Unsubscribe
from .metrics import AgentMetricsTracker
from .models import (
    ApprovalPreset,
    AutoResponseRule,
    SendAck,
    SessionFilter,
    SessionInfo,
    SessionStatus,
    SpawnConfig,
    SpawnRequest,
)
from .output_buffer import OutputBuffer
from .rules import runtime_default_rules
from .stall import StallClassifier
from .strategies.base import ExecutionStrategy

logger = logging.getLogger(__name__)

GEMINI_AUTH_KEY_DELAY_SECONDS = 0.05


@dataclass
class _ManagedSession:
    info: SessionInfo
    buffer: OutputBuffer
    output: EventRegistry
    initial_task: str | None = None
    deferred_task: asyncio.Task | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)
    stopping: bool = False


class SessionManager:
    """Spawn, drive and observe PTY-hosted agent sessions."""

    def __init__(
        self,
        strategy: ExecutionStrategy,
        adapters: AdapterRegistry,
        config: SwarmConfig | None = None,
        *,
        classifier: StallClassifier | None = None,
        extra_rules: dict[str, list[AutoResponseRule]] | None = None,
        metrics: AgentMetricsTracker | None = None,
    ) -> None:
        self._strategy = strategy
        self._adapters = adapters
        self._config = config or SwarmConfig()
        self._classifier = classifier
        self._extra_rules = extra_rules or {}
        self.metrics = metrics or AgentMetricsTracker()
        self._sessions: dict[str, _ManagedSession] = {}
        self._events = EventRegistry("session-manager")
        self._traces: list[dict[str, Any]] = []
        self._unsubscribe_strategy = strategy.subscribe(self._on_strategy_event)

    @property
    def strategy(self) -> ExecutionStrategy:
        return self._strategy

    @property
    def adapters(self) -> AdapterRegistry:
        return self._adapters

    # ── Spawn ──────────────────────────────────────────────────

    def _new_session_id(self) -> str:
        while True:
            session_id = f"pty-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
            if session_id not in self._sessions:
                return session_id

    async def spawn(self, config: SpawnConfig) -> SessionInfo:
        agent_type = normalize_agent_type(config.agent_type)
        adapter = self._adapters.get_or_raise(agent_type)
        workdir = Path(config.workdir or self._config.default_workdir).expanduser().resolve()
        if not workdir.is_dir():
            raise SpawnFailureError(agent_type, f"workdir does not exist: {workdir}")

        resolved = replace(
            config,
            agent_type=agent_type,
            workdir=str(workdir),
            credentials=config.credentials or self._config.credentials,
        )
        session_id = self._new_session_id()

        try:
            if resolved.memory_content:
                adapter.write_memory_file(workdir, resolved.memory_content)
            if resolved.approval_preset is not None:
                adapter.write_approval_config(workdir, ApprovalPreset(resolved.approval_preset))
        except OSError as exc:
            raise SpawnFailureError(agent_type, f"could not write workspace files: {exc}") from exc

        rules = [
            *adapter.builtin_rules,
            *runtime_default_rules(agent_type, resolved.credentials),
            *self._extra_rules.get(agent_type, []),
        ]
        request = SpawnRequest(
            session_id=session_id,
            agent_type=agent_type,
            name=resolved.name or f"{agent_type}-{session_id[-8:]}",
            workdir=str(workdir),
            argv=adapter.build_command(resolved),
            env=adapter.build_env(resolved),
            rules=rules,
            metadata={**resolved.metadata, "agent_type": agent_type},
        )

        # Registered before the process exists so the first "ready"
        # (and the deferred task it triggers) cannot be missed.
        managed = _ManagedSession(
            info=SessionInfo(
                id=session_id,
                agent_type=agent_type,
                name=request.name,
                workdir=request.workdir,
                metadata=dict(request.metadata),
            ),
            buffer=OutputBuffer(self._config.output_buffer_lines),
            output=EventRegistry(f"output:{session_id}"),
            initial_task=resolved.initial_task,
        )
        self._sessions[session_id] = managed

        logger.info(
            "Spawning %s session %s in %s (rules=%d, deferred_task=%s)",
            agent_type, session_id, workdir, len(rules), bool(resolved.initial_task),
        )
        try:
            info = await self._strategy.spawn(request)
        except Exception as exc:
            self._sessions.pop(session_id, None)
            if isinstance(exc, SpawnFailureError):
                raise
            raise SpawnFailureError(agent_type, str(exc)) from exc

        managed.info = info
        self.metrics.record_spawn(agent_type)
        return info

    # ── Input ──────────────────────────────────────────────────

    def _require(self, session_id: str) -> _ManagedSession:
        managed = self._sessions.get(session_id)
        if managed is None or managed.stopping:
            raise SessionNotFoundError(session_id)
        return managed

    async def send(self, session_id: str, text: str) -> SendAck:
        managed = self._require(session_id)
        managed.buffer.mark()
        chars = await self._strategy.send(session_id, text)
        return SendAck(session_id=session_id, chars=chars)

    async def send_keys(self, session_id: str, keys: list[str] | str) -> None:
        self._require(session_id)
        key_list = [keys] if isinstance(keys, str) else list(keys)
        await self._strategy.send_keys(session_id, key_list)

    async def add_rule(self, session_id: str, rule: AutoResponseRule) -> None:
        self._require(session_id)
        await self._strategy.add_rule(session_id, rule)
        logger.info("Added rule to %s: %s", session_id, rule.describe())

    # ── Stop ───────────────────────────────────────────────────

    async def stop(self, session_id: str) -> None:
        """Stop and forget a session. Unknown or already-stopping ids are a no-op."""
        managed = self._sessions.get(session_id)
        if managed is None or managed.stopping:
            return
        managed.stopping = True
        managed.initial_task = None
        if managed.deferred_task is not None:
            managed.deferred_task.cancel()
        for task in list(managed.tasks):
            task.cancel()
        try:
            await self._strategy.stop(session_id)
        finally:
            self._sessions.pop(session_id, None)
            managed.output.clear()
            managed.buffer.clear()
            logger.info("Session %s stopped and removed", session_id)

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            try:
                await self.stop(session_id)
            except Exception:
                logger.exception("Error stopping %s during shutdown", session_id)
        await self._strategy.shutdown()
        self._unsubscribe_strategy()

    # ── Queries ────────────────────────────────────────────────

    def get_session(self, session_id: str) -> SessionInfo | None:
        managed = self._sessions.get(session_id)
        if managed is None:
            return None
        return self._strategy.get(session_id) or managed.info

    def list(self, filter: SessionFilter | None = None) -> list[SessionInfo]:
        sessions = [
            self._strategy.get(sid) or managed.info
            for sid, managed in self._sessions.items()
        ]
        if filter is not None:
            sessions = [s for s in sessions if filter.matches(s)]
        return sessions

    def get_output(self, session_id: str, lines: int = 100) -> str:
        managed = self._sessions.get(session_id)
        if managed is None:
            raise SessionNotFoundError(session_id)
        return strip_ansi("\n".join(managed.buffer.tail(lines)))

    def recent_output(self, session_id: str, max_chars: int = 3000) -> str:
        managed = self._sessions.get(session_id)
        if managed is None:
            return ""
        return managed.buffer.recent_text(max_chars)

    def get_traces(self, session_id: str | None = None) -> list[dict[str, Any]]:
        if session_id is None:
            return list(self._traces)
        return [t for t in self._traces if t.get("session_id") == session_id]

    def list_agent_types(self) -> list[str]:
        return self._adapters.list_types()

    def preflight(self) -> list[dict]:
        return self._adapters.preflight()

    def workspace_files(self, agent_type: str) -> dict[str, Any]:
        adapter = self._adapters.get_or_raise(normalize_agent_type(agent_type))
        return {
            "agent_type": adapter.agent_type,
            "memory_file": adapter.memory_file,
            "files": [f.to_dict() for f in adapter.workspace_files()],
        }

    def approval_preview(self, agent_type: str, preset: ApprovalPreset | str) -> dict[str, Any]:
        adapter = self._adapters.get_or_raise(normalize_agent_type(agent_type))
        config = adapter.approval_config(ApprovalPreset(preset))
        if config is None:
            return {
                "agent_type": adapter.agent_type,
                "preset": ApprovalPreset(preset).value,
                "files": {},
                "cli_flags": [],
                "summary": "No approval settings",
            }
        return {"agent_type": adapter.agent_type, **config.to_dict()}

    # ── Subscriptions ──────────────────────────────────────────

    def subscribe(self, callback: EventCallback) -> Unsubscribe:
        """Lifecycle events ``(session_id, event, data)``."""
        return self._events.subscribe(callback)

    def subscribe_output(self, session_id: str, callback: Any) -> Unsubscribe:
        """Raw output chunks for one session, in order."""
        return self._require(session_id).output.subscribe(callback)

    # ── Strategy events ────────────────────────────────────────

    def _on_strategy_event(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        if event == events.WORKER_EXIT:
            self._events.publish(session_id, event, data)
            return
        managed = self._sessions.get(session_id)
        if managed is None:
            logger.debug("Dropping %s event for unknown session %s", event, session_id)
            return

        if event == events.OUTPUT:
            chunk = str(data.get("data", ""))
            managed.buffer.append(chunk)
            managed.output.publish(chunk)
            return

        info = self._strategy.get(session_id) or managed.info
        if event == events.READY:
            self._schedule_deferred_task(session_id, managed)
        elif event == events.TASK_COMPLETE:
            data = dict(data)
            if "response" not in data:
                data["response"] = managed.buffer.capture_task_response()
            self.metrics.record_completion(
                info.agent_type,
                str(data.get("detection", "fast-path")),
                float(data.get("duration_ms") or 0.0),
            )
        elif event == events.STALLED:
            self.metrics.record_stall(info.agent_type)
            if not managed.stopping:
                self._track(managed, self._classify_stall(session_id, managed, data), "stall-classify")
        elif event == events.LOGIN_REQUIRED:
            if info.agent_type == "gemini" and not managed.stopping:
                self._track(managed, self._gemini_auth(session_id), "gemini-auth")
        elif event == events.TRACE:
            self._record_trace(session_id, info.agent_type, data)

        self._events.publish(session_id, event, data)

    def _record_trace(self, session_id: str, agent_type: str, data: dict[str, Any]) -> None:
        self._traces.append({"session_id": session_id, "agent_type": agent_type, **data})
        limit = self._config.trace_limit
        if len(self._traces) > limit:
            del self._traces[: len(self._traces) - limit]

    def _track(self, managed: _ManagedSession, coro: Any, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        managed.tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            managed.tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("%s for %s failed: %s", label, managed.info.id, exc)

        task.add_done_callback(_done)
        return task

    def _schedule_deferred_task(self, session_id: str, managed: _ManagedSession) -> None:
        task_text = managed.initial_task
        if not task_text or managed.stopping:
            return
        # Exactly once: the listener is spent as soon as it fires.
        managed.initial_task = None
        managed.deferred_task = asyncio.create_task(
            self._send_deferred(session_id, managed, task_text)
        )

    async def _send_deferred(self, session_id: str, managed: _ManagedSession, text: str) -> None:
        try:
            await asyncio.sleep(self._config.settle_delay_seconds)
            if self._sessions.get(session_id) is not managed or managed.stopping:
                return
            logger.info("Sending deferred initial task to %s (%d chars)", session_id, len(text))
            await self.send(session_id, text)
        except asyncio.CancelledError:
            return
        except OrchestrationError as exc:
            logger.error("Deferred task for %s failed: %s", session_id, exc)
        except OSError as exc:
            logger.error("Deferred task write for %s failed: %s", session_id, exc)

    async def _classify_stall(
        self, session_id: str, managed: _ManagedSession, data: dict[str, Any],
    ) -> None:
        info = self.get_session(session_id)
        if info is None or info.status is not SessionStatus.BUSY:
            return
        result = None
        if self._classifier is not None and self._config.classifier_enabled:
            result = await self._classifier.classify(
                session_id,
                managed.buffer.recent_text(self._config.classifier_output_chars * 4),
                float(data.get("stall_ms") or 0.0),
                agent_type=info.agent_type,
                traces=self.get_traces(session_id),
            )
        if self._sessions.get(session_id) is not managed or managed.stopping:
            return
        await self._strategy.apply_stall_classification(session_id, result)

    async def _gemini_auth(self, session_id: str) -> None:
        logger.info("Gemini auth: sending /auth to %s", session_id)
        await self._strategy.send_keys(session_id, ["/auth"])
        await asyncio.sleep(GEMINI_AUTH_KEY_DELAY_SECONDS)
        await self._strategy.send_keys(session_id, ["enter"])
