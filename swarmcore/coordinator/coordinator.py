"""Swarm coordinator: supervision loop over session lifecycle events.

Subscribes to the session manager and, for every registered task,
turns blocking prompts, finished turns and idle periods into a
reasoning call, parses the structured answer and applies it according
to the supervision level:

    autonomous  act immediately
    confirm     queue a PendingConfirmation for a human
    notify      record and broadcast, never act

Events for one session are handled strictly in arrival order by a
per-session queue drained by its own task, so a slow reasoning call
for one session never holds up another. Observers (the SSE endpoint)
receive plain event dicts and cannot affect coordination state.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from ..engine import events
from ..engine.ansi import clean_for_chat, extract_completion_summary, extract_dev_server_url
from ..engine.config import ChatCallback, ReasoningFn, SwarmConfig, fire_callback
from ..engine.errors import (
    OrchestrationError,
    PendingConfirmationNotFoundError,
    SessionNotFoundError,
)
from ..engine.events import EventRegistry, Unsubscribe
from ..engine.models import TERMINAL_STATUSES, SessionInfo, SpawnConfig
from ..engine.session_manager import SessionManager
from .decisions import (
    announce_auto_resolution,
    decision_from_override,
    decision_history,
    describe_action,
    escalation,
    excerpt,
    format_decision_response,
    record_decision,
)
from .models import (
    FINISHED_TASK_STATUSES,
    CoordinationDecision,
    DecisionAction,
    DecisionRecord,
    DecisionTrigger,
    PendingConfirmation,
    SupervisionLevel,
    TaskContext,
    TaskStatus,
)
from .prompts import (
    CoordinatorPrompts,
    build_coordination_prompt,
    build_idle_check_prompt,
    build_retry_prompt,
    build_turn_complete_prompt,
    parse_coordination_response,
)
from .watchdog import run_idle_watchdog

logger = logging.getLogger(__name__)

CHAT_SOURCE = "coding-agent"

# Internal queue item asking for an idle assessment.
IDLE_CHECK = "idle_check"

# Events worth holding for a session that is not registered yet.
_BUFFERED_EVENTS = frozenset({events.BLOCKED, events.TASK_COMPLETE, events.ERROR})

# Broadcast name for a decision, per trigger.
_DECISION_EVENTS = {
    DecisionTrigger.BLOCKED: "coordination_decision",
    DecisionTrigger.TURN_COMPLETE: "turn_assessment",
    DecisionTrigger.IDLE: "idle_check_decision",
}

Observer = Callable[[dict[str, Any]], None]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SwarmCoordinator:
    """Decide what to do when supervised agents block, idle or finish a turn."""

    def __init__(
        self,
        manager: SessionManager,
        reason: ReasoningFn | None,
        config: SwarmConfig | None = None,
        *,
        prompts: CoordinatorPrompts | None = None,
        chat: ChatCallback | None = None,
    ) -> None:
        self._manager = manager
        self._reason = reason
        self.config = config or SwarmConfig()
        self.prompts = prompts or CoordinatorPrompts()
        self._chat = chat
        self._supervision = SupervisionLevel(self.config.supervision_level)

        self._tasks: dict[str, TaskContext] = {}
        self._pending: dict[str, PendingConfirmation] = {}
        self._queues: dict[str, asyncio.Queue] = {}
        self._drainers: dict[str, asyncio.Task] = {}
        self._in_flight: set[str] = set()
        self._unregistered: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self._buffer_timers: dict[str, asyncio.TimerHandle] = {}
        self._chat_tasks: set[asyncio.Task] = set()
        self._observers = EventRegistry("coordinator")
        self._unsubscribe: Unsubscribe | None = None
        self._watchdog: asyncio.Task | None = None

    # ── Lifecycle ──────────────────────────────────────────────

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self._manager.subscribe(self._on_session_event)
        self._watchdog = asyncio.create_task(
            run_idle_watchdog(self, self.config.idle_scan_interval_seconds)
        )
        logger.info(
            "Swarm coordinator started (supervision=%s, reasoning=%s)",
            self._supervision.value, "on" if self._reason else "off",
        )

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        pending_tasks = [t for t in (self._watchdog, *self._drainers.values()) if t is not None]
        for task in pending_tasks:
            task.cancel()
        await asyncio.gather(*pending_tasks, return_exceptions=True)
        for handle in self._buffer_timers.values():
            handle.cancel()
        self._watchdog = None
        self._drainers.clear()
        self._queues.clear()
        self._buffer_timers.clear()
        self._unregistered.clear()
        self._in_flight.clear()
        self._pending.clear()
        self._tasks.clear()
        self._observers.clear()
        logger.info("Swarm coordinator stopped")

    # ── Task registration ──────────────────────────────────────

    def register_task(
        self,
        session_id: str,
        *,
        agent_type: str,
        label: str,
        original_task: str,
        workdir: str,
    ) -> TaskContext:
        if session_id in self._tasks:
            logger.warning("Task for %s re-registered; previous context replaced", session_id)
        task = TaskContext(
            session_id=session_id,
            agent_type=agent_type,
            label=label,
            original_task=original_task,
            workdir=workdir,
        )
        self._tasks[session_id] = task
        self.broadcast("task_registered", session_id, {
            "agent_type": agent_type,
            "label": label,
            "original_task": original_task,
        })

        timer = self._buffer_timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
        buffered = self._unregistered.pop(session_id, [])
        if buffered:
            logger.info("Replaying %d buffered events for %s", len(buffered), session_id)
        for event, data in buffered:
            self._enqueue(session_id, event, data)
        return task

    async def dispatch_task(self, config: SpawnConfig, label: str | None = None) -> SessionInfo:
        """Spawn a session and register it for coordination in one step."""
        info = await self._manager.spawn(config)
        self.register_task(
            info.id,
            agent_type=info.agent_type,
            label=label or config.name or info.name,
            original_task=config.initial_task or "",
            workdir=info.workdir,
        )
        return info

    # ── Queries ────────────────────────────────────────────────

    @property
    def supervision_level(self) -> SupervisionLevel:
        return self._supervision

    def get_task(self, session_id: str) -> TaskContext | None:
        return self._tasks.get(session_id)

    def list_tasks(self) -> list[TaskContext]:
        return list(self._tasks.values())

    def list_pending(self) -> list[PendingConfirmation]:
        return list(self._pending.values())

    def is_deciding(self, session_id: str) -> bool:
        return session_id in self._in_flight

    def get_status(self) -> dict[str, Any]:
        return {
            "supervision_level": self._supervision.value,
            "task_count": len(self._tasks),
            "tasks": [t.to_dict() for t in self._tasks.values()],
            "pending_confirmations_count": len(self._pending),
        }

    def session_output(self, session_id: str, lines: int = 50) -> str:
        try:
            return self._manager.get_output(session_id, lines)
        except SessionNotFoundError:
            return ""

    # ── Observers ──────────────────────────────────────────────

    def add_observer(self, callback: Observer) -> Unsubscribe:
        """Deliver a snapshot, then every incremental event, to *callback*."""
        fire_callback(callback, self._event("snapshot", events.ALL_SESSIONS, {
            "tasks": [t.to_dict() for t in self._tasks.values()],
            "pending_confirmations": [p.to_dict() for p in self._pending.values()],
            "supervision_level": self._supervision.value,
        }))
        return self._observers.subscribe(callback)

    def _event(self, kind: str, session_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return {"type": kind, "session_id": session_id, "timestamp": _now_iso(), "data": data}

    def broadcast(self, kind: str, session_id: str, data: dict[str, Any]) -> None:
        self._observers.publish(self._event(kind, session_id, data))

    def _notify(self, text: str) -> None:
        result = fire_callback(self._chat, text, CHAT_SOURCE)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._chat_tasks.add(task)
            task.add_done_callback(self._chat_done)

    def _chat_done(self, task: asyncio.Task) -> None:
        self._chat_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Chat callback failed: %s", task.exception())

    # ── Supervision ────────────────────────────────────────────

    def set_supervision_level(self, level: SupervisionLevel | str) -> SupervisionLevel:
        """Change the policy. Raises ValueError for unknown levels."""
        self._supervision = SupervisionLevel(level)
        self.broadcast("supervision_changed", events.ALL_SESSIONS, {
            "level": self._supervision.value,
        })
        logger.info("Supervision level set to %s", self._supervision.value)
        return self._supervision

    # ── Session events ─────────────────────────────────────────

    def _on_session_event(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        if event == events.WORKER_EXIT:
            self.broadcast(events.WORKER_EXIT, session_id, dict(data))
            return
        if session_id not in self._tasks:
            if event in _BUFFERED_EVENTS:
                self._buffer_unregistered(session_id, event, data)
            return
        self._enqueue(session_id, event, data)

    def _buffer_unregistered(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        self._unregistered.setdefault(session_id, []).append((event, dict(data)))
        if session_id in self._buffer_timers:
            return
        loop = asyncio.get_running_loop()
        self._buffer_timers[session_id] = loop.call_later(
            self.config.unregistered_buffer_seconds, self._expire_buffered, session_id,
        )

    def _expire_buffered(self, session_id: str) -> None:
        self._buffer_timers.pop(session_id, None)
        dropped = self._unregistered.pop(session_id, [])
        if dropped:
            logger.info(
                "Discarding %d buffered events for unregistered session %s",
                len(dropped), session_id,
            )

    def _enqueue(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        queue = self._queues.get(session_id)
        if queue is None:
            queue = self._queues[session_id] = asyncio.Queue()
        queue.put_nowait((event, data))
        if session_id not in self._drainers:
            self._drainers[session_id] = asyncio.create_task(self._drain(session_id, queue))

    async def _drain(self, session_id: str, queue: asyncio.Queue) -> None:
        try:
            while True:
                event, data = await queue.get()
                try:
                    await self._handle_event(session_id, event, data)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Coordinator failed handling %s for %s", event, session_id)
                task = self._tasks.get(session_id)
                if queue.empty() and (task is None or task.status in FINISHED_TASK_STATUSES):
                    break
        except asyncio.CancelledError:
            return
        finally:
            if self._drainers.get(session_id) is asyncio.current_task():
                self._drainers.pop(session_id, None)
                if queue.empty():
                    self._queues.pop(session_id, None)

    async def _handle_event(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        task = self._tasks.get(session_id)
        if task is None:
            return
        if event != IDLE_CHECK:
            task.touch()
            if task.status is TaskStatus.ESCALATED:
                task.status = TaskStatus.ACTIVE

        if event == events.BLOCKED:
            await self._handle_blocked(task, data)
        elif event == events.TASK_COMPLETE:
            self.broadcast("turn_complete", session_id, {
                k: v for k, v in data.items() if k != "response"
            })
            await self._handle_turn_complete(task, data)
        elif event == events.TOOL_RUNNING:
            self._handle_tool_running(task, data)
        elif event == events.ERROR:
            task.status = TaskStatus.ERROR
            self.broadcast(events.ERROR, session_id, dict(data))
            self._notify(f'"{task.label}" hit an error: {data.get("message") or "unknown error"}')
            self._drop_pending(session_id)
        elif event == events.STOPPED:
            if task.status is not TaskStatus.COMPLETED:
                task.status = TaskStatus.STOPPED
            self.broadcast(events.STOPPED, session_id, dict(data))
            self._drop_pending(session_id)
        elif event == IDLE_CHECK:
            await self._handle_idle_check(task, int(data.get("idle_minutes", 0)))
        else:
            self.broadcast(event, session_id, dict(data))

    def _drop_pending(self, session_id: str) -> None:
        if self._pending.pop(session_id, None) is not None:
            logger.info("Dropped pending confirmation for ended session %s", session_id)

    # ── Triggers ───────────────────────────────────────────────

    async def _handle_blocked(self, task: TaskContext, data: dict[str, Any]) -> None:
        if task.status in FINISHED_TASK_STATUSES:
            return
        info = data.get("prompt_info") or {}
        prompt_text = str(info.get("prompt") or info.get("instructions") or "")
        prompt_type = info.get("type")

        if data.get("auto_responded"):
            task.auto_resolved_count += 1
            task.record(DecisionRecord(
                event=DecisionTrigger.BLOCKED,
                prompt_text=prompt_text,
                action=DecisionAction.AUTO_RESOLVED,
                reasoning="Handled by auto-response rules",
            ))
            self.broadcast("blocked_auto_resolved", task.session_id, {
                "prompt": prompt_text,
                "prompt_type": prompt_type,
                "auto_resolved_count": task.auto_resolved_count,
            })
            if announce_auto_resolution(task.auto_resolved_count):
                self._notify(f"[{task.label}] Approved: {excerpt(prompt_text, 120)}")
            return

        self.broadcast(events.BLOCKED, task.session_id, {
            "prompt": prompt_text,
            "prompt_type": prompt_type,
            "supervision_level": self._supervision.value,
        })

        limit = self.config.max_auto_responses
        if task.auto_resolved_count >= limit:
            record_decision(
                task, DecisionTrigger.BLOCKED, prompt_text,
                escalation(f"Escalating after {limit} consecutive auto-responses"),
            )
            task.auto_resolved_count = 0
            task.status = TaskStatus.ESCALATED
            self.broadcast("escalation", task.session_id, {
                "prompt": prompt_text,
                "reason": "max_auto_responses_exceeded",
            })
            self._notify(
                f"[{task.label}] Needs your attention: {limit} prompts in a row were "
                f"auto-answered and another one is waiting: {excerpt(prompt_text, 120)}"
            )
            return

        recent = clean_for_chat(
            self._manager.recent_output(task.session_id, self.config.output_tail_chars * 2)
        )
        prompt = build_coordination_prompt(
            task, prompt_text, recent,
            decision_history(task, self.config.history_limit),
            self.prompts,
            output_chars=self.config.output_tail_chars,
        )
        await self._decide(task, DecisionTrigger.BLOCKED, prompt_text, prompt, recent)

    async def _handle_turn_complete(self, task: TaskContext, data: dict[str, Any]) -> None:
        if task.status in FINISHED_TASK_STATUSES:
            return
        turn_output = clean_for_chat(str(data.get("response") or ""))
        if not turn_output:
            turn_output = clean_for_chat(
                self._manager.recent_output(task.session_id, self.config.output_tail_chars * 2)
            )
        logger.info("Turn complete for %s; assessing whether the task is done", task.label)
        prompt = build_turn_complete_prompt(
            task, turn_output,
            decision_history(task, self.config.history_limit),
            self.prompts,
            output_chars=self.config.output_tail_chars,
        )
        await self._decide(
            task, DecisionTrigger.TURN_COMPLETE, "Agent finished a turn", prompt, turn_output,
        )

    async def _handle_idle_check(self, task: TaskContext, idle_minutes: int) -> None:
        # Activity arrived while the check sat in the queue.
        if task.status is not TaskStatus.ACTIVE or task.idle_check_count == 0:
            return
        recent = clean_for_chat(self.session_output(task.session_id, 50))
        prompt = build_idle_check_prompt(
            task, recent, idle_minutes,
            task.idle_check_count, self.config.max_idle_checks,
            decision_history(task, self.config.history_limit),
            self.prompts,
            output_chars=self.config.output_tail_chars,
        )
        await self._decide(
            task, DecisionTrigger.IDLE, f"Session idle for {idle_minutes} minutes", prompt, recent,
        )

    def _handle_tool_running(self, task: TaskContext, data: dict[str, Any]) -> None:
        self.broadcast(events.TOOL_RUNNING, task.session_id, dict(data))
        now = time.monotonic()
        if task.last_tool_notify and now - task.last_tool_notify < self.config.tool_notify_throttle_seconds:
            return
        task.last_tool_notify = now
        tool = data.get("description") or data.get("tool_name") or "an external tool"
        url = extract_dev_server_url(self._manager.recent_output(task.session_id, 4000))
        suffix = f" Dev server running at {url}." if url else ""
        self._notify(
            f"[{task.label}] Running {tool}.{suffix} The agent is working outside "
            f"the terminal; letting it finish."
        )

    # ── Idle watchdog hooks ────────────────────────────────────

    def request_idle_check(self, task: TaskContext, idle_minutes: int) -> None:
        self._enqueue(task.session_id, IDLE_CHECK, {"idle_minutes": idle_minutes})

    def force_escalate_idle(self, task: TaskContext, idle_minutes: int) -> None:
        """Give up on an idle task without consulting the reasoning call."""
        checks = task.idle_check_count
        logger.info("Idle watchdog: force-escalating %s after %d checks", task.label, checks)
        record_decision(
            task, DecisionTrigger.IDLE, f"Session idle for {idle_minutes} minutes",
            escalation(f"Force-escalated after {checks} idle checks with no activity"),
        )
        task.status = TaskStatus.ESCALATED
        self.broadcast("escalation", task.session_id, {
            "reason": "idle_watchdog_max_checks",
            "idle_minutes": idle_minutes,
            "idle_check_count": checks,
        })
        self._notify(
            f"[{task.label}] Session has been idle for {idle_minutes} minutes with "
            f"no progress. Needs your attention."
        )

    # ── Decisions ──────────────────────────────────────────────

    async def request_decision(self, task: TaskContext, prompt: str) -> CoordinationDecision | None:
        """Ask the reasoning call, re-prompting on unparseable answers.

        Returns None when no attempt produced a valid decision.
        """
        if self._reason is None:
            logger.warning("No reasoning backend configured; cannot decide for %s", task.label)
            return None
        attempts = max(1, self.config.decision_attempts)
        current = prompt
        for attempt in range(1, attempts + 1):
            try:
                raw = await asyncio.wait_for(
                    self._reason(current), timeout=self.config.decision_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Decision call for %s timed out (attempt %d/%d)",
                    task.label, attempt, attempts,
                )
                continue
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Decision call for %s failed (attempt %d/%d)", task.label, attempt, attempts)
                continue
            decision = parse_coordination_response(raw)
            if decision is not None:
                return decision
            logger.warning(
                "Unparseable decision for %s (attempt %d/%d): %r",
                task.label, attempt, attempts, (raw or "")[:200],
            )
            current = build_retry_prompt(prompt, raw)
        return None

    async def _decide(
        self,
        task: TaskContext,
        trigger: DecisionTrigger,
        prompt_text: str,
        prompt: str,
        recent_output: str,
    ) -> None:
        session_id = task.session_id
        if session_id in self._in_flight:
            logger.info("Skipping %s decision for %s (in flight)", trigger.value, session_id)
            return
        self._in_flight.add(session_id)
        try:
            decision = await self.request_decision(task, prompt)
            valid = decision is not None
            if decision is None:
                decision = escalation("Reasoning call returned no valid coordination decision")
            if self._tasks.get(session_id) is not task:
                logger.info("Dropping %s decision for unregistered %s", trigger.value, session_id)
                return
            ended = self._session_ended(task)
            if ended is not None:
                logger.info(
                    "Dropping %s decision for %s: session is %s",
                    trigger.value, session_id, ended,
                )
                task.record(DecisionRecord(
                    event=trigger,
                    prompt_text=prompt_text,
                    action=DecisionAction.SKIPPED,
                    response=format_decision_response(decision),
                    reasoning=f"Session is {ended}, {decision.action.value} not applied: "
                    f"{decision.reasoning}",
                ))
                return
            logger.info(
                "%s decision for %s: %s (%s)",
                trigger.value, task.label, decision.action.value, excerpt(decision.reasoning, 120),
            )
            await self.apply_policy(task, trigger, prompt_text, recent_output, decision, valid=valid)
        finally:
            self._in_flight.discard(session_id)

    def _session_ended(self, task: TaskContext) -> str | None:
        """Why decisions for *task* can no longer be acted on, or None."""
        if task.status in FINISHED_TASK_STATUSES:
            return task.status.value
        info = self._manager.get_session(task.session_id)
        if info is None:
            return "gone"
        if info.status in TERMINAL_STATUSES:
            return info.status.value
        return None

    async def apply_policy(
        self,
        task: TaskContext,
        trigger: DecisionTrigger,
        prompt_text: str,
        recent_output: str,
        decision: CoordinationDecision,
        *,
        valid: bool = True,
    ) -> None:
        """Act on, queue, or just record *decision* per the supervision level."""
        session_id = task.session_id
        level = self._supervision

        if not valid:
            record_decision(task, trigger, prompt_text, decision)
            task.status = TaskStatus.ESCALATED
            self.broadcast("escalation", session_id, {
                "prompt": prompt_text,
                "trigger": trigger.value,
                "reason": "invalid_llm_response",
            })
            self._notify(f"[{task.label}] Could not determine what to do. Needs your attention.")
            return

        if decision.action is DecisionAction.IGNORE:
            record_decision(task, trigger, prompt_text, decision)
            self.broadcast(_DECISION_EVENTS[trigger], session_id, {
                "trigger": trigger.value, "applied": True, **decision.to_dict(),
            })
            return

        if level is SupervisionLevel.CONFIRM:
            if session_id in self._pending:
                logger.info("Replacing pending confirmation for %s", session_id)
            self._pending[session_id] = PendingConfirmation.for_task(
                task, prompt_text, trigger, recent_output, decision,
            )
            record_decision(
                task, trigger, prompt_text, decision,
                reasoning=f"Awaiting confirmation: {decision.reasoning}",
            )
            self.broadcast("pending_confirmation", session_id, {
                "prompt": prompt_text,
                "trigger": trigger.value,
                "suggested_action": decision.action.value,
                "suggested_response": decision.response,
                "suggested_keys": list(decision.keys) if decision.use_keys else None,
                "reasoning": decision.reasoning,
            })
            self._notify(
                f"[{task.label}] Suggests {decision.action.value}: "
                f"{excerpt(decision.reasoning, 150)} (awaiting your confirmation)"
            )
            return

        if level is SupervisionLevel.NOTIFY:
            record_decision(
                task, trigger, prompt_text, decision,
                reasoning=f"Supervision level is notify, not applied: {decision.reasoning}",
            )
            self.broadcast(_DECISION_EVENTS[trigger], session_id, {
                "trigger": trigger.value, "applied": False, **decision.to_dict(),
            })
            self._notify(
                f"[{task.label}] Would {decision.action.value}: "
                f"{excerpt(decision.reasoning, 150)} (notify mode, no action taken)"
            )
            return

        record_decision(task, trigger, prompt_text, decision)
        task.auto_resolved_count = max(0, task.auto_resolved_count - 1)
        self.broadcast(_DECISION_EVENTS[trigger], session_id, {
            "trigger": trigger.value, "applied": True, **decision.to_dict(),
        })
        self._announce(task, trigger, prompt_text, decision)
        await self.execute_decision(session_id, decision)

    def _announce(
        self,
        task: TaskContext,
        trigger: DecisionTrigger,
        prompt_text: str,
        decision: CoordinationDecision,
    ) -> None:
        if decision.action is DecisionAction.RESPOND:
            if trigger is DecisionTrigger.TURN_COMPLETE and not decision.use_keys:
                self._notify(
                    f"[{task.label}] Turn done, continuing: {excerpt(decision.response or '', 120)}"
                )
            elif trigger is DecisionTrigger.IDLE:
                self._notify(f"[{task.label}] {prompt_text}: {describe_action(decision)}")
            else:
                self._notify(
                    f"[{task.label}] {describe_action(decision)} - {excerpt(decision.reasoning, 150)}"
                )
        elif decision.action is DecisionAction.ESCALATE:
            self._notify(f"[{task.label}] Needs your attention: {decision.reasoning}")

    async def execute_decision(self, session_id: str, decision: CoordinationDecision) -> bool:
        """Carry out *decision*. False when the session is gone or has ended."""
        info = self._manager.get_session(session_id)
        if info is None or info.status in TERMINAL_STATUSES:
            logger.info(
                "Dropping %s decision for %s: session is %s",
                decision.action.value, session_id, "gone" if info is None else info.status.value,
            )
            return False
        task = self._tasks.get(session_id)

        if decision.action is DecisionAction.RESPOND:
            if decision.use_keys:
                await self._manager.send_keys(session_id, decision.keys)
            else:
                await self._manager.send(session_id, decision.response or "")
        elif decision.action is DecisionAction.COMPLETE:
            if task is not None:
                task.status = TaskStatus.COMPLETED
            label = task.label if task is not None else session_id
            self.broadcast("task_complete", session_id, {"reasoning": decision.reasoning})
            summary = extract_completion_summary(self.session_output(session_id, 50))
            self._notify(f'Finished "{label}".\n\n{summary}' if summary else f'Finished "{label}".')
            try:
                await self._manager.stop(session_id)
            except OrchestrationError as exc:
                logger.error("Failed to stop %s after completion: %s", session_id, exc)
        elif decision.action is DecisionAction.ESCALATE:
            if task is not None:
                task.status = TaskStatus.ESCALATED
            self.broadcast("escalation", session_id, {"reasoning": decision.reasoning})
        return True

    # ── Confirmation queue ─────────────────────────────────────

    async def confirm_decision(
        self,
        session_id: str,
        approved: bool,
        override: dict[str, Any] | None = None,
    ) -> CoordinationDecision | None:
        """Resolve a pending confirmation. Returns the decision that was applied.

        Raises PendingConfirmationNotFoundError when nothing is queued,
        and ValueError for an override without a response or keys.
        """
        pending = self._pending.get(session_id)
        if pending is None:
            raise PendingConfirmationNotFoundError(session_id)
        decision = pending.decision
        if approved and override:
            decision = decision_from_override(override, pending.decision)
        del self._pending[session_id]
        task = self._tasks.get(session_id)

        if not approved:
            if task is not None:
                record_decision(
                    task, pending.trigger, pending.prompt_text,
                    escalation("Human rejected the suggested action"),
                )
            self.broadcast("confirmation_rejected", session_id, {"prompt": pending.prompt_text})
            logger.info("Pending decision for %s rejected", session_id)
            return None

        if task is not None:
            record_decision(
                task, pending.trigger, pending.prompt_text, decision,
                reasoning=f"Human-approved: {decision.reasoning}",
            )
            task.auto_resolved_count = max(0, task.auto_resolved_count - 1)
        await self.execute_decision(session_id, decision)
        self.broadcast("confirmation_approved", session_id, {
            "action": decision.action.value,
            "response": decision.response,
            "use_keys": decision.use_keys,
            "keys": list(decision.keys),
        })
        logger.info("Pending decision for %s approved (%s)", session_id, decision.action.value)
        return decision
