"""Data models for the swarm coordinator.

TaskContext is the coordinator's per-session view of a task; its
decision history is append-only. Everything here serializes to
snake_case dicts for the HTTP surface.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SupervisionLevel(str, Enum):
    """How much the coordinator may do without a human."""
    AUTONOMOUS = "autonomous"  # act on every decision immediately
    CONFIRM = "confirm"        # queue decisions for approval
    NOTIFY = "notify"          # record and broadcast only


class TaskStatus(str, Enum):
    ACTIVE = "active"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


FINISHED_TASK_STATUSES = frozenset({
    TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.STOPPED,
})


class DecisionAction(str, Enum):
    RESPOND = "respond"
    ESCALATE = "escalate"
    IGNORE = "ignore"
    COMPLETE = "complete"
    # History-only: the prompt was cleared by an auto-response rule.
    AUTO_RESOLVED = "auto_resolved"
    # History-only: the decision arrived after the session ended.
    SKIPPED = "skipped"


REASONING_ACTIONS = frozenset({
    DecisionAction.RESPOND, DecisionAction.ESCALATE,
    DecisionAction.IGNORE, DecisionAction.COMPLETE,
})


class DecisionTrigger(str, Enum):
    BLOCKED = "blocked"
    IDLE = "idle"
    TURN_COMPLETE = "turn_complete"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CoordinationDecision:
    """Structured answer of the reasoning call."""
    action: DecisionAction
    reasoning: str = "No reasoning provided"
    response: str | None = None
    use_keys: bool = False
    keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "response": self.response,
            "use_keys": self.use_keys,
            "keys": list(self.keys),
            "reasoning": self.reasoning,
        }


@dataclass
class DecisionRecord:
    """One entry in a task's decision history."""
    event: DecisionTrigger
    prompt_text: str
    action: DecisionAction
    reasoning: str
    response: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.value,
            "prompt_text": self.prompt_text,
            "action": self.action.value,
            "response": self.response,
            "reasoning": self.reasoning,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TaskContext:
    session_id: str
    agent_type: str
    label: str
    original_task: str
    workdir: str
    status: TaskStatus = TaskStatus.ACTIVE
    decisions: list[DecisionRecord] = field(default_factory=list)
    auto_resolved_count: int = 0
    registered_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    idle_check_count: int = 0
    # Idle watchdog bookkeeping, not serialized.
    last_output_snapshot: str = field(default="", repr=False)
    last_tool_notify: float = field(default=0.0, repr=False)

    def touch(self) -> None:
        self.last_activity_at = _utcnow()
        self.idle_check_count = 0

    def record(self, record: DecisionRecord) -> None:
        self.decisions.append(record)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent_type": self.agent_type,
            "label": self.label,
            "original_task": self.original_task,
            "workdir": self.workdir,
            "status": self.status.value,
            "decisions": [d.to_dict() for d in self.decisions],
            "auto_resolved_count": self.auto_resolved_count,
            "registered_at": self.registered_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "idle_check_count": self.idle_check_count,
        }


@dataclass
class PendingConfirmation:
    """A decision waiting for a human in confirm mode."""
    session_id: str
    prompt_text: str
    trigger: DecisionTrigger
    recent_output: str
    decision: CoordinationDecision
    task_snapshot: dict[str, Any]
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def for_task(
        cls,
        task: TaskContext,
        prompt_text: str,
        trigger: DecisionTrigger,
        recent_output: str,
        decision: CoordinationDecision,
    ) -> PendingConfirmation:
        return cls(
            session_id=task.session_id,
            prompt_text=prompt_text,
            trigger=trigger,
            recent_output=recent_output,
            decision=decision,
            task_snapshot=copy.deepcopy(task.to_dict()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "prompt_text": self.prompt_text,
            "trigger": self.trigger.value,
            "recent_output": self.recent_output,
            "suggested_action": self.decision.action.value,
            "suggested_response": self.decision.response,
            "suggested_keys": list(self.decision.keys) if self.decision.use_keys else None,
            "reasoning": self.decision.reasoning,
            "task": self.task_snapshot,
            "created_at": self.created_at.isoformat(),
        }
