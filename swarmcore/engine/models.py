"""Core data models for the session engine.

All dataclasses and enums shared by the adapters, execution
strategies and the session manager. Everything that crosses the
worker channel has a to_dict()/from_dict() pair.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    SPAWNING = "spawning"
    READY = "ready"
    BUSY = "busy"
    BLOCKED = "blocked"
    STOPPED = "stopped"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({SessionStatus.STOPPED, SessionStatus.ERROR})


class ApprovalPreset(str, Enum):
    """How much an agent may do without asking."""
    READONLY = "readonly"
    STANDARD = "standard"
    PERMISSIVE = "permissive"
    AUTONOMOUS = "autonomous"


class StallState(str, Enum):
    """Why a busy session went quiet."""
    TASK_COMPLETE = "task_complete"
    WAITING_FOR_INPUT = "waiting_for_input"
    STILL_WORKING = "still_working"
    ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return _utcnow()


@dataclass
class AgentCredentials:
    """API keys handed to an agent through its environment."""
    anthropic_api_key: str | None = None
    openai_api_key: str | None = None
    google_api_key: str | None = None
    github_token: str | None = None

    def to_dict(self) -> dict[str, str]:
        return {k: v for k, v in self.__dict__.items() if v}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> AgentCredentials:
        data = data or {}
        return cls(
            anthropic_api_key=data.get("anthropic_api_key"),
            openai_api_key=data.get("openai_api_key"),
            google_api_key=data.get("google_api_key"),
            github_token=data.get("github_token"),
        )


@dataclass
class SpawnConfig:
    """Caller-facing parameters for SessionManager.spawn()."""
    agent_type: str
    name: str = ""
    workdir: str | None = None
    initial_task: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    memory_content: str | None = None
    approval_preset: ApprovalPreset | None = None
    credentials: AgentCredentials | None = None
    # Preferred model, mapped to the adapter's model env var.
    model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AutoResponseRule:
    """Pattern -> automatic reply, scoped to one session."""
    pattern: re.Pattern[str]
    type: str
    response: str | None = None
    keys: list[str] | None = None
    description: str = ""
    safe: bool = True
    # Fires at most once for the lifetime of its session.
    once: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern.pattern,
            "flags": int(self.pattern.flags),
            "type": self.type,
            "response": self.response,
            "keys": list(self.keys) if self.keys else None,
            "description": self.description,
            "safe": self.safe,
            "once": self.once,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutoResponseRule:
        pattern = data["pattern"]
        if not isinstance(pattern, re.Pattern):
            flags = data.get("flags")
            if flags is None:
                flags = re.IGNORECASE
            pattern = re.compile(pattern, int(flags))
        keys = data.get("keys")
        return cls(
            pattern=pattern,
            type=str(data.get("type", "config")),
            response=data.get("response"),
            keys=[str(k) for k in keys] if keys else None,
            description=str(data.get("description", "")),
            safe=bool(data.get("safe", True)),
            once=bool(data.get("once", False)),
        )

    def describe(self) -> str:
        return self.description or self.pattern.pattern


@dataclass
class BlockingPrompt:
    """A prompt the agent is waiting on."""
    type: str
    prompt: str
    can_auto_respond: bool = False
    instructions: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "prompt": self.prompt,
            "can_auto_respond": self.can_auto_respond,
        }
        if self.instructions:
            data["instructions"] = self.instructions
        if self.url:
            data["url"] = self.url
        return data


@dataclass
class ToolRunning:
    """The agent handed control to an external tool (build, dev server...)."""
    tool_name: str
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"tool_name": self.tool_name, "description": self.description}


@dataclass
class StallClassification:
    state: StallState
    prompt: str | None = None
    suggested_response: str | None = None
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "prompt": self.prompt,
            "suggested_response": self.suggested_response,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> StallClassification | None:
        if not data:
            return None
        return cls(
            state=StallState(data["state"]),
            prompt=data.get("prompt"),
            suggested_response=data.get("suggested_response"),
            reasoning=data.get("reasoning") or "",
        )


@dataclass
class SessionInfo:
    """Snapshot of one supervised session."""
    id: str
    agent_type: str
    name: str
    workdir: str
    status: SessionStatus = SessionStatus.SPAWNING
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    pid: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_type": self.agent_type,
            "name": self.name,
            "workdir": self.workdir,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "pid": self.pid,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionInfo:
        return cls(
            id=data["id"],
            agent_type=data.get("agent_type", ""),
            name=data.get("name", ""),
            workdir=data.get("workdir", ""),
            status=SessionStatus(data.get("status", SessionStatus.SPAWNING.value)),
            created_at=_parse_time(data.get("created_at")),
            last_activity_at=_parse_time(data.get("last_activity_at")),
            pid=data.get("pid"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class SessionFilter:
    statuses: set[SessionStatus] | None = None
    agent_type: str | None = None

    def matches(self, info: SessionInfo) -> bool:
        if self.statuses and info.status not in self.statuses:
            return False
        if self.agent_type and info.agent_type != self.agent_type:
            return False
        return True


@dataclass
class SpawnRequest:
    """Fully resolved spawn parameters handed to an execution strategy."""
    session_id: str
    agent_type: str
    name: str
    workdir: str
    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    rules: list[AutoResponseRule] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent_type": self.agent_type,
            "name": self.name,
            "workdir": self.workdir,
            "argv": list(self.argv),
            "env": dict(self.env),
            "rules": [rule.to_dict() for rule in self.rules],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SpawnRequest:
        return cls(
            session_id=data["session_id"],
            agent_type=data["agent_type"],
            name=data.get("name", ""),
            workdir=data["workdir"],
            argv=list(data["argv"]),
            env=dict(data.get("env") or {}),
            rules=[AutoResponseRule.from_dict(r) for r in data.get("rules") or []],
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class SendAck:
    session_id: str
    chars: int
    sent_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "chars": self.chars,
            "sent_at": self.sent_at.isoformat(),
        }
