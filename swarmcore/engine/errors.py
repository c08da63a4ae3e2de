"""Exception hierarchy for the session engine and coordinator.

Specific exceptions for each failure mode. Callers catch the narrow
type they can handle and let everything else propagate.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class SessionNotFoundError(OrchestrationError):
    """Operation targeted a session id that is not in the table."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class SpawnFailureError(OrchestrationError):
    """Process start or pre-spawn file write failed; no session exists."""
    def __init__(self, agent_type: str, reason: str):
        self.agent_type = agent_type
        self.reason = reason
        super().__init__(f"Failed to spawn {agent_type} session: {reason}")


class WorkerFaultError(OrchestrationError):
    """The isolated worker process died or stopped answering."""
    def __init__(
        self,
        reason: str,
        code: int | None = None,
        signal: str | None = None,
    ):
        self.reason = reason
        self.code = code
        self.signal = signal
        detail = reason
        if code is not None or signal is not None:
            detail = f"{reason} (code={code}, signal={signal})"
        super().__init__(f"Session worker fault: {detail}")


class UnparseableDecisionError(OrchestrationError):
    """The reasoning call returned no usable coordination decision."""
    def __init__(self, raw: str):
        self.raw = raw
        preview = raw if len(raw) <= 200 else raw[:200] + "..."
        super().__init__(f"Unparseable coordination response: {preview!r}")


class PendingConfirmationNotFoundError(OrchestrationError):
    """confirm/reject was called for a session with nothing queued."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"No pending decision for session {session_id}")


class UnknownAgentTypeError(OrchestrationError):
    """No adapter is registered for the requested agent type."""
    def __init__(self, agent_type: str, available: list[str]):
        self.agent_type = agent_type
        self.available = available
        super().__init__(
            f"Unknown agent type '{agent_type}'. "
            f"Available: {', '.join(available) or '(none)'}"
        )
