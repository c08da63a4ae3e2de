"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    SPAWNING ──┬──> READY <──> BUSY <──> BLOCKED
               │      │         │          │
               ├──> BLOCKED     └──> READY │
               │                           │
               └──> ERROR                  │
                                           │
    READY / BUSY / BLOCKED ──> STOPPED | ERROR

    STOPPED and ERROR are terminal. There is no SPAWNING -> STOPPED
    edge: a session that dies before it was ever ready ends in ERROR.
"""
from __future__ import annotations

from .models import SessionStatus

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.SPAWNING: {
        SessionStatus.READY,
        SessionStatus.BLOCKED,
        SessionStatus.ERROR,
    },
    SessionStatus.READY: {
        SessionStatus.BUSY,
        SessionStatus.BLOCKED,
        SessionStatus.STOPPED,
        SessionStatus.ERROR,
    },
    SessionStatus.BUSY: {
        SessionStatus.READY,
        SessionStatus.BLOCKED,
        SessionStatus.STOPPED,
        SessionStatus.ERROR,
    },
    SessionStatus.BLOCKED: {
        SessionStatus.BUSY,
        SessionStatus.READY,
        SessionStatus.STOPPED,
        SessionStatus.ERROR,
    },
    SessionStatus.STOPPED: set(),
    SessionStatus.ERROR: set(),
}


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())
