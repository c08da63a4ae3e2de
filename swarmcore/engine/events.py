"""Lifecycle event names and a plain callback fan-out."""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

OUTPUT = "output"
READY = "ready"
BLOCKED = "blocked"
LOGIN_REQUIRED = "login_required"
TASK_COMPLETE = "task_complete"
STALLED = "stalled"
TOOL_RUNNING = "tool_running"
STOPPED = "stopped"
ERROR = "error"
TRACE = "trace"
WORKER_EXIT = "worker_exit"
# Worker-internal push carrying a SessionInfo snapshot.
STATUS = "status"

LIFECYCLE_EVENTS = frozenset({
    READY, BLOCKED, LOGIN_REQUIRED, TASK_COMPLETE, STALLED,
    TOOL_RUNNING, STOPPED, ERROR, WORKER_EXIT,
})

# Wildcard session id used by worker_exit.
ALL_SESSIONS = "*"

Unsubscribe = Callable[[], None]


class EventRegistry:
    """Ordered list of subscribers with unsubscribe handles.

    A subscriber that raises is logged and skipped; it never stops
    delivery to the rest.
    """

    def __init__(self, name: str = "events") -> None:
        self._name = name
        self._subscribers: list[Callable[..., Any]] = []

    def subscribe(self, callback: Callable[..., Any]) -> Unsubscribe:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, *args: Any) -> None:
        for callback in list(self._subscribers):
            try:
                callback(*args)
            except Exception:
                logger.exception("%s subscriber %r raised", self._name, callback)

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)
