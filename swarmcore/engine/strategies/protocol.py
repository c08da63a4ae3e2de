"""Worker channel framing: newline-delimited JSON over stdin/stdout.

Three frame shapes:

    request   {"id": 7, "method": "spawn", "params": {...}}
    response  {"id": 7, "result": {...}}
              {"id": 7, "error": "message", "kind": "session_not_found",
               "session_id": "pty-..."}
    push      {"event": "ready", "session_id": "pty-...", "data": {...}}
"""
from __future__ import annotations

import json
import logging
from typing import Any

from ..errors import OrchestrationError, SessionNotFoundError, SpawnFailureError

logger = logging.getLogger(__name__)

KIND_SESSION_NOT_FOUND = "session_not_found"
KIND_SPAWN_FAILURE = "spawn_failure"
KIND_INVALID_REQUEST = "invalid_request"
KIND_INTERNAL = "internal"

METHODS = frozenset({
    "spawn", "send", "send_keys", "stop", "add_rule",
    "apply_stall_classification", "shutdown", "ping",
})


def encode_frame(frame: dict[str, Any]) -> bytes:
    return json.dumps(frame, default=str).encode("utf-8") + b"\n"


def decode_frame(line: bytes | str) -> dict[str, Any] | None:
    """Parse one line. Malformed or non-object lines are logged and dropped."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        frame = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("Dropping non-JSON worker frame: %r", line[:200])
        return None
    if not isinstance(frame, dict):
        logger.warning("Dropping non-object worker frame: %r", frame)
        return None
    return frame


def request(request_id: int, method: str, params: dict[str, Any]) -> dict[str, Any]:
    return {"id": request_id, "method": method, "params": params}


def result(request_id: Any, value: Any) -> dict[str, Any]:
    return {"id": request_id, "result": value}


def error(
    request_id: Any,
    message: str,
    kind: str = KIND_INTERNAL,
    session_id: str | None = None,
) -> dict[str, Any]:
    frame: dict[str, Any] = {"id": request_id, "error": message, "kind": kind}
    if session_id is not None:
        frame["session_id"] = session_id
    return frame


def push(event: str, session_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event": event, "session_id": session_id, "data": data}


def is_push(frame: dict[str, Any]) -> bool:
    return "event" in frame and "id" not in frame


def error_kind_for(exc: BaseException) -> str:
    if isinstance(exc, SessionNotFoundError):
        return KIND_SESSION_NOT_FOUND
    if isinstance(exc, SpawnFailureError):
        return KIND_SPAWN_FAILURE
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return KIND_INVALID_REQUEST
    return KIND_INTERNAL


def exception_from_error(frame: dict[str, Any], method: str, params: dict[str, Any]) -> OrchestrationError:
    """Rebuild the orchestrator-side exception for an error response."""
    kind = frame.get("kind")
    message = str(frame.get("error", "unknown worker error"))
    if kind == KIND_SESSION_NOT_FOUND:
        return SessionNotFoundError(
            str(frame.get("session_id") or params.get("session_id") or "?")
        )
    if kind == KIND_SPAWN_FAILURE:
        agent_type = str((params.get("request") or {}).get("agent_type", "unknown"))
        return SpawnFailureError(agent_type, message)
    return OrchestrationError(f"Worker {method} failed: {message}")
