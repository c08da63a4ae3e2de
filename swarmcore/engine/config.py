"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via SWARM_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .models import AgentCredentials

logger = logging.getLogger(__name__)


# Lifecycle event callback.
# Signature: def callback(session_id, event, data) -> None
EventCallback = Callable[[str, str, dict[str, Any]], None]

# Injected reasoning function (LLM call).
# Signature: async def reason(prompt) -> str
ReasoningFn = Callable[[str], Awaitable[str]]

# Human-facing chat notification. May be sync or async.
# Signature: def callback(text, source) -> None
ChatCallback = Callable[[str, str], Any]


def fire_callback(callback: Callable[..., Any] | None, *args: Any) -> Any:
    """Invoke a sync callback, logging (not raising) its errors."""
    if callback is None:
        return None
    try:
        return callback(*args)
    except Exception:
        logger.exception("Callback %r raised", callback)
        return None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes"}


def credentials_from_env() -> AgentCredentials:
    return AgentCredentials(
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        google_api_key=(
            os.getenv("GENERATIVE_AI_API_KEY")
            or os.getenv("GEMINI_API_KEY")
            or None
        ),
        github_token=os.getenv("GITHUB_TOKEN") or None,
    )


@dataclass
class SwarmConfig:
    """Session engine and coordinator configuration."""

    # Execution strategy: "inprocess" runs PTYs in this event loop,
    # "worker" isolates them in a child process.
    strategy: str = "inprocess"
    default_workdir: str = "."

    # Terminal geometry for spawned agents.
    pty_cols: int = 220
    pty_rows: int = 50
    # SIGTERM -> SIGKILL grace when stopping a session.
    stop_grace_seconds: float = 3.0

    # Silence while busy before the stall classifier is consulted.
    stall_timeout_seconds: float = 4.0
    # Upper bound for the doubled re-arm interval after "still working".
    stall_max_timeout_seconds: float = 60.0
    classifier_enabled: bool = True
    classifier_timeout_seconds: float = 15.0
    classifier_output_chars: int = 1500
    classifier_trace_limit: int = 10

    # Delay between the first "ready" and sending a deferred initial task.
    settle_delay_seconds: float = 0.3
    output_buffer_lines: int = 1000
    trace_limit: int = 200

    # Coordinator
    supervision_level: str = "autonomous"
    decision_timeout_seconds: float = 30.0
    # Reasoning calls per trigger before giving up and escalating.
    decision_attempts: int = 2
    max_auto_responses: int = 10
    history_limit: int = 5
    output_tail_chars: int = 3000
    unregistered_buffer_seconds: float = 2.0
    tool_notify_throttle_seconds: float = 30.0

    # Idle watchdog
    idle_threshold_seconds: float = 180.0
    idle_scan_interval_seconds: float = 60.0
    max_idle_checks: int = 3

    # Reasoning backend
    reasoning_model: str | None = None

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8765
    sse_queue_size: int = 5000
    sse_heartbeat_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"

    credentials: AgentCredentials = field(
        default_factory=AgentCredentials, repr=False,
    )

    @classmethod
    def from_env(cls) -> SwarmConfig:
        """Load configuration from SWARM_* environment variables."""
        swarm_vars = {
            k: v for k, v in os.environ.items() if k.startswith("SWARM_")
        }
        if swarm_vars:
            logger.info(
                "SwarmConfig.from_env: SWARM_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(swarm_vars.items())),
            )
        else:
            logger.debug("SwarmConfig.from_env: no SWARM_* env vars set, using defaults")

        config = cls(
            strategy=os.getenv("SWARM_STRATEGY", cls.strategy),
            default_workdir=os.getenv("SWARM_WORKDIR", cls.default_workdir),
            pty_cols=int(os.getenv("SWARM_PTY_COLS", str(cls.pty_cols))),
            pty_rows=int(os.getenv("SWARM_PTY_ROWS", str(cls.pty_rows))),
            stop_grace_seconds=float(os.getenv(
                "SWARM_STOP_GRACE", str(cls.stop_grace_seconds)
            )),
            stall_timeout_seconds=float(os.getenv(
                "SWARM_STALL_TIMEOUT", str(cls.stall_timeout_seconds)
            )),
            stall_max_timeout_seconds=float(os.getenv(
                "SWARM_STALL_MAX_TIMEOUT", str(cls.stall_max_timeout_seconds)
            )),
            classifier_enabled=_env_bool(
                "SWARM_CLASSIFIER_ENABLED", cls.classifier_enabled
            ),
            classifier_timeout_seconds=float(os.getenv(
                "SWARM_CLASSIFIER_TIMEOUT", str(cls.classifier_timeout_seconds)
            )),
            settle_delay_seconds=float(os.getenv(
                "SWARM_SETTLE_DELAY", str(cls.settle_delay_seconds)
            )),
            output_buffer_lines=int(os.getenv(
                "SWARM_BUFFER_LINES", str(cls.output_buffer_lines)
            )),
            supervision_level=os.getenv(
                "SWARM_SUPERVISION", cls.supervision_level
            ),
            decision_timeout_seconds=float(os.getenv(
                "SWARM_DECISION_TIMEOUT", str(cls.decision_timeout_seconds)
            )),
            decision_attempts=int(os.getenv(
                "SWARM_DECISION_ATTEMPTS", str(cls.decision_attempts)
            )),
            max_auto_responses=int(os.getenv(
                "SWARM_MAX_AUTO_RESPONSES", str(cls.max_auto_responses)
            )),
            idle_threshold_seconds=float(os.getenv(
                "SWARM_IDLE_THRESHOLD", str(cls.idle_threshold_seconds)
            )),
            idle_scan_interval_seconds=float(os.getenv(
                "SWARM_IDLE_SCAN_INTERVAL", str(cls.idle_scan_interval_seconds)
            )),
            max_idle_checks=int(os.getenv(
                "SWARM_MAX_IDLE_CHECKS", str(cls.max_idle_checks)
            )),
            reasoning_model=os.getenv("SWARM_REASONING_MODEL") or None,
            host=os.getenv("SWARM_HOST", cls.host),
            port=int(os.getenv("SWARM_PORT", str(cls.port))),
            log_level=os.getenv("SWARM_LOG_LEVEL", cls.log_level),
            credentials=credentials_from_env(),
        )
        logger.info(
            "SwarmConfig.from_env: strategy=%s supervision=%s stall=%.1fs log_level=%s",
            config.strategy, config.supervision_level,
            config.stall_timeout_seconds, config.log_level,
        )
        return config
