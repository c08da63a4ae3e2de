"""Session engine: PTY-hosted coding agents behind a uniform session API."""
from .models import (
    AgentCredentials,
    ApprovalPreset,
    AutoResponseRule,
    BlockingPrompt,
    SendAck,
    SessionFilter,
    SessionInfo,
    SessionStatus,
    SpawnConfig,
    SpawnRequest,
    StallClassification,
    StallState,
)
from .config import SwarmConfig
from .errors import (
    OrchestrationError,
    PendingConfirmationNotFoundError,
    SessionNotFoundError,
    SpawnFailureError,
    UnknownAgentTypeError,
    UnparseableDecisionError,
    WorkerFaultError,
)

__all__ = [
    # Session manager (lazy import)
    "SessionManager",
    # Models
    "AgentCredentials",
    "ApprovalPreset",
    "AutoResponseRule",
    "BlockingPrompt",
    "SendAck",
    "SessionFilter",
    "SessionInfo",
    "SessionStatus",
    "SpawnConfig",
    "SpawnRequest",
    "StallClassification",
    "StallState",
    # Config
    "SwarmConfig",
    # YAML config (lazy import)
    "load_yaml_config",
    # Reasoning backend (lazy import)
    "ClaudeReasoner",
    # Errors
    "OrchestrationError",
    "PendingConfirmationNotFoundError",
    "SessionNotFoundError",
    "SpawnFailureError",
    "UnknownAgentTypeError",
    "UnparseableDecisionError",
    "WorkerFaultError",
]


def __getattr__(name: str):
    if name == "SessionManager":
        from .session_manager import SessionManager
        return SessionManager
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "ClaudeReasoner":
        from .reasoning import ClaudeReasoner
        return ClaudeReasoner
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
