from .base import AgentAdapter, ApprovalConfig, BlockingPattern, ToolPattern, WorkspaceFile
from .registry import AdapterRegistry, build_default_registry, normalize_agent_type

__all__ = [
    "AdapterRegistry",
    "AgentAdapter",
    "ApprovalConfig",
    "BlockingPattern",
    "ToolPattern",
    "WorkspaceFile",
    "build_default_registry",
    "normalize_agent_type",
]
