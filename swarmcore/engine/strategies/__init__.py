"""Execution strategies: where PTY sessions actually run."""
from .base import ExecutionStrategy
from .inprocess import InProcessStrategy
from .pty_session import PtySession, encode_key
from .worker import WorkerStrategy

__all__ = [
    "ExecutionStrategy",
    "InProcessStrategy",
    "PtySession",
    "WorkerStrategy",
    "encode_key",
]
