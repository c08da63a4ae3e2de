"""HTTP + SSE surface."""
from .server import SwarmServer

__all__ = ["SwarmServer"]
