"""In-memory per-agent-type counters (no export back end)."""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentMetrics:
    spawned: int = 0
    completed: int = 0
    # Completion count keyed by detection method ("fast-path", "classifier").
    completed_by: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    stall_count: int = 0
    total_completion_ms: float = 0.0

    @property
    def avg_completion_ms(self) -> float:
        if not self.completed:
            return 0.0
        return self.total_completion_ms / self.completed

    def to_dict(self) -> dict[str, Any]:
        return {
            "spawned": self.spawned,
            "completed": self.completed,
            "completed_by": dict(self.completed_by),
            "stall_count": self.stall_count,
            "avg_completion_ms": round(self.avg_completion_ms, 1),
        }


class AgentMetricsTracker:
    """Counters for spawns, completions and stalls per agent type."""

    def __init__(self) -> None:
        self._metrics: dict[str, AgentMetrics] = {}

    def get(self, agent_type: str) -> AgentMetrics:
        metrics = self._metrics.get(agent_type)
        if metrics is None:
            metrics = AgentMetrics()
            self._metrics[agent_type] = metrics
        return metrics

    def record_spawn(self, agent_type: str) -> None:
        self.get(agent_type).spawned += 1

    def record_completion(
        self, agent_type: str, method: str, duration_ms: float,
    ) -> None:
        metrics = self.get(agent_type)
        metrics.completed += 1
        metrics.completed_by[method] += 1
        metrics.total_completion_ms += max(duration_ms, 0.0)

    def record_stall(self, agent_type: str) -> None:
        self.get(agent_type).stall_count += 1

    def get_all(self) -> dict[str, dict[str, Any]]:
        return {name: m.to_dict() for name, m in sorted(self._metrics.items())}
