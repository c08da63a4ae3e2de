"""Swarm coordinator: reasoning-driven supervision of agent sessions."""
from .models import (
    CoordinationDecision,
    DecisionAction,
    DecisionRecord,
    DecisionTrigger,
    PendingConfirmation,
    SupervisionLevel,
    TaskContext,
    TaskStatus,
)
from .prompts import (
    CoordinatorPrompts,
    build_coordination_prompt,
    build_idle_check_prompt,
    build_turn_complete_prompt,
    parse_coordination_response,
    parse_coordination_response_or_raise,
)
from .coordinator import SwarmCoordinator

__all__ = [
    "SwarmCoordinator",
    "CoordinationDecision",
    "CoordinatorPrompts",
    "DecisionAction",
    "DecisionRecord",
    "DecisionTrigger",
    "PendingConfirmation",
    "SupervisionLevel",
    "TaskContext",
    "TaskStatus",
    "build_coordination_prompt",
    "build_idle_check_prompt",
    "build_turn_complete_prompt",
    "parse_coordination_response",
    "parse_coordination_response_or_raise",
]
