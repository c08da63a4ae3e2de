"""Helpers shared by the coordinator's decision paths."""
from __future__ import annotations

from typing import Any

from .models import (
    CoordinationDecision,
    DecisionAction,
    DecisionRecord,
    DecisionTrigger,
    TaskContext,
)


def excerpt(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def format_decision_response(decision: CoordinationDecision) -> str | None:
    """History form of what a respond decision sends: text, or ``keys:a,b``."""
    if decision.action is not DecisionAction.RESPOND:
        return None
    if decision.use_keys:
        return f"keys:{','.join(decision.keys)}"
    return decision.response


def decision_history(task: TaskContext, limit: int = 5) -> list[DecisionRecord]:
    """Most recent reasoning decisions; rule-answered prompts are left out."""
    history = [d for d in task.decisions if d.action is not DecisionAction.AUTO_RESOLVED]
    return history[-limit:] if limit > 0 else []


def record_decision(
    task: TaskContext,
    trigger: DecisionTrigger,
    prompt_text: str,
    decision: CoordinationDecision,
    reasoning: str | None = None,
) -> DecisionRecord:
    record = DecisionRecord(
        event=trigger,
        prompt_text=prompt_text,
        action=decision.action,
        response=format_decision_response(decision),
        reasoning=reasoning if reasoning is not None else decision.reasoning,
    )
    task.record(record)
    return record


def escalation(reasoning: str) -> CoordinationDecision:
    return CoordinationDecision(action=DecisionAction.ESCALATE, reasoning=reasoning)


def announce_auto_resolution(count: int) -> bool:
    """Chat about the 1st, 2nd and then every 5th rule-answered prompt."""
    return count <= 2 or count % 5 == 0


def decision_from_override(override: dict[str, Any], base: CoordinationDecision) -> CoordinationDecision:
    """Build the respond decision a human supplied when approving."""
    keys = override.get("keys")
    use_keys = bool(override.get("use_keys", override.get("useKeys")))
    if use_keys and isinstance(keys, list) and keys:
        return CoordinationDecision(
            action=DecisionAction.RESPOND,
            use_keys=True,
            keys=[str(k) for k in keys],
            reasoning=f"Human override of: {base.reasoning}",
        )
    response = override.get("response")
    if not isinstance(response, str):
        raise ValueError("override needs a response string or use_keys with keys")
    return CoordinationDecision(
        action=DecisionAction.RESPOND,
        response=response,
        reasoning=f"Human override of: {base.reasoning}",
    )


def describe_action(decision: CoordinationDecision) -> str:
    """Short chat form of a respond decision."""
    if decision.use_keys:
        return f"Sent keys: {', '.join(decision.keys)}"
    if decision.response:
        return f"Responded: {excerpt(decision.response, 100)}"
    return "Responded"
