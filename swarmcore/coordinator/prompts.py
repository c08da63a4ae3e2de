"""Prompt construction and response parsing for coordination decisions.

Pure functions. The reasoning call sees task identity, the working
directory, up to five earlier decisions and a bounded output tail,
and must answer with a single JSON object. Where the line between
"escalate" and "ignore" sits is prompt text (CoordinatorPrompts), so
it can be tuned from the ``prompts:`` section of swarmcore.yaml
without touching the parser.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, fields
from typing import Any

from ..engine.ansi import mentions_pull_request
from ..engine.errors import UnparseableDecisionError
from ..engine.jsonutil import extract_json_object
from .models import (
    REASONING_ACTIONS,
    CoordinationDecision,
    DecisionAction,
    DecisionRecord,
    TaskContext,
)

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_CHARS = 3000

PR_FOLLOW_UP = (
    "Review your PR, run each test plan item to verify it works, "
    "update the PR to check off each item, then confirm all items pass"
)

COMMIT_FOLLOW_UP = "Now commit your changes, push, and create a pull request"

RESPONSE_FORMAT = (
    "Respond with ONLY a JSON object:\n"
    '{"action": "respond|complete|escalate|ignore", "response": "...", '
    '"useKeys": false, "keys": [], "reasoning": "..."}'
)


@dataclass
class CoordinatorPrompts:
    """Tunable wording shared by all three coordination prompts."""
    persona: str = (
        "You are the coordinator of a swarm of terminal coding agents, "
        "supervising them on behalf of a human operator."
    )
    escalate_guidance: str = (
        "The prompt requires human judgment (design decisions, ambiguous "
        "requirements, security-sensitive actions). Do NOT respond yourself."
    )
    ignore_guidance: str = (
        "The prompt is not actually blocking or is already being handled."
    )
    # Appended verbatim to every guideline list.
    extra_guidelines: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CoordinatorPrompts:
        known = {f.name for f in fields(cls)}
        values: dict[str, str] = {}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning("Unknown prompts key %r ignored", key)
                continue
            values[key] = str(value).strip()
        return cls(**values)

    def guidelines(self) -> str:
        extra = self.extra_guidelines.strip()
        if not extra:
            return ""
        lines = [line.strip() for line in extra.splitlines() if line.strip()]
        return "".join(
            f"{line if line.startswith('-') else '- ' + line}\n" for line in lines
        )


def _header(task: TaskContext, prompts: CoordinatorPrompts, situation: str) -> str:
    return (
        f"{prompts.persona} "
        f'A {task.agent_type} coding agent ("{task.label}", session: {task.session_id}) '
        f"{situation}\n\n"
        f'Original task: "{task.original_task}"\n'
        f"Working directory: {task.workdir}\n"
    )


def format_history(history: Sequence[DecisionRecord]) -> str:
    if not history:
        return ""
    lines = []
    for index, record in enumerate(history[-5:], start=1):
        response = f' ("{record.response}")' if record.response else ""
        lines.append(
            f'  {index}. [{record.event.value}] prompt="{record.prompt_text}" '
            f"-> {record.action.value}{response}: {record.reasoning}"
        )
    return "\nPrevious decisions for this session:\n" + "\n".join(lines) + "\n"


def _output_block(title: str, output: str, output_chars: int) -> str:
    tail = output[-output_chars:] if output_chars > 0 else output
    return f"\n{title}:\n---\n{tail}\n---\n\n"


def build_coordination_prompt(
    task: TaskContext,
    prompt_text: str,
    recent_output: str,
    history: Sequence[DecisionRecord] = (),
    prompts: CoordinatorPrompts | None = None,
    *,
    output_chars: int = DEFAULT_OUTPUT_CHARS,
) -> str:
    """Prompt for an agent that is blocked on an undetected or unmatched prompt."""
    prompts = prompts or CoordinatorPrompts()
    return (
        _header(task, prompts, "is blocked and waiting for input.")
        + format_history(history)
        + _output_block("Recent terminal output", recent_output, output_chars)
        + "The agent is showing this blocking prompt:\n"
        f'"{prompt_text}"\n\n'
        "Decide how to respond. Your options:\n\n"
        '1. "respond": Send a response to unblock the agent. For text prompts '
        '(Y/n, questions), set "response" to the text to send. For TUI menus or '
        'interactive prompts that need special keys, set "useKeys": true and '
        '"keys" to the key sequence (e.g. ["enter"], ["down","enter"], ["y","enter"]).\n\n'
        '2. "complete": The original task has been fulfilled. The agent has finished '
        "its work (e.g. code written, PR created, tests passed) and is back at the "
        "idle prompt. Use this when the terminal output shows the task objectives "
        "have been met.\n\n"
        f'3. "escalate": {prompts.escalate_guidance}\n\n'
        f'4. "ignore": {prompts.ignore_guidance}\n\n'
        "Guidelines:\n"
        '- For tool approval prompts (file writes, shell commands, etc.), respond "y" '
        'or use keys:["enter"] to approve.\n'
        '- For Y/n confirmations that align with the original task, respond "y".\n'
        "- For design questions or choices that could go either way, escalate.\n"
        "- For error recovery prompts, try to respond if the path forward is clear.\n"
        '- If the output shows a PR was just created (e.g. "Created pull request #N"), '
        f'do NOT use "complete" yet. Instead respond with "{PR_FOLLOW_UP}".\n'
        '- Only use "complete" if the agent confirmed it verified ALL test plan items '
        "after creating the PR.\n"
        "- When in doubt, escalate. Asking the human beats a wrong choice.\n"
        + prompts.guidelines()
        + "\n"
        + RESPONSE_FORMAT
    )


def build_idle_check_prompt(
    task: TaskContext,
    recent_output: str,
    idle_minutes: int,
    check_number: int,
    max_checks: int,
    history: Sequence[DecisionRecord] = (),
    prompts: CoordinatorPrompts | None = None,
    *,
    output_chars: int = DEFAULT_OUTPUT_CHARS,
) -> str:
    """Prompt for a session that produced no events or output for a while."""
    prompts = prompts or CoordinatorPrompts()
    return (
        _header(
            task, prompts,
            f"has been idle for {idle_minutes} minutes with no events or output changes.",
        )
        + f"Idle check: {check_number} of {max_checks} "
        f"(session will be force-escalated after {max_checks})\n"
        + format_history(history)
        + _output_block("Recent terminal output", recent_output, output_chars)
        + "The session has gone silent. Analyze the terminal output and decide:\n\n"
        '1. "complete": The task is done. The output shows the objectives were met '
        "(e.g. PR created, code written, tests passed) and the agent is back at the "
        "idle prompt.\n\n"
        '2. "respond": The agent appears stuck or waiting for input that was not '
        'detected as a blocking prompt. Send a message to nudge it (e.g. "continue", '
        "or answer a question visible in the output).\n\n"
        f'3. "escalate": Something looks wrong or unclear. {prompts.escalate_guidance}\n\n'
        '4. "ignore": The agent is still actively working (e.g. compiling, running '
        "tests, generating code). The idle period is expected and it will produce "
        "output soon.\n\n"
        "Guidelines:\n"
        "- If the output ends with a command prompt ($ or >) and the task objectives "
        'are met, use "complete".\n'
        "- If the output shows an error or the agent seems stuck in a loop, escalate.\n"
        '- If the agent is clearly mid-operation (build output, test runner), use "ignore".\n'
        f"- This is check {check_number} of {max_checks}. If unsure, lean toward "
        '"escalate" rather than "ignore".\n'
        + prompts.guidelines()
        + "\n"
        + RESPONSE_FORMAT
    )


def build_turn_complete_prompt(
    task: TaskContext,
    turn_output: str,
    history: Sequence[DecisionRecord] = (),
    prompts: CoordinatorPrompts | None = None,
    *,
    output_chars: int = DEFAULT_OUTPUT_CHARS,
) -> str:
    """Prompt asking whether a finished turn finishes the whole task.

    Default bias is "respond": most turns are intermediate steps.
    """
    prompts = prompts or CoordinatorPrompts()
    pr_note = ""
    if mentions_pull_request(turn_output):
        pr_note = (
            "NOTE: This turn created a pull request. You may NOT use \"complete\" "
            f'on this turn. Respond with "{PR_FOLLOW_UP}".\n\n'
        )
    return (
        _header(
            task, prompts,
            "just finished a turn and is back at the idle prompt waiting for input.",
        )
        + format_history(history)
        + _output_block("Output from this turn", turn_output, output_chars)
        + pr_note
        + "The agent completed a turn. Decide if the OVERALL task is done or if "
        "more work is needed.\n\n"
        "IMPORTANT: Coding agents work in multiple turns. A single turn completing "
        "does NOT mean the task is done. You must verify that EVERY objective in the "
        'original task has been addressed in the output before declaring "complete".\n\n'
        "Your options:\n\n"
        '1. "respond": The agent finished a step but the overall task is NOT done '
        'yet. Send a follow-up instruction to continue. Set "response" to the next '
        'instruction (e.g. "Now run the tests", "Create a PR with these changes", '
        '"Continue with the next part"). THIS IS THE DEFAULT: most turns are '
        "intermediate steps, not the final result.\n\n"
        '2. "complete": The original task objectives have ALL been fully met. For '
        "repo-based tasks, this means code was written, changes were committed, "
        "pushed, AND a pull request was created. Only use this when you can point "
        "to specific evidence in the output for EVERY objective.\n\n"
        f'3. "escalate": You are unsure whether the task is complete. {prompts.escalate_guidance}\n\n'
        '4. "ignore": Should not normally be used here.\n\n'
        "Guidelines:\n"
        '- BEFORE choosing "complete", enumerate each objective from the original '
        "task and verify evidence in the output. If ANY objective lacks evidence, "
        'use "respond" with the missing work.\n'
        "- A PR being created does NOT mean the task is done. Check that the PR "
        "covers ALL requested changes.\n"
        "- If the task mentions multiple features or fixes, verify EACH one is "
        "addressed, not just the first.\n"
        "- If the agent only analyzed code or read files, it has not done the actual "
        "work yet. Send a follow-up.\n"
        "- If the agent wrote code but did not test it and testing seems appropriate, "
        "ask it to run tests.\n"
        "- If the output shows errors or failed tests, send a follow-up to fix them.\n"
        "- If the working directory is a git repository clone (not a scratch dir), "
        "the agent MUST commit its changes, push them, and create a pull request "
        'before the task can be "complete". If the output only shows code edits with '
        f'no git commit or PR, respond with "{COMMIT_FOLLOW_UP}".\n'
        '- Creating a PR is NEVER the final step. After you see "Created pull request" '
        f'or a PR URL in the output, respond with "{PR_FOLLOW_UP}". NEVER mark as '
        '"complete" on the same turn that a PR was created.\n'
        '- Only mark as "complete" AFTER the agent has confirmed it verified the test '
        'plan items (look for output like "all items pass", "verified", "checked off").\n'
        "- Keep follow-up instructions concise and specific.\n"
        '- Default to "respond": only use "complete" when you are certain ALL '
        "work is done.\n"
        + prompts.guidelines()
        + "\n"
        + RESPONSE_FORMAT
    )


def build_retry_prompt(prompt: str, previous_answer: str) -> str:
    """Re-ask after an answer that did not parse."""
    preview = (previous_answer or "").strip()[:300] or "(empty)"
    return (
        f"{prompt}\n\n"
        "Your previous answer could not be parsed as a valid decision:\n"
        f"---\n{preview}\n---\n"
        'Answer again with ONLY the JSON object. "respond" needs a "response" '
        'string, or "useKeys": true with a non-empty "keys" list.'
    )


def parse_coordination_response(text: str) -> CoordinationDecision | None:
    """Parse the reasoning call's answer; None when it is not a valid decision."""
    data = extract_json_object(text or "")
    if data is None:
        return None
    try:
        action = DecisionAction(str(data.get("action", "")).strip().lower())
    except ValueError:
        return None
    if action not in REASONING_ACTIONS:
        return None

    reasoning = data.get("reasoning")
    decision = CoordinationDecision(
        action=action,
        reasoning=str(reasoning) if reasoning else "No reasoning provided",
    )
    if action is not DecisionAction.RESPOND:
        return decision

    use_keys = data.get("useKeys", data.get("use_keys"))
    keys = data.get("keys")
    response = data.get("response")
    if use_keys and isinstance(keys, list) and keys:
        decision.use_keys = True
        decision.keys = [str(k) for k in keys]
    elif isinstance(response, str):
        decision.response = response
    else:
        return None
    return decision


def parse_coordination_response_or_raise(text: str) -> CoordinationDecision:
    decision = parse_coordination_response(text)
    if decision is None:
        raise UnparseableDecisionError(text or "")
    return decision
