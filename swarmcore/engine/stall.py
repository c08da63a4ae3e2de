"""Stall classification.

When a busy session goes quiet, the session manager asks the
classifier why: finished, waiting on input, still working, or failed.
The answer comes from an injected reasoning function; every failure
mode (timeout, exception, unparseable answer) maps to ``None``, which
means "keep waiting".
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from .ansi import clean_for_chat
from .config import ReasoningFn
from .jsonutil import extract_json_object
from .models import StallClassification, StallState

logger = logging.getLogger(__name__)

_PROMPT = """\
You are monitoring a terminal coding agent ({agent_type}) that has been busy \
but has produced no output for {stall_seconds:.1f} seconds.

Decide which of these best describes the situation:
- "task_complete": the agent finished its work and is back at its input prompt
- "waiting_for_input": the agent is asking a question or waiting on a confirmation
- "still_working": the agent is thinking, running a long command, or streaming slowly
- "error": the agent crashed, hit an unrecoverable error, or is stuck in a failure state

Recent output (last {output_chars} characters, cleaned):
---
{output}
---
{traces}
Respond with ONLY a JSON object:
{{"state": "task_complete|waiting_for_input|still_working|error", "prompt": "the question being asked, if any", "suggestedResponse": "what to answer, if waiting_for_input", "reasoning": "one sentence"}}"""


class StallClassifier:
    def __init__(
        self,
        reason: ReasoningFn,
        *,
        timeout_seconds: float = 15.0,
        output_chars: int = 1500,
        trace_limit: int = 10,
    ) -> None:
        self._reason = reason
        self._timeout = timeout_seconds
        self._output_chars = output_chars
        self._trace_limit = trace_limit

    def build_prompt(
        self,
        recent_output: str,
        stall_duration_ms: float,
        agent_type: str = "unknown",
        traces: Sequence[Any] = (),
    ) -> str:
        output = clean_for_chat(recent_output)[-self._output_chars:]
        trace_block = ""
        bounded = list(traces)[-self._trace_limit:] if self._trace_limit else []
        if bounded:
            trace_block = "Recent completion traces for this session:\n" + "\n".join(
                f"- {entry}" for entry in bounded
            ) + "\n"
        return _PROMPT.format(
            agent_type=agent_type,
            stall_seconds=stall_duration_ms / 1000.0,
            output_chars=self._output_chars,
            output=output or "(no output)",
            traces=trace_block,
        )

    async def classify(
        self,
        session_id: str,
        recent_output: str,
        stall_duration_ms: float,
        *,
        agent_type: str = "unknown",
        traces: Sequence[Any] = (),
    ) -> StallClassification | None:
        prompt = self.build_prompt(recent_output, stall_duration_ms, agent_type, traces)
        try:
            raw = await asyncio.wait_for(self._reason(prompt), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Stall classification for %s timed out after %.1fs",
                session_id, self._timeout,
            )
            return None
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Stall classification for %s failed", session_id)
            return None

        result = parse_stall_classification(raw)
        if result is None:
            logger.warning(
                "Stall classification for %s unparseable: %r",
                session_id, (raw or "")[:200],
            )
        else:
            logger.info(
                "Stall classification for %s: %s (%s)",
                session_id, result.state.value, result.reasoning,
            )
        return result


def parse_stall_classification(text: str) -> StallClassification | None:
    data = extract_json_object(text or "")
    if data is None:
        return None
    try:
        state = StallState(str(data.get("state", "")).strip().lower())
    except ValueError:
        return None
    prompt = data.get("prompt")
    suggested = data.get("suggestedResponse", data.get("suggested_response"))
    return StallClassification(
        state=state,
        prompt=prompt if isinstance(prompt, str) and prompt else None,
        suggested_response=suggested if isinstance(suggested, str) and suggested else None,
        reasoning=str(data.get("reasoning") or ""),
    )
