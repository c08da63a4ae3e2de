"""Extract the first top-level JSON object from free-form model output."""
from __future__ import annotations

import json
from typing import Any


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first ``{...}`` in *text* that parses as a JSON object.

    Prose before and after the object is tolerated, as are code fences.
    Braces inside JSON strings are respected when scanning.
    """
    if not text:
        return None
    start = text.find("{")
    while start != -1:
        end = _matching_brace(text, start)
        parsed = None
        if end is not None:
            try:
                parsed = json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                pass
        if isinstance(parsed, dict):
            return parsed
        start = text.find("{", start + 1)
    return None


def _matching_brace(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None
