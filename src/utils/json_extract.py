from __future__ import annotations

import json
import re


class JSONExtractionError(ValueError):
    pass


_FENCE_RE = re.compile(r"```(?:json)?\s*\n(?P<body>.*?)```", re.DOTALL | re.IGNORECASE)


def _matching_bracket_span(text: str, start: int) -> str | None:
    """Substring from `text[start] == "["` to its matching "]", skipping string literals."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def extract_first_json_array(text: str) -> list:
    """Extract a JSON array from free-form agent output.

    Tried in order: the whole text, a fenced ```json block, then the first
    bracket-balanced `[...]` substring.
    """
    s = (text or "").strip()
    if not s:
        raise JSONExtractionError("Empty text.")

    candidates: list[str] = [s]
    fence = _FENCE_RE.search(s)
    if fence is not None:
        candidates.append(fence.group("body").strip())
    start = s.find("[")
    if start != -1:
        span = _matching_bracket_span(s, start)
        if span is not None:
            candidates.append(span)

    for candidate in candidates:
        try:
            obj = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, list):
            return obj
    raise JSONExtractionError("No JSON array found in text.")
