"""Recover the first parseable JSON value from noisy model output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

NO_JSON_FOUND = (
    "No JSON found in output. Ensure you return valid JSON (no markdown fences, no extra text) "
    'in the format: { "subtasks": [...] } or { "plan": "..." }'
)

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_CLOSERS = {"{": "}", "[": "]"}


@dataclass(slots=True)
class RecoveryResult:
    data: Any
    error: str | None

    @property
    def ok(self) -> bool:
        return self.error is None


class _NotFound:
    pass


NOT_FOUND: Any = _NotFound()


def balanced_substring(text: str, start: int) -> str | None:
    """Return the shortest balanced JSON-ish substring starting at ``start``.

    String literals are skipped, honouring backslash escapes, so braces inside
    them never change the depth.
    """

    opener = text[start]
    closer = _CLOSERS.get(opener)
    if closer is None:
        return None

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
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def first_json_in(text: str) -> Any:
    """Return the earliest candidate that parses, or ``NOT_FOUND``."""

    for index, char in enumerate(text):
        if char not in _CLOSERS:
            continue
        candidate = balanced_substring(text, index)
        if candidate is None:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return NOT_FOUND


def extract_first_json(text: str | None) -> Any:
    """Fenced blocks are tried first, in order, then the raw text."""

    if not text:
        return NOT_FOUND
    for match in _FENCE.finditer(text):
        inner = match.group(1).strip()
        if not inner:
            continue
        value = first_json_in(inner)
        if value is not NOT_FOUND:
            return value
    return first_json_in(text)


def extract_and_validate_json(text: str | None) -> RecoveryResult:
    value = extract_first_json(text)
    if value is NOT_FOUND:
        return RecoveryResult(data=None, error=NO_JSON_FOUND)
    return RecoveryResult(data=value, error=None)


__all__ = [
    "NOT_FOUND",
    "NO_JSON_FOUND",
    "RecoveryResult",
    "balanced_substring",
    "extract_and_validate_json",
    "extract_first_json",
]
