"""Structural checks for generated plan markdown."""

from __future__ import annotations

import json
import re
from typing import Any

from .result import ValidationIssue, ValidationResult

REQUIRED_SECTIONS: tuple[tuple[str, str], ...] = (
    ("Overview", "overview"),
    ("Technical Approach", "technical_approach"),
    ("Implementation Steps", "implementation_steps"),
    ("Files to Modify", "files_to_modify"),
    ("Testing Strategy", "testing_strategy"),
    ("Potential Issues", "potential_issues"),
    ("Success Criteria", "success_criteria"),
)
MIN_PLAN_LENGTH = 400

_TITLE = re.compile(r"^#\s+.+", re.MULTILINE)
_NUMBERED_STEP = re.compile(r"^\s*\d+\.\s+\S+", re.MULTILINE)
_PATH_BULLET = re.compile(r"^[-*]\s+`?[./\w-]+/[\w./-]+`?")

PLAN_TEMPLATE = """# Implementation Plan

## Overview
...

## Technical Approach
...

## Implementation Steps
1. ...
2. ...

## Files to Modify
- src/...

## Testing Strategy
...

## Potential Issues
...

## Success Criteria
..."""


def _heading_pattern(heading: str) -> re.Pattern[str]:
    return re.compile(rf"^##\s+{re.escape(heading)}\s*$", re.IGNORECASE | re.MULTILINE)


def extract_section(markdown: str, heading: str) -> str | None:
    """Return the body under ``## heading`` up to the next ``## `` heading."""

    match = _heading_pattern(heading).search(markdown)
    if match is None:
        return None
    rest = markdown[match.end() :]
    following = re.search(r"^##\s+", rest, re.MULTILINE)
    body = rest[: following.start()] if following else rest
    return body.strip()


def validate_plan_markdown(plan: Any) -> ValidationResult:
    result = ValidationResult()

    if not isinstance(plan, str) or not plan.strip():
        result.errors.append(
            ValidationIssue("plan", 'Missing or invalid "plan" (must be a non-empty markdown string)')
        )
        return result

    markdown = plan.strip()

    if not _TITLE.search(markdown):
        result.warnings.append(
            "Missing top-level title (recommend starting with `# Implementation Plan`)."
        )

    for heading, key in REQUIRED_SECTIONS:
        if not _heading_pattern(heading).search(markdown):
            result.errors.append(
                ValidationIssue(f"section:{key}", f'Missing required section heading: "## {heading}"')
            )

    steps = extract_section(markdown, "Implementation Steps")
    if steps is not None and len(_NUMBERED_STEP.findall(steps)) < 2:
        result.errors.append(
            ValidationIssue(
                "section:implementation_steps",
                "Implementation Steps must include a numbered list (e.g., `1. ...`, `2. ...`).",
            )
        )

    files = extract_section(markdown, "Files to Modify")
    if files is not None:
        bullets = [line.strip() for line in files.splitlines() if re.match(r"^\s*[-*]\s+", line)]
        if not any(_PATH_BULLET.match(bullet) for bullet in bullets):
            result.warnings.append(
                "Files to Modify should include bullet points with file paths (e.g., `- src/app/module.py`)."
            )

    if len(markdown) < MIN_PLAN_LENGTH:
        result.warnings.append(
            f"Plan looks very short ({len(markdown)} chars). Consider adding more detail."
        )

    return result


def generate_plan_feedback(result: ValidationResult) -> str:
    parts: list[str] = []
    if result.errors:
        parts.append("VALIDATION ERRORS - Please fix these issues:\n")
        for number, error in enumerate(result.errors, start=1):
            parts.append(f"{number}. [{error.field}] {error.issue}")

    if result.warnings:
        parts.append("\nWARNINGS (not critical, but recommended):\n")
        for number, warning in enumerate(result.warnings, start=1):
            parts.append(f"{number}. {warning}")

    parts.append("\nRequired output format: return ONLY valid JSON (no markdown fences) in the shape:\n")
    parts.append(json.dumps({"plan": PLAN_TEMPLATE}, indent=2))
    return "\n".join(parts)


__all__ = [
    "PLAN_TEMPLATE",
    "REQUIRED_SECTIONS",
    "extract_section",
    "generate_plan_feedback",
    "validate_plan_markdown",
]
