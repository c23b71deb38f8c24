"""Structural checks for generated subtask lists."""

from __future__ import annotations

import json
from typing import Any

from .result import ValidationIssue, ValidationResult

MAX_RECOMMENDED_SUBTASKS = 20
MIN_CONTENT_LENGTH = 20
MAX_LABEL_LENGTH = 50
SUBTASK_TYPES = ("dev", "qa")

QA_SIGNALS = (
    "validate",
    "verification",
    "verify",
    "qa",
    "test",
    "tests",
    "unit test",
    "integration",
    "e2e",
    "lint",
    "typecheck",
    "type check",
    "run build",
    "build passes",
    "pytest",
    "mypy",
    "cross-check",
    "cross check",
    "review",
)

_EXAMPLE_SHAPE = {
    "subtasks": [
        {
            "id": "subtask-1",
            "content": "Detailed description of work",
            "label": "Short label",
            "activeForm": "Optional: present continuous form",
            "type": 'Optional: "dev" or "qa"',
        }
    ]
}


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object" if isinstance(value, dict) else type(value).__name__


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def validate_subtasks(data: Any) -> ValidationResult:
    """Check ``{"subtasks": [...]}`` against the subtask schema."""

    result = ValidationResult()

    if data is None or data == "":
        result.errors.append(ValidationIssue("root", "Output is empty or null"))
        return result

    if not isinstance(data, dict) or not data.get("subtasks"):
        if isinstance(data, dict) and isinstance(data.get("subtasks"), list):
            result.errors.append(
                ValidationIssue("subtasks", "Subtasks array is empty. Generate at least 1 subtask.")
            )
        else:
            result.errors.append(
                ValidationIssue(
                    "subtasks", 'Missing "subtasks" field. Expected: { "subtasks": [...] }'
                )
            )
        return result

    subtasks = data["subtasks"]
    if not isinstance(subtasks, list):
        result.errors.append(
            ValidationIssue("subtasks", f'"subtasks" must be an array, got {_type_name(subtasks)}')
        )
        return result

    if len(subtasks) > MAX_RECOMMENDED_SUBTASKS:
        result.warnings.append(
            f"Subtasks count is {len(subtasks)}. Recommend keeping it under 15 for better sequential execution."
        )

    seen_ids: set[str] = set()
    for index, subtask in enumerate(subtasks):
        prefix = f"subtasks[{index}]"
        if not isinstance(subtask, dict):
            result.errors.append(
                ValidationIssue(prefix, f"Expected object, got {_type_name(subtask)}", prefix)
            )
            continue

        subtask_id = subtask.get("id")
        label_id = subtask_id if _non_empty_string(subtask_id) else prefix

        for name in ("id", "content", "label"):
            if not _non_empty_string(subtask.get(name)):
                result.errors.append(
                    ValidationIssue(
                        f"{prefix}.{name}",
                        f'Missing or invalid "{name}" (must be a non-empty string)',
                        label_id,
                    )
                )

        active_form = subtask.get("activeForm")
        if active_form and not isinstance(active_form, str):
            result.errors.append(
                ValidationIssue(f"{prefix}.activeForm", 'Invalid "activeForm" (must be a string)', label_id)
            )

        kind = subtask.get("type")
        if kind and kind not in SUBTASK_TYPES:
            result.errors.append(
                ValidationIssue(
                    f"{prefix}.type",
                    f'Invalid "type" value "{kind}". Must be "dev" or "qa".',
                    label_id,
                )
            )

        if _non_empty_string(subtask_id):
            if subtask_id in seen_ids:
                result.errors.append(
                    ValidationIssue(
                        f"{prefix}.id",
                        f'Duplicate ID "{subtask_id}" found. Each subtask must have a unique ID.',
                        label_id,
                    )
                )
            seen_ids.add(subtask_id)

        content = subtask.get("content")
        if isinstance(content, str) and content and len(content) < MIN_CONTENT_LENGTH:
            result.warnings.append(
                f'Subtask "{subtask_id}" has very short content ({len(content)} chars). '
                "Consider providing more details."
            )

        label = subtask.get("label")
        if isinstance(label, str) and len(label) > MAX_LABEL_LENGTH:
            result.warnings.append(
                f'Subtask "{subtask_id}" has a long label ({len(label)} chars). '
                f"Keep labels under {MAX_LABEL_LENGTH} characters."
            )

    return result


def generate_validation_feedback(result: ValidationResult) -> str:
    """Render ``result`` as text to append to a retry prompt."""

    if result.valid and not result.warnings:
        return "Validation successful! All subtasks conform to the required format."

    parts: list[str] = []
    if result.errors:
        parts.append("VALIDATION ERRORS - Please fix these issues:\n")
        for number, error in enumerate(result.errors, start=1):
            suffix = f" ({error.subtask_id})" if error.subtask_id else ""
            parts.append(f"{number}. [{error.field}] {error.issue}{suffix}")

    if result.warnings:
        parts.append("\nWARNINGS (not critical, but recommended to fix):\n")
        for number, warning in enumerate(result.warnings, start=1):
            parts.append(f"{number}. {warning}")

    if not result.errors:
        parts.append("\nValidation PASSED with warnings. Please improve the format as noted above.\n")
    else:
        parts.append("\nPlease review your JSON output. Ensure it matches the required format:\n")
        parts.append(json.dumps(_EXAMPLE_SHAPE, indent=2))

    return "\n".join(parts)


def infer_subtask_type(subtask: dict[str, Any]) -> str:
    """Use the declared type, otherwise guess ``qa`` for verification work."""

    declared = subtask.get("type")
    if declared in SUBTASK_TYPES:
        return declared
    haystack = f"{subtask.get('label') or ''} {subtask.get('content') or ''}".lower()
    return "qa" if any(signal in haystack for signal in QA_SIGNALS) else "dev"


__all__ = [
    "QA_SIGNALS",
    "generate_validation_feedback",
    "infer_subtask_type",
    "validate_subtasks",
]
