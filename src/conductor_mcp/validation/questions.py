"""Structural checks for generated clarifying questions."""

from __future__ import annotations

from typing import Any

from .result import ValidationIssue, ValidationResult
from .subtasks import _non_empty_string, _type_name


def validate_questions(data: Any) -> ValidationResult:
    """Check ``{"questions": [...]}`` before it is turned into planning data."""

    result = ValidationResult()
    questions = data.get("questions") if isinstance(data, dict) else None
    if not isinstance(questions, list):
        result.errors.append(
            ValidationIssue("questions", f'"questions" must be an array, got {_type_name(questions)}')
        )
        return result

    seen_ids: set[str] = set()
    for index, question in enumerate(questions):
        prefix = f"questions[{index}]"
        if not isinstance(question, dict):
            result.errors.append(ValidationIssue(prefix, f"Expected object, got {_type_name(question)}", prefix))
            continue

        question_id = question.get("id")
        label_id = question_id if _non_empty_string(question_id) else prefix
        for name in ("id", "question"):
            if not _non_empty_string(question.get(name)):
                result.errors.append(
                    ValidationIssue(
                        f"{prefix}.{name}",
                        f'Missing or invalid "{name}" (must be a non-empty string)',
                        label_id,
                    )
                )

        options = question.get("options")
        if options is not None and not (
            isinstance(options, list) and all(isinstance(option, str) for option in options)
        ):
            result.errors.append(
                ValidationIssue(f"{prefix}.options", '"options" must be an array of strings', label_id)
            )

        required = question.get("required")
        if required is not None and not isinstance(required, bool):
            result.errors.append(
                ValidationIssue(f"{prefix}.required", '"required" must be a boolean', label_id)
            )

        if _non_empty_string(question_id):
            if question_id in seen_ids:
                result.errors.append(
                    ValidationIssue(f"{prefix}.id", f'Duplicate ID "{question_id}" found.', label_id)
                )
            seen_ids.add(question_id)

    return result


def describe_issues(result: ValidationResult) -> str:
    return "; ".join(f"{issue.field}: {issue.issue}" for issue in result.errors)


__all__ = ["describe_issues", "validate_questions"]
