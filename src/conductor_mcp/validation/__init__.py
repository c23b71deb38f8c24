"""JSON recovery and structural validators for generated artifacts."""

from .json_recovery import (
    NO_JSON_FOUND,
    RecoveryResult,
    extract_and_validate_json,
    extract_first_json,
)
from .plan import generate_plan_feedback, validate_plan_markdown
from .questions import describe_issues, validate_questions
from .result import ValidationIssue, ValidationResult
from .subtasks import generate_validation_feedback, infer_subtask_type, validate_subtasks

__all__ = [
    "NO_JSON_FOUND",
    "RecoveryResult",
    "ValidationIssue",
    "ValidationResult",
    "describe_issues",
    "extract_and_validate_json",
    "extract_first_json",
    "generate_plan_feedback",
    "generate_validation_feedback",
    "infer_subtask_type",
    "validate_plan_markdown",
    "validate_questions",
    "validate_subtasks",
]
