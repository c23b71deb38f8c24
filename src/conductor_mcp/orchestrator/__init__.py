"""Task workflow: planning, subtask generation, development and review."""

from .audit import AuditLog
from .development import SubtaskRunner
from .generation import GenerationAttempt, GenerationError, GenerationOrchestrator

__all__ = [
    "AuditLog",
    "GenerationAttempt",
    "GenerationError",
    "GenerationOrchestrator",
    "SubtaskRunner",
]
