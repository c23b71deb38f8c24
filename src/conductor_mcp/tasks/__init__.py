"""Task records and their storage."""

from .models import (
    PlanningAnswer,
    PlanningData,
    PlanningQuestion,
    Subtask,
    TaskRecord,
    WORKFLOW_PHASES,
    next_phase,
)
from .store import InMemoryTaskStore, JsonTaskStore, TaskNotFoundError, TaskStore, require_task

__all__ = [
    "InMemoryTaskStore",
    "JsonTaskStore",
    "PlanningAnswer",
    "PlanningData",
    "PlanningQuestion",
    "Subtask",
    "TaskNotFoundError",
    "TaskRecord",
    "TaskStore",
    "WORKFLOW_PHASES",
    "next_phase",
    "require_task",
]
