"""Git worktree isolation for tasks."""

from .cleanup import PLANNING_ARTIFACTS, PLAN_ARTIFACTS, QUESTION_ARTIFACTS, remove_planning_artifacts
from .manager import (
    CleanupReport,
    GitCommandResult,
    WorktreeError,
    WorktreeInfo,
    WorktreeManager,
    WorktreeStatus,
)

__all__ = [
    "CleanupReport",
    "GitCommandResult",
    "PLANNING_ARTIFACTS",
    "PLAN_ARTIFACTS",
    "QUESTION_ARTIFACTS",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "WorktreeStatus",
    "remove_planning_artifacts",
]
