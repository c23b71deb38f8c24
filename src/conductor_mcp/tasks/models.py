"""Task record models shared by the orchestrator and tools."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

WORKFLOW_PHASES: tuple[str, ...] = ("planning", "in_progress", "ai_review", "human_review", "done")

Phase = Literal["planning", "in_progress", "ai_review", "human_review", "done"]
TaskStatus = Literal["pending", "planning", "in_progress", "completed", "blocked"]
SubtaskStatus = Literal["pending", "in_progress", "completed"]
PlanningStatus = Literal[
    "not_started",
    "generating_questions",
    "waiting_for_answers",
    "generating_plan",
    "plan_ready",
    "plan_approved",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_phase(phase: str) -> str | None:
    """Return the phase after ``phase``, or ``None`` at the end of the workflow."""

    try:
        index = WORKFLOW_PHASES.index(phase)
    except ValueError:
        return None
    return WORKFLOW_PHASES[index + 1] if index + 1 < len(WORKFLOW_PHASES) else None


class Subtask(BaseModel):
    id: str
    content: str
    label: str
    active_form: str | None = Field(default=None, alias="activeForm")
    type: Literal["dev", "qa"] = "dev"
    status: SubtaskStatus = "pending"
    completed_at: datetime | None = None

    model_config = ConfigDict(populate_by_name=True)


class PlanningAnswer(BaseModel):
    selected_option: str = Field(default="", alias="selectedOption")
    additional_text: str = Field(default="", alias="additionalText")

    model_config = ConfigDict(populate_by_name=True)


class PlanningQuestion(BaseModel):
    id: str
    question: str
    options: list[str] = Field(default_factory=list)
    required: bool = True
    order: int = 0
    answer: PlanningAnswer | None = None


class PlanningData(BaseModel):
    questions: list[PlanningQuestion] = Field(default_factory=list)
    status: Literal["pending", "completed"] = "pending"
    generated_at: datetime = Field(default_factory=_utcnow)
    answered_at: datetime | None = None


class TaskRecord(BaseModel):
    """One unit of work moving through the workflow."""

    id: str
    title: str
    description: str = ""
    phase: Phase = "planning"
    status: TaskStatus = "pending"
    cli_tool: str | None = None
    requires_human_review: bool = False
    assigned_agent: str | None = None
    worktree_path: str | None = None
    branch_name: str | None = None
    plan_content: str | None = None
    plan_approved: bool = False
    planning_status: PlanningStatus = "not_started"
    planning_data: PlanningData | None = None
    subtasks: list[Subtask] = Field(default_factory=list)
    last_error: str | None = None
    generation_attempts: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized or "/" in normalized or normalized in {".", ".."}:
            raise ValueError("Task id must be a non-empty path-safe string")
        return normalized

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def block(self, error: str | None) -> None:
        self.status = "blocked"
        self.assigned_agent = None
        if error:
            self.last_error = error

    def find_subtask(self, subtask_id: str) -> Subtask | None:
        return next((subtask for subtask in self.subtasks if subtask.id == subtask_id), None)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "phase": self.phase,
            "status": self.status,
            "planning_status": self.planning_status,
            "assigned_agent": self.assigned_agent,
            "worktree_path": self.worktree_path,
            "cli_tool": self.cli_tool,
            "last_error": self.last_error,
            "subtasks": {
                "total": len(self.subtasks),
                "completed": sum(1 for subtask in self.subtasks if subtask.status == "completed"),
            },
            "updated_at": self.updated_at.isoformat(),
        }


__all__ = [
    "PlanningAnswer",
    "PlanningData",
    "PlanningQuestion",
    "Subtask",
    "TaskRecord",
    "WORKFLOW_PHASES",
    "next_phase",
]
