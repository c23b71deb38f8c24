"""Models for the contextual memory injected into agent prompts."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LearnedPattern(BaseModel):
    """A coding convention the agents should keep following."""

    category: str = Field(..., description="Grouping heading such as 'testing' or 'api'.")
    description: str = Field(..., description="What the pattern is.")
    example: str | None = Field(default=None, description="Optional illustrative snippet.")
    added_at: datetime = Field(default_factory=_utcnow)

    @field_validator("category")
    @classmethod
    def _normalize_category(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Pattern category must not be empty")
        return normalized


class KnownIssue(BaseModel):
    """A gotcha encountered before, with the fix that worked."""

    issue: str
    solution: str
    context: str | None = None
    added_at: datetime = Field(default_factory=_utcnow)


class HistoryEntry(BaseModel):
    """Outcome of an earlier agent run."""

    task_id: str
    phase: str
    success: bool
    duration_ms: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=_utcnow)


class ContextData(BaseModel):
    """Memory bundle passed to adapters alongside the prompt."""

    patterns: list[LearnedPattern] = Field(default_factory=list)
    gotchas: list[KnownIssue] = Field(default_factory=list)
    history: list[HistoryEntry] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.patterns or self.gotchas or self.history)

    def merged(self, other: "ContextData") -> "ContextData":
        return ContextData(
            patterns=[*self.patterns, *other.patterns],
            gotchas=[*self.gotchas, *other.gotchas],
            history=[*self.history, *other.history],
        )


__all__ = ["ContextData", "HistoryEntry", "KnownIssue", "LearnedPattern"]
