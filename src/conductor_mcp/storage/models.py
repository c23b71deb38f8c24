"""Records kept in the session journal."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class WorktreeRecord:
    task_id: str
    path: str
    branch: str | None
    recorded_at: datetime
    status: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SessionTrackingRecord:
    """One lifecycle transition of an agent session."""

    thread_id: str
    task_id: str | None
    provider: str
    recorded_at: datetime
    status: str
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in {"completed", "error", "stopped"}


__all__ = ["SessionTrackingRecord", "WorktreeRecord"]
