"""Optional Chroma-backed journal of sessions and worktrees."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import SessionTrackingRecord, WorktreeRecord

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "SessionTrackingRecord",
    "WorktreeRecord",
]
