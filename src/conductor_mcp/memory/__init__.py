"""Contextual memory shared with agents."""

from .loader import MemoryLoadError, MemoryLoader
from .models import ContextData, HistoryEntry, KnownIssue, LearnedPattern

__all__ = [
    "ContextData",
    "HistoryEntry",
    "KnownIssue",
    "LearnedPattern",
    "MemoryLoadError",
    "MemoryLoader",
]
