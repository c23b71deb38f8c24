"""Agent session pool, registry and stream logs."""

from .manager import (
    AgentCompletion,
    AgentLogEntry,
    AgentManager,
    AgentManagerError,
    AgentNotFoundError,
    AgentSession,
    CapacityExceededError,
    SessionObserver,
)
from .registry import AgentRegistry
from .stream_log import StreamLog, ThreadIndex

__all__ = [
    "AgentCompletion",
    "AgentLogEntry",
    "AgentManager",
    "AgentManagerError",
    "AgentNotFoundError",
    "AgentRegistry",
    "AgentSession",
    "CapacityExceededError",
    "SessionObserver",
    "StreamLog",
    "ThreadIndex",
]
