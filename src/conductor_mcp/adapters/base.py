"""Adapter contract shared by every agent backend."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator

from ..memory.models import ContextData

logger = logging.getLogger(__name__)


class AdapterError(RuntimeError):
    """Base class for adapter errors."""


class AdapterNotReadyError(AdapterError):
    """Raised when a backend is missing its binary, library, or credentials."""

    def __init__(self, message: str, instructions: list[str] | None = None) -> None:
        self.instructions = list(instructions or [])
        if self.instructions:
            message = message + "\n\n" + "\n".join(f"- {line}" for line in self.instructions)
        super().__init__(message)


class StreamEventType(str, Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    TOOL = "tool"
    RESULT = "result"
    ERROR = "error"
    VALIDATION = "validation"
    FEEDBACK = "feedback"


TERMINAL_EVENT_TYPES = frozenset({StreamEventType.RESULT, StreamEventType.ERROR})


@dataclass(slots=True)
class StreamEvent:
    """One normalized unit of backend output."""

    type: StreamEventType
    thread_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "thread_id": self.thread_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


@dataclass(slots=True)
class AdapterConfig:
    credential: str
    working_dir: Path
    mode: str = "smart"
    model: str | None = None
    permissions: list[dict[str, Any]] | None = None


@dataclass(slots=True)
class ExecuteRequest:
    prompt: str
    thread_id: str | None = None
    context: ContextData | None = None
    permissions: list[dict[str, Any]] | None = None


@dataclass(slots=True)
class AdapterCapabilities:
    supports_threads: bool
    supported_modes: tuple[str, ...]
    max_concurrent_agents: int
    supports_permissions: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "supports_threads": self.supports_threads,
            "supported_modes": list(self.supported_modes),
            "max_concurrent_agents": self.max_concurrent_agents,
            "supports_permissions": self.supports_permissions,
        }


def new_thread_id(prefix: str) -> str:
    """Return a backend-namespaced id such as ``cursor-1700000000000-k3j9x2a``."""

    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)[:7]}"


class CLIAdapter(ABC):
    """Uniform contract around one external agent backend.

    ``execute`` returns an async iterator of :class:`StreamEvent` that always
    ends with exactly one ``result`` or ``error`` event. Backend failures are
    converted into a terminal ``error`` event instead of propagating. Callers
    may abandon the iterator early; closing it releases backend resources.
    """

    name: str = "adapter"
    display_name: str = "Adapter"
    thread_prefix: str = "thread"

    def __init__(self) -> None:
        self._config: AdapterConfig | None = None
        self._threads: dict[str, Path] = {}

    @property
    def config(self) -> AdapterConfig:
        if self._config is None:
            raise AdapterError(f"{self.display_name} adapter has not been initialized")
        return self._config

    @property
    def initialized(self) -> bool:
        return self._config is not None

    async def initialize(self, config: AdapterConfig) -> None:
        self._config = config

    async def create_thread(self, working_dir: Path | str) -> str:
        thread_id = new_thread_id(self.thread_prefix)
        self._threads[thread_id] = Path(working_dir)
        return thread_id

    async def resume_thread(self, thread_id: str) -> None:
        return None

    @abstractmethod
    async def stop_thread(self, thread_id: str) -> None:
        ...

    @abstractmethod
    def get_capabilities(self) -> AdapterCapabilities:
        ...

    @abstractmethod
    def _stream(self, request: ExecuteRequest, thread_id: str) -> AsyncIterator[StreamEvent]:
        """Yield backend events for one invocation."""

    def working_dir_for(self, thread_id: str) -> Path:
        return self._threads.get(thread_id, self.config.working_dir)

    def event(
        self, kind: StreamEventType, thread_id: str, **payload: Any
    ) -> StreamEvent:
        return StreamEvent(type=kind, thread_id=thread_id, payload=payload)

    async def execute(self, request: ExecuteRequest) -> AsyncIterator[StreamEvent]:
        thread_id = request.thread_id or await self.create_thread(self.config.working_dir)
        try:
            async with aclosing(self._stream(request, thread_id)) as stream:
                async for event in stream:
                    yield event
                    if event.is_terminal:
                        return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "Adapter stream failed",
                extra={"adapter": self.name, "thread_id": thread_id},
            )
            yield self.event(
                StreamEventType.ERROR,
                thread_id,
                error=str(exc) or exc.__class__.__name__,
                exception=exc.__class__.__name__,
            )
            return

        yield self.event(
            StreamEventType.ERROR,
            thread_id,
            error=f"{self.display_name} stream ended without a terminal event",
        )


__all__ = [
    "AdapterCapabilities",
    "AdapterConfig",
    "AdapterError",
    "AdapterNotReadyError",
    "CLIAdapter",
    "ExecuteRequest",
    "StreamEvent",
    "StreamEventType",
    "TERMINAL_EVENT_TYPES",
    "new_thread_id",
]
