"""Bounded pool of agent sessions bound to one adapter."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

from ..adapters.base import CLIAdapter, ExecuteRequest, StreamEvent, StreamEventType
from ..memory.models import ContextData

logger = logging.getLogger(__name__)

SessionStatus = Literal["running", "completed", "error", "stopped"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentManagerError(RuntimeError):
    """Base class for agent pool errors."""


class CapacityExceededError(AgentManagerError):
    def __init__(self, capacity: int) -> None:
        super().__init__(f"Maximum {capacity} concurrent agents reached")
        self.capacity = capacity


class AgentNotFoundError(AgentManagerError):
    def __init__(self, thread_id: str) -> None:
        super().__init__(f"Agent thread '{thread_id}' not found")
        self.thread_id = thread_id


@dataclass(slots=True)
class AgentLogEntry:
    timestamp: datetime
    type: str
    content: Any

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "type": self.type, "content": self.content}


@dataclass(slots=True)
class AgentSession:
    thread_id: str
    task_id: str
    provider: str
    working_dir: Path
    status: SessionStatus = "running"
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    logs: list[AgentLogEntry] = field(default_factory=list)
    output: str = ""
    error: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    def to_dict(self, *, include_logs: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "thread_id": self.thread_id,
            "task_id": self.task_id,
            "provider": self.provider,
            "working_dir": str(self.working_dir),
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "output": self.output,
            "error": self.error,
            "log_count": len(self.logs),
        }
        if include_logs:
            data["logs"] = [entry.to_dict() for entry in self.logs]
        return data


@dataclass(slots=True)
class AgentCompletion:
    thread_id: str
    task_id: str
    success: bool
    output: str
    error: str | None = None


CompletionCallback = Callable[[AgentCompletion], Awaitable[None] | None]


class SessionObserver:
    """Receives session lifecycle and event notifications; override what you need."""

    def on_started(self, session: AgentSession) -> None:
        return None

    def on_event(self, session: AgentSession, event: StreamEvent) -> None:
        return None

    def on_finished(self, session: AgentSession) -> None:
        return None


class AgentManager:
    """Run up to ``max_concurrent_agents`` sessions against a single adapter.

    Every session gets one background task that drains ``adapter.execute``.
    Sessions leave the active set as soon as they reach a terminal state but
    stay in the history so their thread ids remain queryable.
    """

    def __init__(
        self,
        adapter: CLIAdapter,
        *,
        provider: str,
        working_dir: Path,
        max_concurrent_agents: int | None = None,
        observers: list[SessionObserver] | None = None,
    ) -> None:
        self._adapter = adapter
        self._provider = provider
        self._working_dir = Path(working_dir)
        self._capacity = max_concurrent_agents or adapter.get_capabilities().max_concurrent_agents
        self._observers: list[SessionObserver] = list(observers or [])
        self._sessions: dict[str, AgentSession] = {}
        self._active: set[str] = set()
        self._consumers: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    @property
    def adapter(self) -> CLIAdapter:
        return self._adapter

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def working_dir(self) -> Path:
        return self._working_dir

    @property
    def capacity(self) -> int:
        return self._capacity

    def add_observer(self, observer: SessionObserver) -> None:
        self._observers.append(observer)

    async def start_agent(
        self,
        task_id: str,
        prompt: str,
        *,
        working_dir: Path | None = None,
        context: ContextData | None = None,
        permissions: list[dict[str, Any]] | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> str:
        cwd = Path(working_dir) if working_dir is not None else self._working_dir
        async with self._lock:
            if len(self._active) >= self._capacity:
                raise CapacityExceededError(self._capacity)
            thread_id = await self._adapter.create_thread(cwd)
            session = AgentSession(
                thread_id=thread_id,
                task_id=task_id,
                provider=self._provider,
                working_dir=cwd,
            )
            self._sessions[thread_id] = session
            self._active.add(thread_id)

        self._notify("on_started", session)
        request = ExecuteRequest(prompt=prompt, thread_id=thread_id, context=context, permissions=permissions)
        self._consumers[thread_id] = asyncio.create_task(
            self._consume(session, request, on_complete), name=f"agent-{thread_id}"
        )
        logger.info(
            "Started agent",
            extra={"thread_id": thread_id, "task_id": task_id, "provider": self._provider},
        )
        return thread_id

    async def _consume(
        self,
        session: AgentSession,
        request: ExecuteRequest,
        on_complete: CompletionCallback | None,
    ) -> None:
        try:
            await self._drain(session, request)
            await self._complete(session, on_complete)
        finally:
            self._consumers.pop(session.thread_id, None)

    async def _drain(self, session: AgentSession, request: ExecuteRequest) -> None:
        try:
            async with aclosing(self._adapter.execute(request)) as stream:
                async for event in stream:
                    if not session.is_running:
                        break
                    self._record(session, event)
                    if event.type is StreamEventType.RESULT:
                        if not session.output:
                            session.output = str(event.payload.get("output") or "")
                        self._finish(session, "completed")
                        break
                    if event.type is StreamEventType.ERROR:
                        self._finish(session, "error", str(event.payload.get("error") or "Agent error"))
                        break
        except asyncio.CancelledError:
            if session.is_running:
                self._finish(session, "stopped")
            raise
        except Exception as exc:
            logger.exception("Agent consumer failed", extra={"thread_id": session.thread_id})
            if session.is_running:
                self._finish(session, "error", str(exc) or exc.__class__.__name__)

        if session.is_running:
            self._finish(session, "error", "Agent stream ended without a terminal event")

    async def _complete(self, session: AgentSession, on_complete: CompletionCallback | None) -> None:
        if session.status == "stopped" or on_complete is None:
            return

        completion = AgentCompletion(
            thread_id=session.thread_id,
            task_id=session.task_id,
            success=session.status == "completed",
            output=session.output,
            error=session.error,
        )
        try:
            outcome = on_complete(completion)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Completion callback failed", extra={"thread_id": session.thread_id})

    def _record(self, session: AgentSession, event: StreamEvent) -> None:
        if event.type is StreamEventType.ASSISTANT:
            content: Any = str(event.payload.get("content", ""))
            session.output = f"{session.output}\n{content}" if session.output else content
        else:
            content = dict(event.payload)
        session.logs.append(AgentLogEntry(timestamp=event.timestamp, type=event.type.value, content=content))
        self._notify("on_event", session, event)

    def _finish(self, session: AgentSession, status: SessionStatus, error: str | None = None) -> None:
        session.status = status
        session.completed_at = _utcnow()
        if error:
            session.error = error
        self._active.discard(session.thread_id)
        self._notify("on_finished", session)
        logger.info(
            "Agent finished",
            extra={"thread_id": session.thread_id, "task_id": session.task_id, "status": status},
        )

    def _notify(self, hook: str, *args: Any) -> None:
        for observer in self._observers:
            try:
                getattr(observer, hook)(*args)
            except Exception:
                logger.exception("Session observer failed", extra={"hook": hook})

    async def stop_agent(self, thread_id: str) -> bool:
        """Stop a running session; returns ``False`` if it had already finished."""

        session = self._sessions.get(thread_id)
        if session is None:
            raise AgentNotFoundError(thread_id)
        if not session.is_running:
            return False

        self._finish(session, "stopped")
        consumer = self._consumers.pop(thread_id, None)
        try:
            await self._adapter.stop_thread(thread_id)
        except Exception:
            logger.exception("Adapter failed to stop thread", extra={"thread_id": thread_id})
        if consumer is not None and not consumer.done():
            consumer.cancel()
        return True

    async def wait_for(self, thread_id: str, timeout: float | None = None) -> AgentSession:
        """Block until the session's consumer task has finished."""

        session = self._sessions.get(thread_id)
        if session is None:
            raise AgentNotFoundError(thread_id)
        consumer = self._consumers.get(thread_id)
        if consumer is not None:
            await asyncio.wait({consumer}, timeout=timeout)
        return session

    async def shutdown(self) -> None:
        for thread_id in list(self._active):
            await self.stop_agent(thread_id)

    def get_agent_status(self, thread_id: str) -> AgentSession | None:
        return self._sessions.get(thread_id)

    def list_active_agents(self) -> list[AgentSession]:
        return [self._sessions[thread_id] for thread_id in self._active]

    def list_sessions(self) -> list[AgentSession]:
        return list(self._sessions.values())

    def get_agents_for_task(self, task_id: str) -> list[AgentSession]:
        return [session for session in self._sessions.values() if session.task_id == task_id]

    def get_capabilities(self) -> dict[str, Any]:
        capabilities = self._adapter.get_capabilities().to_dict()
        capabilities["max_concurrent_agents"] = self._capacity
        capabilities["active_agents"] = len(self._active)
        return capabilities


__all__ = [
    "AgentCompletion",
    "AgentLogEntry",
    "AgentManager",
    "AgentManagerError",
    "AgentNotFoundError",
    "AgentSession",
    "CapacityExceededError",
    "CompletionCallback",
    "SessionObserver",
    "SessionStatus",
]
