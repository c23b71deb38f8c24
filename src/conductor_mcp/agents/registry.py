"""Per-task agent managers and thread bookkeeping."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable

from ..adapters.base import AdapterConfig, AdapterNotReadyError, CLIAdapter, StreamEvent, StreamEventType
from ..adapters.factory import Provider, create_adapter, requires_preflight, resolve_provider
from ..adapters.preflight import PreflightResult, default_probes, run_preflight
from ..config import ConductorSettings
from ..memory import ContextData, MemoryLoader, MemoryLoadError
from ..storage import ChromaStore
from ..tasks.models import TaskRecord
from .manager import AgentCompletion, AgentManager, AgentNotFoundError, AgentSession, SessionObserver
from .stream_log import StreamLog

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Provider, ConductorSettings], CLIAdapter]
PreflightRunner = Callable[[Provider], Awaitable[PreflightResult]]

CREDENTIAL_ENV = {Provider.CLAUDE: "ANTHROPIC_API_KEY", Provider.CURSOR: "CURSOR_API_KEY"}


class _JournalObserver(SessionObserver):
    """Mirrors session traffic into the stream log and the optional Chroma journal."""

    def __init__(self, stream_log: StreamLog | None, journal: ChromaStore | None) -> None:
        self._stream_log = stream_log
        self._journal = journal

    def on_started(self, session: AgentSession) -> None:
        if self._stream_log is not None:
            self._stream_log.index.record(session.thread_id, session.task_id)
        if self._journal is not None:
            self._journal.record_session_tracking(
                thread_id=session.thread_id,
                provider=session.provider,
                status=session.status,
                task_id=session.task_id,
                metadata={"working_dir": str(session.working_dir)},
            )

    def on_event(self, session: AgentSession, event: StreamEvent) -> None:
        if self._stream_log is None:
            return
        if event.type is StreamEventType.ASSISTANT:
            content: Any = event.payload.get("content", "")
        else:
            content = event.payload
        self._stream_log.append(session.task_id, session.thread_id, event.type.value, content)

    def on_finished(self, session: AgentSession) -> None:
        if self._stream_log is not None:
            self._stream_log.write_status(session.task_id, session.thread_id, session.status, session.error)
        if self._journal is not None:
            self._journal.record_session_tracking(
                thread_id=session.thread_id,
                provider=session.provider,
                status=session.status,
                task_id=session.task_id,
                error=session.error,
            )


class AgentRegistry:
    """Owns one :class:`AgentManager` per task and routes thread ids back to them.

    A task's manager is rebuilt whenever the task's provider or working
    directory changes. Threads started on a replaced manager stay reachable
    through the thread map until the registry shuts down.
    """

    def __init__(
        self,
        settings: ConductorSettings,
        *,
        adapter_factory: AdapterFactory | None = None,
        preflight: PreflightRunner | None = None,
        memory_loader: MemoryLoader | None = None,
        stream_log: StreamLog | None = None,
        journal: ChromaStore | None = None,
    ) -> None:
        self._settings = settings
        self._adapter_factory = adapter_factory or create_adapter
        self._preflight = preflight or self._default_preflight
        self._memory_loader = memory_loader or MemoryLoader(settings.memory_paths)
        self._stream_log = stream_log
        self._journal = journal
        self._observer = _JournalObserver(stream_log, journal)
        self._managers: dict[str, AgentManager] = {}
        self._threads: dict[str, tuple[str, AgentManager]] = {}

    @property
    def settings(self) -> ConductorSettings:
        return self._settings

    @property
    def stream_log(self) -> StreamLog | None:
        return self._stream_log

    @property
    def journal(self) -> ChromaStore | None:
        return self._journal

    def resolve_provider(self, name: str | None) -> Provider:
        return resolve_provider(name)

    def provider_for_task(self, task: TaskRecord) -> Provider:
        return resolve_provider(task.cli_tool or self._settings.default_provider)

    def resolve_working_dir(self, task: TaskRecord) -> Path:
        if task.worktree_path:
            return Path(task.worktree_path)
        return self._settings.project_dir

    async def _default_preflight(self, provider: Provider) -> PreflightResult:
        probes = default_probes(
            claude_command=self._settings.claude_cli_command,
            cursor_command=self._settings.cursor_agent_command,
        )
        return await run_preflight(probes[provider.value], timeout=self._settings.preflight_timeout_seconds)

    async def preflight(self, provider: str | Provider | None) -> PreflightResult:
        resolved = resolve_provider(provider)
        if not requires_preflight(resolved):
            return PreflightResult(provider=resolved.value, ready=True, cli_path=None, auth_source="cli_login")
        return await self._preflight(resolved)

    def _adapter_config(self, provider: Provider, working_dir: Path) -> AdapterConfig:
        env_var = CREDENTIAL_ENV.get(provider)
        model = {
            Provider.CLAUDE: self._settings.claude_model,
            Provider.CURSOR: self._settings.cursor_model,
        }.get(provider)
        return AdapterConfig(
            credential=os.environ.get(env_var, "") if env_var else "",
            working_dir=working_dir,
            mode=self._settings.default_mode,
            model=model,
        )

    async def get_manager_for_task(self, task: TaskRecord) -> AgentManager:
        provider = self.provider_for_task(task)
        working_dir = self.resolve_working_dir(task)

        current = self._managers.get(task.id)
        if current is not None and current.provider == provider.value and current.working_dir == working_dir:
            return current

        if requires_preflight(provider):
            result = await self._preflight(provider)
            if not result.ready:
                raise AdapterNotReadyError(f"Provider '{provider.value}' is not ready", result.instructions)

        adapter = self._adapter_factory(provider, self._settings)
        await adapter.initialize(self._adapter_config(provider, working_dir))
        manager = AgentManager(
            adapter,
            provider=provider.value,
            working_dir=working_dir,
            max_concurrent_agents=self._settings.max_concurrent_agents,
            observers=[self._observer],
        )
        if current is not None:
            logger.info(
                "Replacing agent manager",
                extra={
                    "task_id": task.id,
                    "old_provider": current.provider,
                    "provider": provider.value,
                    "working_dir": str(working_dir),
                },
            )
        self._managers[task.id] = manager
        return manager

    def memory_context(self) -> ContextData | None:
        try:
            context = self._memory_loader.load()
        except MemoryLoadError as exc:
            logger.warning("Ignoring unreadable memory files", extra={"error": str(exc)})
            return None
        return None if context.is_empty() else context

    async def start_agent_for_task(
        self,
        task: TaskRecord,
        prompt: str,
        *,
        on_complete: Callable[[AgentCompletion], Any] | None = None,
        context: ContextData | None = None,
        working_dir: Path | None = None,
        permissions: list[dict[str, Any]] | None = None,
    ) -> str:
        manager = await self.get_manager_for_task(task)
        thread_id = await manager.start_agent(
            task.id,
            prompt,
            working_dir=working_dir,
            context=context if context is not None else self.memory_context(),
            permissions=permissions,
            on_complete=on_complete,
        )
        self._threads[thread_id] = (task.id, manager)
        return thread_id

    def get_agent_session_by_thread_id(self, thread_id: str) -> AgentSession | None:
        entry = self._threads.get(thread_id)
        if entry is None:
            return None
        return entry[1].get_agent_status(thread_id)

    def get_task_id_for_thread(self, thread_id: str) -> str | None:
        entry = self._threads.get(thread_id)
        if entry is not None:
            return entry[0]
        return self._stream_log.index.lookup(thread_id) if self._stream_log is not None else None

    def knows_thread(self, thread_id: str) -> bool:
        return thread_id in self._threads

    async def stop_agent_by_thread_id(self, thread_id: str) -> bool | None:
        entry = self._threads.get(thread_id)
        if entry is None:
            return None
        try:
            return await entry[1].stop_agent(thread_id)
        except AgentNotFoundError:
            return None

    async def wait_for_thread(self, thread_id: str, timeout: float | None = None) -> AgentSession | None:
        entry = self._threads.get(thread_id)
        if entry is None:
            return None
        return await entry[1].wait_for(thread_id, timeout=timeout)

    def _all_managers(self) -> list[AgentManager]:
        seen: dict[int, AgentManager] = {id(manager): manager for manager in self._managers.values()}
        for _task_id, manager in self._threads.values():
            seen.setdefault(id(manager), manager)
        return list(seen.values())

    def list_active_agents(self) -> list[AgentSession]:
        return [session for manager in self._all_managers() for session in manager.list_active_agents()]

    def get_agents_for_task(self, task_id: str) -> list[AgentSession]:
        sessions = [session for manager in self._all_managers() for session in manager.get_agents_for_task(task_id)]
        return sorted(sessions, key=lambda session: session.started_at)

    def manager_for(self, task_id: str) -> AgentManager | None:
        return self._managers.get(task_id)

    async def stop_agents_for_task(self, task_id: str) -> list[str]:
        stopped: list[str] = []
        for session in self.get_agents_for_task(task_id):
            if session.is_running and await self.stop_agent_by_thread_id(session.thread_id):
                stopped.append(session.thread_id)
        return stopped

    def forget_task(self, task_id: str) -> None:
        self._managers.pop(task_id, None)

    async def shutdown(self) -> None:
        for manager in self._all_managers():
            await manager.shutdown()


__all__ = ["AdapterFactory", "AgentRegistry", "PreflightRunner"]
