"""FastMCP server bootstrap for Conductor."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .adapters.factory import resolve_provider
from .agents import AgentRegistry, StreamLog
from .config import ConductorSettings, get_settings
from .orchestrator import GenerationOrchestrator, SubtaskRunner
from .storage import ChromaStore, ChromaUnavailableError
from .tasks import JsonTaskStore, TaskStore
from .tools import register_tools
from .worktrees import WorktreeManager


def configure_logging(level: str) -> None:
    """Configure root logging for the Conductor server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[ConductorSettings] = None,
    *,
    store: TaskStore | None = None,
    registry: AgentRegistry | None = None,
    journal: ChromaStore | None = None,
    worktrees: WorktreeManager | None = None,
) -> FastMCP:
    """Wire the task store, agent registry, orchestrator and tools into a FastMCP server."""

    settings = settings or get_settings()
    store = store or JsonTaskStore(settings.state_dir / "tasks")

    chroma_metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "conductor_runs",
        "error": None,
    }
    if journal is None and registry is None:
        try:
            journal = ChromaStore(settings.chroma_persist_path)
            journal.ping()
        except ChromaUnavailableError as exc:
            chroma_metadata["error"] = str(exc)
            journal = None
        except Exception as exc:
            logging.getLogger(__name__).warning("Chroma journal disabled", extra={"error": str(exc)})
            chroma_metadata["error"] = str(exc)
            journal = None
    if registry is not None:
        journal = registry.journal
    chroma_metadata["available"] = journal is not None

    if registry is None:
        registry = AgentRegistry(settings, stream_log=StreamLog(settings.state_dir), journal=journal)

    runner = SubtaskRunner(registry, store, settings)
    orchestrator = GenerationOrchestrator(registry, store, settings, runner=runner)
    worktrees = worktrees or WorktreeManager(
        settings.project_dir,
        worktree_dir_name=settings.worktree_dir_name,
        branch_prefix=settings.branch_prefix,
    )

    reconciled = orchestrator.reconcile_on_startup()

    server = FastMCP(
        name="Conductor MCP",
        version=__version__,
        instructions=(
            "Conductor drives autonomous coding agents through planning, subtask generation, "
            "development and review, each task in its own git worktree. Create a task, start "
            "planning, then follow its phase and status with get_task."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        store=store,
        registry=registry,
        orchestrator=orchestrator,
        worktrees=worktrees,
        journal=journal,
    )

    @server.resource(
        "resource://conductor/status",
        name="conductor_status",
        title="Conductor MCP Status",
        description="Provides the current runtime status for the Conductor MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        phase_counts: dict[str, int] = {}
        status_counts: dict[str, int] = {}
        tasks = store.list()
        for task in tasks:
            phase_counts[task.phase] = phase_counts.get(task.phase, 0) + 1
            status_counts[task.status] = status_counts.get(task.status, 0) + 1

        session_summary = []
        storage_error = None
        if journal is not None:
            try:
                session_summary = [
                    {"thread_id": record.thread_id, "task_id": record.task_id, "status": record.status}
                    for record in journal.list_session_tracking()[-5:]
                ]
            except Exception as exc:
                storage_error = str(exc)

        active = registry.list_active_agents()
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "project_dir": str(settings.project_dir),
            "state_dir": str(settings.state_dir),
            "default_provider": resolve_provider(settings.default_provider).value,
            "agents": {
                "active": len(active),
                "max_concurrent_agents": settings.max_concurrent_agents,
                "threads": [session.thread_id for session in active],
            },
            "tasks": {
                "count": len(tasks),
                "by_phase": phase_counts,
                "by_status": status_counts,
                "reconciled_on_startup": reconciled,
            },
            "storage": {
                "chroma": chroma_metadata,
                "sessions_preview": session_summary,
                "error": storage_error,
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "settings", settings)
    setattr(server, "task_store", store)
    setattr(server, "agent_registry", registry)
    setattr(server, "orchestrator", orchestrator)
    setattr(server, "worktree_manager", worktrees)
    setattr(server, "chroma_store", journal)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "reconciled_tasks", reconciled)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Conductor MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Conductor MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "project_dir": str(settings.project_dir),
            "default_provider": settings.default_provider,
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
