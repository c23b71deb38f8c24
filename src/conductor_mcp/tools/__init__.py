"""Tool registration for Conductor MCP."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastmcp import Context, FastMCP

from ..adapters.cursor import CursorCLIAdapter
from ..adapters.factory import Provider, available_providers, resolve_provider
from ..agents.registry import AgentRegistry
from ..config import ConductorSettings
from ..orchestrator import GenerationOrchestrator
from ..storage import ChromaStore
from ..tasks.models import TaskRecord
from ..tasks.store import TaskStore, require_task
from ..worktrees import WorktreeManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    create_task: Any
    get_task: Any
    list_tasks: Any
    start_planning: Any
    submit_answers: Any
    approve_plan: Any
    start_development: Any
    start_review: Any
    modify_plan: Any
    retry_plan_parse: Any
    skip_subtask: Any
    delete_subtask: Any
    reorder_subtasks: Any
    stop_agent: Any
    agent_status: Any
    list_active_agents: Any
    read_stream_log: Any
    create_worktree: Any
    delete_worktree: Any
    worktree_status: Any
    list_worktrees: Any
    cleanup_worktrees: Any
    delete_task: Any
    provider_preflight: Any
    list_providers: Any
    list_models: Any


def _task_payload(task: TaskRecord) -> dict[str, Any]:
    return task.model_dump(mode="json", by_alias=True)


def register_tools(
    server: FastMCP,
    *,
    settings: ConductorSettings,
    store: TaskStore,
    registry: AgentRegistry,
    orchestrator: GenerationOrchestrator,
    worktrees: WorktreeManager,
    journal: ChromaStore | None,
) -> ToolHandles:
    """Register Conductor's MCP tools on the server."""

    # -- tasks -------------------------------------------------------------

    def _create_task(
        title: str,
        description: str = "",
        cli_tool: str | None = None,
        requires_human_review: bool = False,
        task_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a task in the planning phase."""

        if not title.strip():
            raise ValueError("title must not be empty")
        if task_id and store.load(task_id) is not None:
            raise ValueError(f"Task '{task_id}' already exists")

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        task = TaskRecord(
            id=task_id or f"task-{stamp}-{uuid4().hex[:6]}",
            title=title.strip(),
            description=description,
            cli_tool=resolve_provider(cli_tool).value if cli_tool else None,
            requires_human_review=requires_human_review,
        )
        store.save(task)

        _emit_log(context, "info", "Created task", extra={"task_id": task.id, "cli_tool": task.cli_tool})
        return _task_payload(task)

    def _get_task(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Return the full task record."""

        return _task_payload(require_task(store, task_id))

    def _list_tasks(
        phase: str | None = None,
        status: str | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List task summaries, optionally filtered by phase and status."""

        tasks = [
            task.summary()
            for task in store.list()
            if (phase is None or task.phase == phase) and (status is None or task.status == status)
        ]
        _emit_log(context, "debug", "Listing tasks", extra={"count": len(tasks)})
        return tasks

    # -- workflow ----------------------------------------------------------

    async def _start_planning(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Start question or plan generation for a task."""

        result = await orchestrator.start_planning(task_id)
        _emit_log(context, "info", "Planning started", extra={"task_id": task_id, **result})
        return {"task_id": task_id, **result}

    async def _submit_answers(
        task_id: str,
        answers: dict[str, dict[str, str]],
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Submit answers keyed by question id and generate the plan."""

        result = await orchestrator.submit_answers(task_id, answers)
        _emit_log(context, "info", "Planning answers submitted", extra={"task_id": task_id, "count": len(answers)})
        return {"task_id": task_id, **result}

    async def _approve_plan(
        task_id: str,
        start_development: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Approve the task's plan, optionally starting subtask generation."""

        result = await orchestrator.approve_plan(task_id, start_development=start_development)
        _emit_log(
            context,
            "info",
            "Plan approved",
            extra={"task_id": task_id, "start_development": start_development},
        )
        return result

    async def _start_development(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Generate subtasks for an approved plan and run them."""

        thread_id = await orchestrator.start_development(task_id)
        _emit_log(context, "info", "Development started", extra={"task_id": task_id, "thread_id": thread_id})
        return {"task_id": task_id, "thread_id": thread_id}

    def _start_review(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Run the QA subtasks of a task in the ai_review phase."""

        orchestrator.start_review(task_id)
        _emit_log(context, "info", "Review started", extra={"task_id": task_id})
        return {"task_id": task_id, "started": True}

    async def _modify_plan(
        task_id: str,
        new_plan: str | None = None,
        feedback: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Replace the plan inline or regenerate it from feedback; the plan then needs approval again."""

        result = await orchestrator.modify_plan(task_id, new_plan=new_plan, feedback=feedback)
        _emit_log(
            context,
            "info",
            "Plan modified",
            extra={"task_id": task_id, "method": "inline" if new_plan is not None else "feedback"},
        )
        return result

    async def _retry_plan_parse(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Recover a task blocked during plan generation."""

        result = await orchestrator.retry_plan_parse(task_id)
        _emit_log(context, "info", "Plan parse retried", extra={"task_id": task_id, "recovered": result["recovered"]})
        return result

    async def _skip_subtask(task_id: str, subtask_id: str, context: Context | None = None) -> dict[str, Any]:
        """Mark an unfinished subtask completed without running it."""

        task = await orchestrator.runner.skip_subtask(task_id, subtask_id)
        _emit_log(context, "info", "Skipped subtask", extra={"task_id": task_id, "subtask_id": subtask_id})
        return task.summary()

    async def _delete_subtask(task_id: str, subtask_id: str, context: Context | None = None) -> dict[str, Any]:
        """Remove an unfinished subtask from a task."""

        task = await orchestrator.runner.delete_subtask(task_id, subtask_id)
        _emit_log(context, "info", "Deleted subtask", extra={"task_id": task_id, "subtask_id": subtask_id})
        return task.summary()

    def _reorder_subtasks(task_id: str, subtask_ids: list[str], context: Context | None = None) -> dict[str, Any]:
        """Reorder a task's subtasks; every subtask id must be listed once."""

        task = orchestrator.runner.reorder_subtasks(task_id, subtask_ids)
        return {"task_id": task_id, "subtask_ids": [subtask.id for subtask in task.subtasks]}

    # -- agents ------------------------------------------------------------

    async def _stop_agent(thread_id: str, context: Context | None = None) -> dict[str, Any]:
        """Stop a running agent thread."""

        stopped = await registry.stop_agent_by_thread_id(thread_id)
        if stopped is None:
            raise ValueError(f"Unknown agent thread '{thread_id}'")

        task_id = registry.get_task_id_for_thread(thread_id)
        if stopped and task_id is not None:
            task = store.load(task_id)
            if task is not None and task.assigned_agent == thread_id:
                task.assigned_agent = None
                if task.status == "planning":
                    task.status = "pending"
                store.save(task)

        _emit_log(context, "info", "Stop requested", extra={"thread_id": thread_id, "stopped": stopped})
        return {"thread_id": thread_id, "task_id": task_id, "stopped": stopped}

    def _agent_status(
        thread_id: str,
        include_logs: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Report a thread's status, falling back to its stream log for earlier runs."""

        session = registry.get_agent_session_by_thread_id(thread_id)
        if session is not None:
            return session.to_dict(include_logs=include_logs)

        task_id = registry.get_task_id_for_thread(thread_id)
        stream_log = registry.stream_log
        if task_id is None or stream_log is None:
            raise ValueError(f"Unknown agent thread '{thread_id}'")

        entries = stream_log.read(thread_id, task_id)
        final = next((entry for entry in reversed(entries) if entry.get("type") == "status"), None)
        payload: dict[str, Any] = {
            "thread_id": thread_id,
            "task_id": task_id,
            "status": final.get("status") if final else "unknown",
            "error": final.get("error") if final else None,
            "log_count": len(entries),
            "source": "stream_log",
        }
        if include_logs:
            payload["logs"] = entries
        return payload

    def _list_active_agents(task_id: str | None = None, context: Context | None = None) -> list[dict[str, Any]]:
        """List running agent sessions."""

        sessions = registry.list_active_agents()
        if task_id is not None:
            sessions = [session for session in sessions if session.task_id == task_id]
        return [session.to_dict() for session in sessions]

    def _read_stream_log(
        thread_id: str,
        task_id: str | None = None,
        limit: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the NDJSON stream log entries for a thread."""

        stream_log = registry.stream_log
        if stream_log is None:
            raise RuntimeError("Stream logging is disabled")
        owner = task_id or registry.get_task_id_for_thread(thread_id)
        entries = stream_log.read(thread_id, owner, limit=limit)
        return {"thread_id": thread_id, "task_id": owner, "entries": entries}

    # -- worktrees ---------------------------------------------------------

    def _record_worktree(task_id: str, path: str, branch: str | None, status: str) -> None:
        if journal is None:
            return
        try:
            journal.record_worktree(task_id=task_id, path=path, branch=branch, status=status)
        except Exception as exc:
            logger.warning("Failed to journal worktree change", extra={"task_id": task_id, "error": str(exc)})

    async def _create_worktree(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Create the task's isolated worktree and branch."""

        task = require_task(store, task_id)
        info = await worktrees.create_worktree(task_id)
        task.worktree_path = str(info.path)
        task.branch_name = info.branch
        store.save(task)
        _record_worktree(task_id, str(info.path), info.branch, "created")

        _emit_log(context, "info", "Created worktree", extra={"task_id": task_id, "path": str(info.path)})
        return info.to_dict()

    async def _delete_worktree(task_id: str, force: bool = False, context: Context | None = None) -> dict[str, Any]:
        """Remove the task's worktree; dirty worktrees need ``force``."""

        deleted = await worktrees.delete_worktree(task_id, force=force)
        task = store.load(task_id)
        if task is not None and task.worktree_path:
            task.worktree_path = None
            store.save(task)
        if deleted:
            path = await worktrees.worktree_path(task_id)
            _record_worktree(task_id, str(path), worktrees.branch_name(task_id), "deleted")

        _emit_log(context, "info", "Deleted worktree", extra={"task_id": task_id, "deleted": deleted})
        return {"task_id": task_id, "deleted": deleted}

    async def _worktree_status(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Report whether the task's worktree exists and has uncommitted changes."""

        status = await worktrees.get_worktree_status(task_id)
        return {"task_id": task_id, **status.to_dict()}

    async def _list_worktrees(context: Context | None = None) -> list[dict[str, Any]]:
        """List task worktrees with dirty and orphan flags."""

        known = [task.id for task in store.list()]
        return [info.to_dict() for info in await worktrees.list_worktrees(known_task_ids=known)]

    async def _cleanup_worktrees(force: bool = False, context: Context | None = None) -> dict[str, Any]:
        """Delete every task worktree, reporting failures per task."""

        report = await worktrees.cleanup_all_worktrees(force=force)
        for task_id in report.deleted:
            task = store.load(task_id)
            if task is not None and task.worktree_path:
                task.worktree_path = None
                store.save(task)
            _record_worktree(task_id, str(await worktrees.worktree_path(task_id)), None, "deleted")

        _emit_log(
            context,
            "info",
            "Cleaned up worktrees",
            extra={"deleted": len(report.deleted), "failed": len(report.failed)},
        )
        return report.to_dict()

    async def _delete_task(
        task_id: str,
        delete_worktree: bool = True,
        force: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Stop the task's agents, optionally remove its worktree, then delete the record."""

        task = require_task(store, task_id)
        stopped = await registry.stop_agents_for_task(task_id)

        worktree_deleted = False
        if delete_worktree and task.worktree_path:
            worktree_deleted = await worktrees.delete_worktree(task_id, force=force)
            if worktree_deleted:
                _record_worktree(task_id, task.worktree_path, task.branch_name, "deleted")

        store.delete(task_id)
        registry.forget_task(task_id)
        if registry.stream_log is not None:
            registry.stream_log.index.forget_task(task_id)
        shutil.rmtree(settings.task_dir(task_id), ignore_errors=True)

        _emit_log(
            context,
            "info",
            "Deleted task",
            extra={"task_id": task_id, "stopped_agents": len(stopped), "worktree_deleted": worktree_deleted},
        )
        return {"task_id": task_id, "deleted": True, "stopped_agents": stopped, "worktree_deleted": worktree_deleted}

    # -- providers ---------------------------------------------------------

    async def _provider_preflight(provider: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """Check whether a provider's CLI and credentials are ready."""

        result = await registry.preflight(provider or settings.default_provider)
        _emit_log(
            context,
            "debug",
            "Provider preflight",
            extra={"provider": result.provider, "ready": result.ready},
        )
        return result.to_dict()

    def _list_providers(context: Context | None = None) -> list[dict[str, Any]]:
        """List the agent backends this server can drive."""

        default = resolve_provider(settings.default_provider).value
        return [{**entry, "default": entry["name"] == default} for entry in available_providers()]

    async def _list_models(provider: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """List models a provider accepts."""

        resolved = resolve_provider(provider or settings.default_provider)
        if resolved is Provider.CURSOR:
            adapter = CursorCLIAdapter(command=settings.cursor_agent_command, model=settings.cursor_model)
            models = await adapter.list_models()
            current = settings.cursor_model
        elif resolved is Provider.CLAUDE:
            current = settings.claude_model
            models = [{"value": "default", "label": "SDK default"}]
            if current:
                models.append({"value": current, "label": current})
        else:
            current = "simulator"
            models = [{"value": "simulator", "label": "Simulator"}]
        return {"provider": resolved.value, "current": current, "models": models}

    # -- registration ------------------------------------------------------

    tool_create_task = server.tool(
        name="create_task",
        description=(
            "Create a task. Provide a title, optional description, the provider to run it with "
            "(simulator, claude or cursor) and whether a human reviews the plan."
        ),
    )(_create_task)
    tool_get_task = server.tool(name="get_task", description="Return a task record by id.")(_get_task)
    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List task summaries, optionally filtered by phase or status.",
    )(_list_tasks)

    tool_start_planning = server.tool(
        name="start_planning",
        description=(
            "Start planning a task. Tasks that require human review get clarifying questions first; "
            "other tasks go straight to plan generation and then development."
        ),
    )(_start_planning)
    tool_submit_answers = server.tool(
        name="submit_answers",
        description="Submit answers to planning questions keyed by question id, then generate the plan.",
    )(_submit_answers)
    tool_approve_plan = server.tool(
        name="approve_plan",
        description="Approve a generated plan; optionally start subtask generation immediately.",
    )(_approve_plan)
    tool_start_development = server.tool(
        name="start_development",
        description="Generate subtasks from the approved plan and execute them in order.",
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Agents modify files in the task's working directory",
            }
        },
    )(_start_development)
    tool_start_review = server.tool(
        name="start_review",
        description="Run the QA subtasks of a task that is in the ai_review phase.",
    )(_start_review)

    tool_modify_plan = server.tool(
        name="modify_plan",
        description=(
            "Change a task's plan. Pass new_plan to replace it directly, or feedback to have an agent "
            "regenerate it. The plan must be approved again afterwards."
        ),
    )(_modify_plan)
    tool_retry_plan_parse = server.tool(
        name="retry_plan_parse",
        description=(
            "Resume a task blocked during plan generation: recover the plan from the last agent output "
            "or plan file, else re-run plan generation with the saved answers."
        ),
    )(_retry_plan_parse)
    tool_skip_subtask = server.tool(
        name="skip_subtask",
        description="Mark an unfinished subtask completed without running it, stopping its agent if needed.",
    )(_skip_subtask)
    tool_delete_subtask = server.tool(
        name="delete_subtask",
        description="Remove an unfinished subtask from a task, stopping its agent if needed.",
    )(_delete_subtask)
    tool_reorder_subtasks = server.tool(
        name="reorder_subtasks",
        description="Set the execution order of a task's subtasks.",
    )(_reorder_subtasks)

    tool_stop_agent = server.tool(name="stop_agent", description="Stop a running agent thread.")(_stop_agent)
    tool_agent_status = server.tool(
        name="agent_status",
        description="Return the status, output and optionally the event log of an agent thread.",
    )(_agent_status)
    tool_list_active_agents = server.tool(
        name="list_active_agents",
        description="List running agent sessions across all tasks.",
    )(_list_active_agents)
    tool_read_stream_log = server.tool(
        name="read_stream_log",
        description="Read the persisted event stream of an agent thread, including earlier server runs.",
    )(_read_stream_log)

    tool_create_worktree = server.tool(
        name="create_worktree",
        description="Create an isolated git worktree and branch for a task.",
    )(_create_worktree)
    tool_delete_worktree = server.tool(
        name="delete_worktree",
        description="Delete a task's worktree. Refuses when there are uncommitted changes unless force is set.",
        annotations={"safety": {"level": "caution", "notes": "force discards uncommitted changes"}},
    )(_delete_worktree)
    tool_worktree_status = server.tool(
        name="worktree_status",
        description="Report whether a task's worktree exists and has uncommitted changes.",
    )(_worktree_status)
    tool_list_worktrees = server.tool(
        name="list_worktrees",
        description="List task worktrees with dirty, orphan and disk usage details.",
    )(_list_worktrees)
    tool_cleanup_worktrees = server.tool(
        name="cleanup_worktrees",
        description="Delete every task worktree, continuing past individual failures.",
        annotations={"safety": {"level": "caution", "notes": "force discards uncommitted changes"}},
    )(_cleanup_worktrees)
    tool_delete_task = server.tool(
        name="delete_task",
        description="Stop a task's agents, optionally delete its worktree, and remove the task.",
    )(_delete_task)

    tool_provider_preflight = server.tool(
        name="provider_preflight",
        description="Check that a provider's CLI is installed and authenticated.",
    )(_provider_preflight)
    tool_list_providers = server.tool(
        name="list_providers",
        description="List available agent providers.",
    )(_list_providers)
    tool_list_models = server.tool(
        name="list_models",
        description="List the models a provider accepts.",
    )(_list_models)

    return ToolHandles(
        create_task=tool_create_task,
        get_task=tool_get_task,
        list_tasks=tool_list_tasks,
        start_planning=tool_start_planning,
        submit_answers=tool_submit_answers,
        approve_plan=tool_approve_plan,
        start_development=tool_start_development,
        start_review=tool_start_review,
        modify_plan=tool_modify_plan,
        retry_plan_parse=tool_retry_plan_parse,
        skip_subtask=tool_skip_subtask,
        delete_subtask=tool_delete_subtask,
        reorder_subtasks=tool_reorder_subtasks,
        stop_agent=tool_stop_agent,
        agent_status=tool_agent_status,
        list_active_agents=tool_list_active_agents,
        read_stream_log=tool_read_stream_log,
        create_worktree=tool_create_worktree,
        delete_worktree=tool_delete_worktree,
        worktree_status=tool_worktree_status,
        list_worktrees=tool_list_worktrees,
        cleanup_worktrees=tool_cleanup_worktrees,
        delete_task=tool_delete_task,
        provider_preflight=tool_provider_preflight,
        list_providers=tool_list_providers,
        list_models=tool_list_models,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is attached, else the module logger."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
