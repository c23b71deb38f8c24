from __future__ import annotations

import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest

from conductor_mcp.adapters import SimulatorAdapter
from conductor_mcp.adapters.simulator import SIMULATED_PLAN
from conductor_mcp.agents import AgentRegistry, StreamLog
from conductor_mcp.config import ConductorSettings
from conductor_mcp.orchestrator import GenerationError, GenerationOrchestrator
from conductor_mcp.tasks import InMemoryTaskStore, Subtask, TaskNotFoundError, TaskRecord
from conductor_mcp.tools import ToolHandles, register_tools
from conductor_mcp.worktrees import WorktreeManager


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubJournal:
    def __init__(self) -> None:
        self.worktrees: list[dict[str, Any]] = []

    def record_worktree(self, *, task_id: str, path: str, branch: str | None, status: str) -> None:
        self.worktrees.append({"task_id": task_id, "path": path, "branch": branch, "status": status})


class Harness:
    def __init__(self, project_dir: Path, *, delay_scale: float = 0) -> None:
        self.settings = ConductorSettings(project_dir=project_dir, memory_paths=(), simulator_delay_scale=delay_scale)
        self.simulator = SimulatorAdapter(delay_scale=delay_scale)
        self.registry = AgentRegistry(
            self.settings,
            adapter_factory=lambda provider, settings: self.simulator,
            stream_log=StreamLog(self.settings.state_dir),
        )
        self.store = InMemoryTaskStore()
        self.orchestrator = GenerationOrchestrator(self.registry, self.store, self.settings)
        self.journal = StubJournal()
        self.server = StubServer()
        self.handles: ToolHandles = register_tools(
            self.server,
            settings=self.settings,
            store=self.store,
            registry=self.registry,
            orchestrator=self.orchestrator,
            worktrees=WorktreeManager(project_dir),
            journal=self.journal,
        )

    async def settle(self, task_id: str) -> None:
        for _ in range(100):
            sessions = self.registry.get_agents_for_task(task_id)
            for session in sessions:
                await self.registry.wait_for_thread(session.thread_id)
            await self.orchestrator.runner.join()
            await asyncio.sleep(0)
            current = self.registry.get_agents_for_task(task_id)
            if len(current) == len(sessions) and not any(session.is_running for session in current):
                return
        raise AssertionError("agents did not settle")


def test_all_tools_registered(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    assert set(harness.server._tools) == {
        "create_task",
        "get_task",
        "list_tasks",
        "start_planning",
        "submit_answers",
        "approve_plan",
        "start_development",
        "start_review",
        "modify_plan",
        "retry_plan_parse",
        "skip_subtask",
        "delete_subtask",
        "reorder_subtasks",
        "stop_agent",
        "agent_status",
        "list_active_agents",
        "read_stream_log",
        "create_worktree",
        "delete_worktree",
        "worktree_status",
        "list_worktrees",
        "cleanup_worktrees",
        "delete_task",
        "provider_preflight",
        "list_providers",
        "list_models",
    }


def test_create_get_and_list_tasks(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    created = harness.handles.create_task.fn(title="  Add login  ", cli_tool="mock", requires_human_review=True)
    named = harness.handles.create_task.fn(title="Second", task_id="task-2")

    assert created["id"].startswith("task-")
    assert created["title"] == "Add login"
    assert created["cli_tool"] == "simulator"
    assert created["phase"] == "planning"
    assert harness.handles.get_task.fn(task_id="task-2")["title"] == "Second"
    assert {task["id"] for task in harness.handles.list_tasks.fn()} == {created["id"], named["id"]}
    assert harness.handles.list_tasks.fn(status="blocked") == []

    with pytest.raises(ValueError):
        harness.handles.create_task.fn(title="Again", task_id="task-2")
    with pytest.raises(ValueError):
        harness.handles.create_task.fn(title="   ")
    with pytest.raises(TaskNotFoundError):
        harness.handles.get_task.fn(task_id="missing")


def test_workflow_through_tools(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.handles.create_task.fn(title="Add login", task_id="task-1")

    async def scenario():
        started = await harness.handles.start_planning.fn(task_id="task-1")
        await harness.settle("task-1")
        return started

    started = asyncio.run(scenario())
    thread_id = started["thread_id"]
    task = harness.handles.get_task.fn(task_id="task-1")

    assert started["planning_status"] == "generating_plan"
    assert task["phase"] == "human_review"
    assert task["subtasks"][0]["activeForm"] == "Surveying current code"

    status = harness.handles.agent_status.fn(thread_id=thread_id, include_logs=True)
    assert status["status"] == "completed"
    assert status["logs"][0]["type"] == "system"

    log = harness.handles.read_stream_log.fn(thread_id=thread_id, limit=2)
    assert log["task_id"] == "task-1"
    assert len(log["entries"]) == 2
    assert harness.handles.list_active_agents.fn() == []

    # a new process only has the persisted stream log to go on
    restarted = Harness(tmp_path)
    fallback = restarted.handles.agent_status.fn(thread_id=thread_id)
    assert fallback["source"] == "stream_log"
    assert fallback["task_id"] == "task-1"
    assert fallback["status"] == "completed"


def test_plan_and_subtask_editing_tools(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.store.save(
        TaskRecord(id="task-1", title="Add login", plan_content=SIMULATED_PLAN, planning_status="plan_ready", plan_approved=True)
    )
    harness.store.save(
        TaskRecord(
            id="task-2",
            title="Ship feature",
            phase="in_progress",
            status="blocked",
            subtasks=[
                Subtask(id="subtask-1", content="Write the parser", label="Write parser"),
                Subtask(id="subtask-2", content="Wire the parser into the CLI", label="Wire parser"),
                Subtask(id="subtask-qa-1", content="Run the test suite", label="Run tests", type="qa"),
            ],
        )
    )

    edited = asyncio.run(harness.handles.modify_plan.fn(task_id="task-1", new_plan=SIMULATED_PLAN + "\n- Extra note"))
    assert edited["validation"]["valid"] is True
    assert edited["task"]["planning_status"] == "plan_ready"
    assert harness.store.load("task-1").plan_approved is False

    with pytest.raises(GenerationError):
        asyncio.run(harness.handles.retry_plan_parse.fn(task_id="task-1"))

    reordered = harness.handles.reorder_subtasks.fn(task_id="task-2", subtask_ids=["subtask-2", "subtask-1", "subtask-qa-1"])
    assert reordered == {"task_id": "task-2", "subtask_ids": ["subtask-2", "subtask-1", "subtask-qa-1"]}

    deleted = asyncio.run(harness.handles.delete_subtask.fn(task_id="task-2", subtask_id="subtask-2"))
    assert deleted["subtasks"] == {"total": 2, "completed": 0}

    skipped = asyncio.run(harness.handles.skip_subtask.fn(task_id="task-2", subtask_id="subtask-1"))
    assert skipped["phase"] == "ai_review"
    assert skipped["status"] == "pending"
    assert skipped["subtasks"] == {"total": 2, "completed": 1}


def test_stop_agent(tmp_path: Path) -> None:
    harness = Harness(tmp_path, delay_scale=10)
    harness.handles.create_task.fn(title="Add login", task_id="task-1")

    async def scenario():
        started = await harness.handles.start_planning.fn(task_id="task-1")
        active = harness.handles.list_active_agents.fn(task_id="task-1")
        stopped = await harness.handles.stop_agent.fn(thread_id=started["thread_id"])
        with pytest.raises(ValueError):
            await harness.handles.stop_agent.fn(thread_id="simulator-unknown")
        return active, stopped

    active, stopped = asyncio.run(scenario())
    task = harness.store.load("task-1")

    assert len(active) == 1
    assert stopped["stopped"] is True
    assert stopped["task_id"] == "task-1"
    assert task.assigned_agent is None
    assert task.status == "pending"


def test_delete_task_removes_state(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.handles.create_task.fn(title="Add login", task_id="task-1")

    async def scenario():
        started = await harness.handles.start_planning.fn(task_id="task-1")
        await harness.settle("task-1")
        result = await harness.handles.delete_task.fn(task_id="task-1")
        return started["thread_id"], result

    thread_id, result = asyncio.run(scenario())

    assert result == {"task_id": "task-1", "deleted": True, "stopped_agents": [], "worktree_deleted": False}
    assert harness.store.load("task-1") is None
    assert not harness.settings.task_dir("task-1").exists()
    assert harness.registry.stream_log.index.lookup(thread_id) is None


def test_provider_tools(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    providers = harness.handles.list_providers.fn()
    preflight = asyncio.run(harness.handles.provider_preflight.fn())
    simulator_models = asyncio.run(harness.handles.list_models.fn())
    claude_models = asyncio.run(harness.handles.list_models.fn(provider="claude"))

    assert [entry["name"] for entry in providers] == ["simulator", "claude", "cursor"]
    assert [entry["default"] for entry in providers] == [True, False, False]
    assert preflight["ready"] is True
    assert preflight["provider"] == "simulator"
    assert simulator_models == {
        "provider": "simulator",
        "current": "simulator",
        "models": [{"value": "simulator", "label": "Simulator"}],
    }
    assert claude_models["models"][0]["value"] == "default"


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_worktree_tools(tmp_path: Path) -> None:
    repo = (tmp_path / "repo").resolve()
    repo.mkdir()
    for args in (
        ("init", "-q"),
        ("symbolic-ref", "HEAD", "refs/heads/main"),
        ("-c", "user.name=Test", "-c", "user.email=test@example.com", "commit", "-q", "--allow-empty", "-m", "init"),
    ):
        subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)

    harness = Harness(repo)
    harness.handles.create_task.fn(title="Add login", task_id="task-1")

    async def scenario():
        created = await harness.handles.create_worktree.fn(task_id="task-1")
        status = await harness.handles.worktree_status.fn(task_id="task-1")
        listed = await harness.handles.list_worktrees.fn()
        deleted = await harness.handles.delete_worktree.fn(task_id="task-1")
        return created, status, listed, deleted

    created, status, listed, deleted = asyncio.run(scenario())
    task = harness.store.load("task-1")

    assert created["branch"] == "conductor/task-1"
    assert status["exists"] is True
    assert status["has_changes"] is False
    assert [item["task_id"] for item in listed] == ["task-1"]
    assert listed[0]["is_orphan"] is False
    assert deleted == {"task_id": "task-1", "deleted": True}
    assert task.worktree_path is None
    assert task.branch_name == "conductor/task-1"
    assert [entry["status"] for entry in harness.journal.worktrees] == ["created", "deleted"]
