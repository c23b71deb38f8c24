from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conductor_mcp.adapters import AdapterConfig, SimulatorAdapter
from conductor_mcp.agents import (
    AgentCompletion,
    AgentManager,
    AgentNotFoundError,
    CapacityExceededError,
    SessionObserver,
)


class RecordingObserver(SessionObserver):
    def __init__(self) -> None:
        self.started: list[str] = []
        self.events: list[str] = []
        self.finished: list[tuple[str, str]] = []

    def on_started(self, session) -> None:
        self.started.append(session.thread_id)

    def on_event(self, session, event) -> None:
        self.events.append(event.type.value)

    def on_finished(self, session) -> None:
        self.finished.append((session.thread_id, session.status))


async def _manager(tmp_path: Path, *, delay_scale: float = 0, capacity: int | None = None, **kwargs) -> AgentManager:
    adapter = SimulatorAdapter(delay_scale=delay_scale, **kwargs)
    await adapter.initialize(AdapterConfig(credential="simulator-key", working_dir=tmp_path))
    return AgentManager(adapter, provider="simulator", working_dir=tmp_path, max_concurrent_agents=capacity)


def test_completed_session_reports_output(tmp_path: Path) -> None:
    observer = RecordingObserver()
    completions: list[AgentCompletion] = []

    async def scenario():
        manager = await _manager(tmp_path)
        manager.add_observer(observer)
        thread_id = await manager.start_agent("task-1", "Implement the feature", on_complete=completions.append)
        session = await manager.wait_for(thread_id)
        return manager, session

    manager, session = asyncio.run(scenario())

    assert session.status == "completed"
    assert session.completed_at is not None
    assert "[SIMULATOR] Processing" in session.output
    assert [entry.type for entry in session.logs][-1] == "result"
    assert manager.list_active_agents() == []
    assert observer.started == [session.thread_id]
    assert observer.finished == [(session.thread_id, "completed")]
    assert observer.events[0] == "system"
    assert len(completions) == 1
    assert completions[0].success is True
    assert completions[0].task_id == "task-1"


def test_async_completion_callback_is_awaited(tmp_path: Path) -> None:
    seen: list[str] = []

    async def on_complete(completion: AgentCompletion) -> None:
        await asyncio.sleep(0)
        seen.append(completion.output)

    async def scenario():
        manager = await _manager(tmp_path, responses=['{"plan": "x"}'])
        thread_id = await manager.start_agent("task-1", "anything", on_complete=on_complete)
        await manager.wait_for(thread_id)

    asyncio.run(scenario())

    assert seen == ['{"plan": "x"}']


def test_capacity_is_enforced(tmp_path: Path) -> None:
    async def scenario():
        manager = await _manager(tmp_path, delay_scale=10)
        for index in range(12):
            await manager.start_agent(f"task-{index}", "long running work")
        try:
            with pytest.raises(CapacityExceededError) as excinfo:
                await manager.start_agent("task-13", "one too many")
            return manager.capacity, len(manager.list_active_agents()), excinfo.value.capacity
        finally:
            await manager.shutdown()

    capacity, active, reported = asyncio.run(scenario())

    assert capacity == 12
    assert active == 12
    assert reported == 12


def test_stop_is_idempotent_and_skips_callback(tmp_path: Path) -> None:
    completions: list[AgentCompletion] = []

    async def scenario():
        manager = await _manager(tmp_path, delay_scale=10)
        thread_id = await manager.start_agent("task-1", "long running work", on_complete=completions.append)
        await asyncio.sleep(0)
        first = await manager.stop_agent(thread_id)
        second = await manager.stop_agent(thread_id)
        session = await manager.wait_for(thread_id)
        return first, second, session

    first, second, session = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert session.status == "stopped"
    assert completions == []


def test_unknown_thread_raises(tmp_path: Path) -> None:
    async def scenario():
        manager = await _manager(tmp_path)
        with pytest.raises(AgentNotFoundError):
            await manager.stop_agent("simulator-missing")
        with pytest.raises(AgentNotFoundError):
            await manager.wait_for("simulator-missing")
        return manager.get_agent_status("simulator-missing")

    assert asyncio.run(scenario()) is None


def test_capabilities_reflect_pool(tmp_path: Path) -> None:
    async def scenario():
        manager = await _manager(tmp_path, capacity=3)
        await manager.start_agent("task-1", "work")
        return manager.get_capabilities(), manager.get_agents_for_task("task-1")

    capabilities, sessions = asyncio.run(scenario())

    assert capabilities["max_concurrent_agents"] == 3
    assert capabilities["active_agents"] == 1
    assert len(sessions) == 1
