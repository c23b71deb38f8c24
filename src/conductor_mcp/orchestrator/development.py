"""Sequential execution of dev subtasks followed by the QA review pass."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Literal

from ..adapters.base import AdapterError
from ..agents.manager import AgentCompletion, AgentManagerError
from ..agents.registry import AgentRegistry
from ..config import ConductorSettings
from ..tasks.models import Subtask, TaskRecord
from ..tasks.store import TaskStore, require_task
from .audit import AuditLog
from .prompts import build_subtask_execution_prompt

logger = logging.getLogger(__name__)

SubtaskKind = Literal["dev", "qa"]


class SubtaskRunner:
    """Runs a task's subtasks one agent at a time.

    Dev subtasks run first; once they are all complete the task moves to
    ``ai_review`` and the QA subtasks run. A failing subtask is reset to
    ``pending`` and the task is blocked, which stops the sequence.
    """

    def __init__(self, registry: AgentRegistry, store: TaskStore, settings: ConductorSettings) -> None:
        self._registry = registry
        self._store = store
        self._settings = settings
        self._background: set[asyncio.Task[None]] = set()
        self._running: set[str] = set()

    def development_log(self, task_id: str) -> AuditLog:
        return AuditLog(self._settings.task_dir(task_id) / "development-logs.txt")

    def review_log(self, task_id: str) -> AuditLog:
        return AuditLog(self._settings.task_dir(task_id) / "review-logs.txt")

    def _spawn(self, coro, task_id: str) -> asyncio.Task[None]:
        job = asyncio.create_task(self._guarded(coro, task_id), name=f"subtasks-{task_id}")
        self._background.add(job)
        self._running.add(task_id)
        job.add_done_callback(self._background.discard)
        job.add_done_callback(lambda _: self._running.discard(task_id))
        return job

    async def _guarded(self, coro, task_id: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Subtask runner failed", extra={"task_id": task_id})
            task = self._store.load(task_id)
            if task is not None:
                task.block(f"Subtask runner failed: {exc}")
                self._store.save(task)

    def start(self, task_id: str) -> asyncio.Task[None]:
        """Run development (and then review) in the background."""

        return self._spawn(self.run_development(task_id), task_id)

    def start_review(self, task_id: str) -> asyncio.Task[None]:
        task = require_task(self._store, task_id)
        if task.phase != "ai_review":
            raise ValueError(f"Task '{task_id}' must be in the ai_review phase (current: {task.phase})")
        if not any(subtask.type == "qa" for subtask in task.subtasks):
            raise ValueError(f"Task '{task_id}' has no QA subtasks")
        return self._spawn(self.run_review(task_id), task_id)

    async def join(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -- subtask editing ---------------------------------------------------

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    async def skip_subtask(self, task_id: str, subtask_id: str) -> TaskRecord:
        """Mark an unfinished subtask completed without running it."""

        task, subtask = self._editable_subtask(task_id, subtask_id, "skip")
        was_running = subtask.status == "in_progress"
        subtask.status = "completed"
        subtask.completed_at = datetime.now(timezone.utc)
        self._advance_if_done(task)
        self._store.save(task)
        self.development_log(task_id).entry("Subtask Skipped", f"{subtask_id} ({subtask.label})")
        if was_running:
            await self._stop_assigned(task)
        return task

    async def delete_subtask(self, task_id: str, subtask_id: str) -> TaskRecord:
        """Remove an unfinished subtask from the task."""

        task, subtask = self._editable_subtask(task_id, subtask_id, "delete")
        was_running = subtask.status == "in_progress"
        task.subtasks = [item for item in task.subtasks if item.id != subtask_id]
        self._advance_if_done(task)
        self._store.save(task)
        self.development_log(task_id).entry("Subtask Deleted", f"{subtask_id} ({subtask.label})")
        if was_running:
            await self._stop_assigned(task)
        return task

    def reorder_subtasks(self, task_id: str, subtask_ids: list[str]) -> TaskRecord:
        task = require_task(self._store, task_id)
        by_id = {subtask.id: subtask for subtask in task.subtasks}
        if len(subtask_ids) != len(by_id) or set(subtask_ids) != set(by_id):
            raise ValueError(f"subtask_ids must list every subtask of task '{task_id}' exactly once")
        task.subtasks = [by_id[subtask_id] for subtask_id in subtask_ids]
        self._store.save(task)
        return task

    def _editable_subtask(self, task_id: str, subtask_id: str, action: str) -> tuple[TaskRecord, Subtask]:
        task = require_task(self._store, task_id)
        subtask = task.find_subtask(subtask_id)
        if subtask is None:
            raise ValueError(f"Subtask '{subtask_id}' not found in task '{task_id}'")
        if subtask.status == "completed":
            raise ValueError(f"Cannot {action} a completed subtask")
        return task, subtask

    async def _stop_assigned(self, task: TaskRecord) -> None:
        # Callers save the edited record before stopping the agent.
        if task.assigned_agent:
            await self._registry.stop_agent_by_thread_id(task.assigned_agent)

    def _advance_if_done(self, task: TaskRecord) -> None:
        """Move an idle task to the next phase once an edit leaves nothing to run there."""

        if task.id in self._running:
            return
        dev_done = all(subtask.status == "completed" for subtask in task.subtasks if subtask.type == "dev")
        qa = [subtask for subtask in task.subtasks if subtask.type == "qa"]
        qa_done = all(subtask.status == "completed" for subtask in qa)
        if task.phase == "in_progress" and dev_done:
            task.phase = "ai_review" if qa and not qa_done else "human_review"
        elif task.phase == "ai_review" and qa_done:
            task.phase = "human_review"
        else:
            return
        task.status = "completed" if task.phase == "human_review" else "pending"
        task.assigned_agent = None
        task.last_error = None

    async def run_development(self, task_id: str) -> None:
        task = require_task(self._store, task_id)
        audit = self.development_log(task_id)
        audit.begin(f"Development started for task: {task.title}", task_id)
        audit.banner("[Starting Sequential Execution]")

        if not await self._run_phase(task_id, "dev", audit):
            return

        task = self._store.load(task_id)
        if task is None:
            return
        dev = [subtask for subtask in task.subtasks if subtask.type == "dev"]
        if not all(subtask.status == "completed" for subtask in dev) or task.phase != "in_progress":
            return

        task.phase = "ai_review"
        task.assigned_agent = None
        self._store.save(task)
        audit.banner("[ALL DEV SUBTASKS COMPLETED - Moving to AI Review]")
        await self.run_review(task_id)

    async def run_review(self, task_id: str) -> None:
        task = require_task(self._store, task_id)
        audit = self.review_log(task_id)
        qa_count = sum(1 for subtask in task.subtasks if subtask.type == "qa")
        audit.begin(f"AI Review started for task: {task.title}", task_id)
        audit.entry("Starting AI Review", f"{qa_count} QA subtasks to verify")

        task.status = "in_progress"
        self._store.save(task)

        if not await self._run_phase(task_id, "qa", audit):
            return

        task = self._store.load(task_id)
        if task is None:
            return
        qa = [subtask for subtask in task.subtasks if subtask.type == "qa"]
        if all(subtask.status == "completed" for subtask in qa) and task.phase == "ai_review":
            task.phase = "human_review"
            task.status = "completed"
            task.assigned_agent = None
            self._store.save(task)
            audit.banner("[ALL QA SUBTASKS COMPLETED - Moving to Human Review]")

    async def _run_phase(self, task_id: str, kind: SubtaskKind, audit: AuditLog) -> bool:
        task = self._store.load(task_id)
        if task is None:
            return False
        planned = [(subtask.id, subtask.label) for subtask in task.subtasks if subtask.type == kind]
        prefix = "QA Subtask" if kind == "qa" else "Subtask"

        for index, (subtask_id, label) in enumerate(planned, start=1):
            heading = f"[{prefix} {index}/{len(planned)}] {label}"
            task = self._store.load(task_id)
            if task is None:
                return False
            if task.status == "blocked":
                audit.entry("Stopped", "task is blocked")
                return False

            subtask = task.find_subtask(subtask_id)
            if subtask is None:
                audit.banner(f"{heading} - SKIPPED (deleted)")
                continue
            if subtask.status == "completed":
                audit.banner(f"{heading} - SKIPPED (already completed)")
                continue

            audit.banner(heading)
            subtask.status = "in_progress"
            self._store.save(task)

            completion = await self._execute(task, build_subtask_execution_prompt(subtask), audit)
            task = self._store.load(task_id)
            if task is None:
                return False
            current = task.find_subtask(subtask_id)

            audit.entry(f"{prefix} {index} Completed", f"Success: {completion.success}")
            if not completion.success and (current is None or current.status == "completed"):
                audit.banner(f"{heading} - SKIPPED ({'deleted' if current is None else 'skipped'} while running)")
                continue
            if not completion.success:
                audit.entry("Error", completion.error or "unknown error")
                if current is not None:
                    current.status = "pending"
                task.block(completion.error)
                self._store.save(task)
                return False

            audit.append(f"[Output]\n{completion.output}")
            if current is not None:
                current.status = "completed"
                current.completed_at = datetime.now(timezone.utc)
            self._store.save(task)
        return True

    async def _execute(self, task: TaskRecord, prompt: str, audit: AuditLog) -> AgentCompletion:
        done = asyncio.Event()
        outcome: list[AgentCompletion] = []

        def on_complete(completion: AgentCompletion) -> None:
            outcome.append(completion)
            done.set()

        try:
            thread_id = await self._registry.start_agent_for_task(task, prompt, on_complete=on_complete)
        except (AdapterError, AgentManagerError) as exc:
            return AgentCompletion(thread_id="", task_id=task.id, success=False, output="", error=str(exc))

        audit.entry("Agent Started", f"Thread ID: {thread_id}")
        fresh = self._store.load(task.id)
        if fresh is not None:
            fresh.assigned_agent = thread_id
            self._store.save(fresh)

        signal = asyncio.create_task(done.wait())
        finished = asyncio.create_task(self._registry.wait_for_thread(thread_id))
        try:
            await asyncio.wait(
                {signal, finished},
                timeout=self._settings.subtask_wait_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            signal.cancel()
            finished.cancel()

        if outcome:
            return outcome[0]

        session = self._registry.get_agent_session_by_thread_id(thread_id)
        if session is not None and session.is_running:
            await self._registry.stop_agent_by_thread_id(thread_id)
            error = f"Timed out after {self._settings.subtask_wait_seconds:g}s waiting for {thread_id}"
        else:
            error = f"Agent {thread_id} was stopped before completing"
        return AgentCompletion(thread_id=thread_id, task_id=task.id, success=False, output="", error=error)


__all__ = ["SubtaskRunner"]
