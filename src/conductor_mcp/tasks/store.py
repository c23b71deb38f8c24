"""Key-value persistence for task records."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .models import TaskRecord

logger = logging.getLogger(__name__)


class TaskNotFoundError(RuntimeError):
    """Raised when a task id is not present in the store."""


class TaskStore(Protocol):
    """Minimal get/set-by-id contract the orchestrator relies on."""

    def load(self, task_id: str) -> TaskRecord | None:
        ...

    def save(self, task: TaskRecord) -> TaskRecord:
        ...

    def list(self) -> list[TaskRecord]:
        ...

    def delete(self, task_id: str) -> bool:
        ...


def require_task(store: TaskStore, task_id: str) -> TaskRecord:
    task = store.load(task_id)
    if task is None:
        raise TaskNotFoundError(f"Task '{task_id}' not found")
    return task


class InMemoryTaskStore:
    def __init__(self) -> None:
        self._tasks: dict[str, str] = {}

    def load(self, task_id: str) -> TaskRecord | None:
        raw = self._tasks.get(task_id)
        return TaskRecord.model_validate_json(raw) if raw is not None else None

    def save(self, task: TaskRecord) -> TaskRecord:
        task.touch()
        self._tasks[task.id] = task.model_dump_json()
        return task

    def list(self) -> list[TaskRecord]:
        return [TaskRecord.model_validate_json(raw) for raw in self._tasks.values()]

    def delete(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None


class JsonTaskStore:
    """One JSON document per task, replaced atomically on save."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, task_id: str) -> Path:
        return self._root / f"{task_id}.json"

    def load(self, task_id: str) -> TaskRecord | None:
        path = self._path(task_id)
        if not path.is_file():
            return None
        return TaskRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def save(self, task: TaskRecord) -> TaskRecord:
        task.touch()
        self._root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=f".{task.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(task.model_dump_json(indent=2))
            os.replace(tmp_name, self._path(task.id))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return task

    def list(self) -> list[TaskRecord]:
        if not self._root.is_dir():
            return []
        tasks: list[TaskRecord] = []
        for path in sorted(self._root.glob("*.json")):
            try:
                tasks.append(TaskRecord.model_validate_json(path.read_text(encoding="utf-8")))
            except ValidationError as exc:
                logger.warning("Skipping unreadable task record", extra={"path": str(path), "error": str(exc)})
        return tasks

    def delete(self, task_id: str) -> bool:
        path = self._path(task_id)
        if not path.exists():
            return False
        path.unlink()
        return True


__all__ = ["InMemoryTaskStore", "JsonTaskStore", "TaskNotFoundError", "TaskStore", "require_task"]
