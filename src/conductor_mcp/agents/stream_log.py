"""Per-thread NDJSON stream logs and the thread -> task index."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ThreadIndex:
    """Maps thread ids to task ids so finished streams stay readable across restarts."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._entries: dict[str, str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if self._entries is None:
            self._entries = {}
            if self._path.is_file():
                try:
                    raw = json.loads(self._path.read_text(encoding="utf-8"))
                except json.JSONDecodeError as exc:
                    logger.warning("Ignoring corrupt thread index", extra={"path": str(self._path), "error": str(exc)})
                    raw = {}
                if isinstance(raw, dict):
                    self._entries = {str(key): str(value) for key, value in raw.items()}
        return self._entries

    def record(self, thread_id: str, task_id: str) -> None:
        entries = self._load()
        if entries.get(thread_id) == task_id:
            return
        entries[thread_id] = task_id
        _atomic_write(self._path, json.dumps(entries, indent=2, sort_keys=True))

    def lookup(self, thread_id: str) -> str | None:
        return self._load().get(thread_id)

    def threads_for_task(self, task_id: str) -> list[str]:
        return sorted(thread for thread, owner in self._load().items() if owner == task_id)

    def forget_task(self, task_id: str) -> None:
        entries = self._load()
        remaining = {thread: owner for thread, owner in entries.items() if owner != task_id}
        if len(remaining) != len(entries):
            self._entries = remaining
            _atomic_write(self._path, json.dumps(remaining, indent=2, sort_keys=True))


class StreamLog:
    """Append-only NDJSON record of everything an agent thread emitted."""

    def __init__(self, state_dir: Path, *, index: ThreadIndex | None = None) -> None:
        self._state_dir = Path(state_dir)
        self._index = index or ThreadIndex(self._state_dir / "thread-index.json")

    @property
    def index(self) -> ThreadIndex:
        return self._index

    def path_for(self, task_id: str, thread_id: str) -> Path:
        return self._state_dir / "tasks" / task_id / f"agent-stream-{thread_id}.ndjson"

    def append(self, task_id: str, thread_id: str, entry_type: str, content: Any, **extra: Any) -> None:
        record: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": entry_type,
            "content": content,
        }
        record.update(extra)
        path = self.path_for(task_id, thread_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, default=str) + "\n")
        self._index.record(thread_id, task_id)

    def write_status(self, task_id: str, thread_id: str, status: str, error: str | None = None) -> None:
        self.append(task_id, thread_id, "status", None, status=status, error=error)

    def read(self, thread_id: str, task_id: str | None = None, *, limit: int | None = None) -> list[dict[str, Any]]:
        owner = task_id or self._index.lookup(thread_id)
        if owner is None:
            return []
        path = self.path_for(owner, thread_id)
        if not path.is_file():
            return []
        entries: list[dict[str, Any]] = []
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries[-limit:] if limit else entries


__all__ = ["StreamLog", "ThreadIndex"]
