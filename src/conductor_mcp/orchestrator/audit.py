"""Plain-text, append-only per-task audit logs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

RULE = "=" * 80


class AuditLog:
    """Human-readable trail of what happened to a task.

    The file is opened and closed on every write so concurrent writers and
    external readers never see a half-held handle.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def begin(self, heading: str, task_id: str, **fields: object) -> None:
        """Start a fresh log, replacing any previous run's contents."""

        lines = [heading, f"Task ID: {task_id}"]
        lines.extend(f"{key.replace('_', ' ').title()}: {value}" for key, value in fields.items())
        lines.append(f"Started at: {datetime.now(timezone.utc).isoformat()}")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text("\n".join(lines) + f"\n{RULE}\n\n", encoding="utf-8")

    def append(self, text: str) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(text if text.endswith("\n") else text + "\n")
        except OSError as exc:
            logger.warning("Failed to write audit log", extra={"path": str(self._path), "error": str(exc)})

    def entry(self, tag: str, message: str = "") -> None:
        self.append(f"[{tag}] {message}".rstrip())

    def banner(self, message: str) -> None:
        self.append(f"\n{RULE}\n{message}\n{RULE}\n")

    def read(self) -> str:
        return self._path.read_text(encoding="utf-8") if self._path.is_file() else ""


__all__ = ["AuditLog", "RULE"]
