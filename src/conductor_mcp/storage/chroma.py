"""Chroma-based session journal."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import SessionTrackingRecord, WorktreeRecord

SESSION_EVENT = "session_tracking"
WORKTREE_EVENT = "worktree_update"


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """The slice of the Chroma collection API the journal touches."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    id: str
    stream_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _scalar_metadata(values: dict[str, Any]) -> dict[str, Any]:
    # Chroma only stores str/int/float/bool metadata values.
    cleaned: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        cleaned[key] = value if isinstance(value, (str, int, float, bool)) else json.dumps(value)
    return cleaned


def _where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    if not filters:
        return None
    clauses = [{key: value} for key, value in filters.items() if value is not None]
    if not clauses:
        return None
    return clauses[0] if len(clauses) == 1 else {"$and": clauses}


class ChromaStore:
    """Append-only journal of agent sessions and worktree changes."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "conductor_runs",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    @property
    def path(self) -> Path:
        return self._path

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; reinstall conductor-mcp with its dependencies"
            ) from exc

        self._path.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        for event_id, document, metadata in zip(
            result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
        ):
            metadata = metadata or {}
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    stream_id=metadata.get("stream_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        stream_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[stream_id] = self._counters[stream_id] + 1
        event_id = f"{stream_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata = {
            "stream_id": stream_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(metadata)
        record_metadata = _scalar_metadata(record_metadata)

        collection.add(documents=[document], metadatas=[record_metadata], ids=[event_id])

        return ChromaEvent(
            id=event_id,
            stream_id=stream_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_session_events(self, thread_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        return self.search_events(filters={"stream_id": f"session::{thread_id}"}, limit=limit)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        """Return events matching ``filters``, optionally narrowed by a substring ``query``."""

        collection = self._ensure_collection()
        result = collection.get(where=_where(filters))
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events

    def record_session_tracking(
        self,
        *,
        thread_id: str,
        provider: str,
        status: str,
        task_id: str | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SessionTrackingRecord:
        payload = {
            "thread_id": thread_id,
            "provider": provider,
            "task_id": task_id,
            "status": status,
            "error": error,
        }
        if metadata:
            payload.update(metadata)

        event = self.record_event(
            stream_id=f"session::{thread_id}",
            event_type=SESSION_EVENT,
            body=payload,
            metadata={"thread_id": thread_id, "provider": provider, "task_id": task_id, "status": status},
        )

        return SessionTrackingRecord(
            thread_id=thread_id,
            task_id=task_id,
            provider=provider,
            recorded_at=event.timestamp,
            status=status,
            error=error,
            metadata=metadata or {},
        )

    def list_session_tracking(self, task_id: str | None = None) -> list[SessionTrackingRecord]:
        events = self.search_events(filters={"event_type": SESSION_EVENT, "task_id": task_id})
        sessions: list[SessionTrackingRecord] = []
        for event in events:
            doc = json.loads(event.document)
            sessions.append(
                SessionTrackingRecord(
                    thread_id=doc["thread_id"],
                    task_id=doc.get("task_id"),
                    provider=doc.get("provider", "unknown"),
                    recorded_at=event.timestamp,
                    status=doc.get("status", "unknown"),
                    error=doc.get("error"),
                    metadata={
                        key: value
                        for key, value in doc.items()
                        if key not in {"thread_id", "provider", "task_id", "status", "error"}
                    },
                )
            )
        return sessions

    def record_worktree(
        self,
        *,
        task_id: str,
        path: str,
        branch: str | None,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> WorktreeRecord:
        payload = {"task_id": task_id, "path": path, "branch": branch, "status": status}
        if metadata:
            payload.update(metadata)

        event = self.record_event(
            stream_id=f"worktree::{task_id}",
            event_type=WORKTREE_EVENT,
            body=payload,
            metadata={"task_id": task_id, "path": path, "status": status},
        )

        return WorktreeRecord(
            task_id=task_id,
            path=path,
            branch=branch,
            recorded_at=event.timestamp,
            status=status,
            metadata=metadata or {},
        )

    def list_worktrees(self, task_id: str | None = None) -> list[WorktreeRecord]:
        events = self.search_events(filters={"event_type": WORKTREE_EVENT, "task_id": task_id})
        records: list[WorktreeRecord] = []
        for event in events:
            doc = json.loads(event.document)
            records.append(
                WorktreeRecord(
                    task_id=doc["task_id"],
                    path=doc["path"],
                    branch=doc.get("branch"),
                    recorded_at=event.timestamp,
                    status=doc.get("status", "unknown"),
                    metadata={
                        key: value
                        for key, value in doc.items()
                        if key not in {"task_id", "path", "branch", "status"}
                    },
                )
            )
        return records


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError"]
