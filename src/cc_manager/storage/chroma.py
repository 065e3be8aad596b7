"""Chroma-based persistence layer for repository and session rows.

Rows are stored as an append-only event log; the latest event per row key
wins when the log is replayed at start-up.
"""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import RepositoryRecord, SessionRecord

REPOSITORY_EVENT = "repository_update"
SESSION_EVENT = "session_update"


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by the manager."""

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
    """Protocol for the minimal Chroma client API used by the manager."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    row_key: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _clean_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata values must be scalar and non-null.
    return {
        key: value
        for key, value in metadata.items()
        if isinstance(value, (str, int, float, bool))
    }


class ChromaStore:
    """Manage persistence of registry rows via ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "cc_manager",
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
                "chromadb package is not installed"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids", [])
        documents = result.get("documents", [])
        metadatas = result.get("metadatas", [])
        for event_id, document, metadata in zip(ids, documents, metadatas):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    row_key=metadata.get("row_key", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        row_key: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[row_key] = self._counters[row_key] + 1
        event_id = f"{row_key}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata = {
            "row_key": row_key,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(_clean_metadata(metadata))

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            row_key=row_key,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def search_events(
        self,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=filters, limit=limit)
        events = self._convert_result(result)
        return events[:limit] if limit else events

    def _replay_latest(self, event_type: str) -> list[dict[str, Any]]:
        latest: dict[str, dict[str, Any]] = {}
        for event in self.search_events(filters={"event_type": event_type}):
            latest[event.row_key] = json.loads(event.document)
        return list(latest.values())

    def record_repository(self, record: RepositoryRecord) -> ChromaEvent:
        return self.record_event(
            row_key=f"repository::{record.id}",
            event_type=REPOSITORY_EVENT,
            body=asdict(record),
            metadata={"repo_id": record.id, "slug": record.slug, "url": record.url},
        )

    def list_repositories(self) -> list[RepositoryRecord]:
        return [RepositoryRecord(**doc) for doc in self._replay_latest(REPOSITORY_EVENT)]

    def record_session(self, record: SessionRecord) -> ChromaEvent:
        return self.record_event(
            row_key=f"session::{record.session_id}::{record.encoded_cwd}",
            event_type=SESSION_EVENT,
            body=asdict(record),
            metadata={
                "session_id": record.session_id,
                "encoded_cwd": record.encoded_cwd,
                "source": record.source,
                "repo_id": record.repo_id,
            },
        )

    def list_sessions(self) -> list[SessionRecord]:
        return [SessionRecord(**doc) for doc in self._replay_latest(SESSION_EVENT)]


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError"]
