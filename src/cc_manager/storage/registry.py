"""In-process repository registry and session index with optional durable backing."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from typing import Callable

from ..utils import now_ms
from ..workspace.utils import normalize_repo_url, repo_url_to_slug
from .chroma import ChromaStore
from .models import RepositoryRecord, SessionRecord

logger = logging.getLogger(__name__)


class RepositoryRegistry:
    """Map canonical repository URLs to a stable id, mirror path and default branch.

    At most one row exists per normalized URL: rows are keyed by the URL's
    slug, which is also the mirror's directory name. All methods are
    thread-safe so persistence can run off the event loop.
    """

    def __init__(
        self,
        store: ChromaStore | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._by_id: dict[str, RepositoryRecord] = {}
        self._by_slug: dict[str, str] = {}

        if store is not None:
            for record in store.list_repositories():
                self._by_id[record.id] = record
                self._by_slug.setdefault(record.slug, record.id)
            logger.info("Replayed repository registry", extra={"count": len(self._by_id)})

    def find_by_url(self, url: str) -> RepositoryRecord | None:
        slug = repo_url_to_slug(url)
        with self._lock:
            repo_id = self._by_slug.get(slug)
            return self._by_id.get(repo_id) if repo_id else None

    def find_by_id(self, repo_id: str) -> RepositoryRecord | None:
        with self._lock:
            return self._by_id.get(repo_id)

    def insert(self, record: RepositoryRecord) -> RepositoryRecord:
        """Insert ``record`` unless a row for its slug exists; return the stored row."""

        with self._lock:
            existing_id = self._by_slug.get(record.slug)
            if existing_id is not None:
                return self._by_id[existing_id]
            self._by_id[record.id] = record
            self._by_slug[record.slug] = record.id
            self._persist(record)
            return record

    def record_fetch(self, url: str, *, mirror_path: str, default_branch: str) -> RepositoryRecord:
        """Find-or-insert the row for ``url`` and stamp ``last_fetched_at``.

        Updates the stored default branch when it changed upstream.
        """

        canonical = normalize_repo_url(url)
        slug = repo_url_to_slug(canonical)
        timestamp = self._clock()
        with self._lock:
            existing_id = self._by_slug.get(slug)
            if existing_id is None:
                record = RepositoryRecord(
                    id=uuid.uuid4().hex,
                    url=canonical,
                    slug=slug,
                    mirror_path=mirror_path,
                    default_branch=default_branch,
                    created_at=timestamp,
                    last_fetched_at=timestamp,
                )
                self._by_slug[slug] = record.id
            else:
                record = replace(
                    self._by_id[existing_id],
                    mirror_path=mirror_path,
                    default_branch=default_branch,
                    last_fetched_at=timestamp,
                )
            self._by_id[record.id] = record
            self._persist(record)
            return record

    def list_all(self) -> list[RepositoryRecord]:
        with self._lock:
            return sorted(self._by_id.values(), key=lambda record: record.created_at)

    def _persist(self, record: RepositoryRecord) -> None:
        if self._store is not None:
            self._store.record_repository(record)


class SessionStore:
    """Index of sessions keyed by ``(session_id, encoded_cwd)``."""

    def __init__(self, store: ChromaStore | None = None) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._sessions: dict[tuple[str, str], SessionRecord] = {}

        if store is not None:
            for record in store.list_sessions():
                self._sessions[record.key] = record
            logger.info("Replayed session index", extra={"count": len(self._sessions)})

    def get(self, session_id: str, encoded_cwd: str) -> SessionRecord | None:
        with self._lock:
            return self._sessions.get((session_id, encoded_cwd))

    def find_candidates(self, session_id: str) -> list[SessionRecord]:
        """All sessions sharing a raw session id, most recently active first."""

        with self._lock:
            matches = [record for key, record in self._sessions.items() if key[0] == session_id]
        return sorted(matches, key=lambda record: record.last_activity_at, reverse=True)

    def upsert(self, record: SessionRecord, *, persist: bool = True) -> SessionRecord:
        with self._lock:
            self._sessions[record.key] = record
            if persist and self._store is not None:
                self._store.record_session(record)
        return record

    def merge_indexed(self, record: SessionRecord) -> SessionRecord:
        """Upsert a session discovered by the history indexer.

        Manager-owned fields (source, repository binding, cost) survive the
        merge; activity timestamps and counts move forward only.
        """

        with self._lock:
            existing = self._sessions.get(record.key)
            if existing is not None:
                record = replace(
                    existing,
                    title=existing.title or record.title,
                    updated_at=max(existing.updated_at, record.updated_at),
                    last_activity_at=max(existing.last_activity_at, record.last_activity_at),
                    message_count=max(existing.message_count, record.message_count),
                )
                if record == existing:
                    return existing
            self._sessions[record.key] = record
            if self._store is not None:
                self._store.record_session(record)
            return record

    def list_all(self) -> list[SessionRecord]:
        with self._lock:
            records = list(self._sessions.values())
        return sorted(records, key=lambda record: record.last_activity_at, reverse=True)


__all__ = ["RepositoryRegistry", "SessionStore"]
