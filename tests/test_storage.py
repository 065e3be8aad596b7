from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from cc_manager.storage import (
    ChromaStore,
    ChromaUnavailableError,
    RepositoryRecord,
    RepositoryRegistry,
    SessionRecord,
    SessionStore,
)


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            for key, value in where.items():
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


FIXED = datetime.fromisoformat("2025-01-01T00:00:00+00:00")


def make_store(tmp_path: Path, client: StubClient | None = None) -> ChromaStore:
    client = client or StubClient()
    return ChromaStore(tmp_path, client_factory=lambda: client, clock=lambda: FIXED)


def make_session(**overrides: Any) -> SessionRecord:
    values: dict[str, Any] = {
        "session_id": "s-1",
        "encoded_cwd": "-tmp-project",
        "cwd": "/tmp/project",
        "title": "Fix the parser",
        "created_at": 100,
        "updated_at": 100,
        "last_activity_at": 100,
    }
    values.update(overrides)
    return SessionRecord(**values)


class Clock:
    def __init__(self) -> None:
        self.value = 0

    def __call__(self) -> int:
        self.value += 10
        return self.value


def test_record_event_metadata_and_sequence(tmp_path: Path) -> None:
    store = make_store(tmp_path)

    first = store.record_event(
        row_key="repository::r1",
        event_type="repository_update",
        body={"id": "r1"},
        metadata={"url": "https://example.com/a", "repo_id": None},
    )
    second = store.record_event(row_key="repository::r1", event_type="repository_update", body="raw")

    assert first.metadata["sequence"] == 1
    assert second.metadata["sequence"] == 2
    assert "repo_id" not in first.metadata
    assert first.document == '{"id": "r1"}'
    assert second.document == "raw"
    assert [e.id for e in store.search_events(filters={"row_key": "repository::r1"})] == [first.id, second.id]


def test_unavailable_chroma_is_reported(tmp_path: Path) -> None:
    def broken():
        raise ChromaUnavailableError("chromadb package is not installed")

    store = ChromaStore(tmp_path, client_factory=broken)

    with pytest.raises(ChromaUnavailableError):
        store.ping()


def test_registry_record_fetch_is_find_or_insert(tmp_path: Path) -> None:
    registry = RepositoryRegistry(clock=Clock())

    first = registry.record_fetch(
        "https://github.com/dojoengine/katana.git", mirror_path="/m/katana.git", default_branch="main"
    )
    second = registry.record_fetch(
        "https://github.com/dojoengine/katana/", mirror_path="/m/katana.git", default_branch="develop"
    )

    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.last_fetched_at > first.last_fetched_at
    assert second.default_branch == "develop"
    assert registry.list_all() == [second]
    assert registry.find_by_url("https://github.com/dojoengine/katana") == second
    assert registry.find_by_id(first.id) == second
    assert registry.find_by_id("missing") is None


def test_registry_insert_keeps_existing_row() -> None:
    registry = RepositoryRegistry()
    original = RepositoryRecord(
        id="r1",
        url="https://example.com/a",
        slug="example-com-a",
        mirror_path="/m/a.git",
        default_branch="main",
        created_at=1,
        last_fetched_at=1,
    )

    assert registry.insert(original) is original
    duplicate = replace(original, id="r2")
    assert registry.insert(duplicate) is original
    assert [row.id for row in registry.list_all()] == ["r1"]


def test_registry_replays_latest_rows_from_store(tmp_path: Path) -> None:
    client = StubClient()
    registry = RepositoryRegistry(make_store(tmp_path, client), clock=Clock())
    row = registry.record_fetch("https://example.com/a", mirror_path="/m/a.git", default_branch="main")
    registry.record_fetch("https://example.com/a", mirror_path="/m/a.git", default_branch="trunk")

    replayed = RepositoryRegistry(make_store(tmp_path, client))

    [restored] = replayed.list_all()
    assert restored.id == row.id
    assert restored.default_branch == "trunk"
    assert replayed.find_by_url("https://example.com/a") == restored


def test_session_store_keys_by_session_and_cwd(tmp_path: Path) -> None:
    sessions = SessionStore()
    older = sessions.upsert(make_session(encoded_cwd="-a", cwd="/a", last_activity_at=10))
    newer = sessions.upsert(make_session(encoded_cwd="-b", cwd="/b", last_activity_at=20))

    assert sessions.get("s-1", "-a") == older
    assert sessions.get("s-1", "-c") is None
    assert sessions.find_candidates("s-1") == [newer, older]
    assert sessions.find_candidates("other") == []


def test_session_store_replays_from_store(tmp_path: Path) -> None:
    client = StubClient()
    store = make_store(tmp_path, client)
    sessions = SessionStore(store)
    sessions.upsert(make_session(message_count=1))
    sessions.upsert(make_session(message_count=3, total_cost_usd=0.5, repo_id="r1", branch="main"))
    sessions.upsert(make_session(session_id="s-2"), persist=False)

    replayed = SessionStore(make_store(tmp_path, client))

    [restored] = replayed.list_all()
    assert restored.message_count == 3
    assert restored.total_cost_usd == 0.5
    assert restored.repo_id == "r1"


def test_merge_indexed_preserves_manager_fields() -> None:
    sessions = SessionStore()
    sessions.upsert(
        make_session(
            title="",
            message_count=4,
            total_cost_usd=1.25,
            repo_id="r1",
            worktree_path="/w/abc",
            branch="main",
            last_activity_at=500,
        )
    )

    merged = sessions.merge_indexed(
        make_session(
            title="From transcript",
            source="index",
            message_count=2,
            updated_at=900,
            last_activity_at=400,
        )
    )

    assert merged.source == "manager"
    assert merged.repo_id == "r1"
    assert merged.total_cost_usd == 1.25
    assert merged.title == "From transcript"
    assert merged.message_count == 4
    assert merged.updated_at == 900
    assert merged.last_activity_at == 500


def test_merge_indexed_inserts_unknown_sessions() -> None:
    sessions = SessionStore()

    merged = sessions.merge_indexed(make_session(source="index"))

    assert sessions.get("s-1", "-tmp-project") == merged
    assert merged.source == "index"


def test_session_wire_omits_unset_optionals() -> None:
    wire = make_session().to_wire()

    assert "repo_id" not in wire
    assert wire["encoded_cwd"] == "-tmp-project"
    assert make_session(repo_id="r1").to_wire()["repo_id"] == "r1"
