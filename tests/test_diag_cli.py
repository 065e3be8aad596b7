from __future__ import annotations

import argparse
import importlib.util
import json
from collections import defaultdict
from pathlib import Path

import pytest

from cc_manager.config import ManagerSettings
from cc_manager.storage import (
    ChromaStore,
    ChromaUnavailableError,
    RepositoryRecord,
    SessionRecord,
)


def load_diag(name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "manager_diag.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


class StubCollection:
    def __init__(self) -> None:
        self.rows: list[tuple[str, str, dict]] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, row_id in zip(documents, metadatas, ids):
            self.rows.append((row_id, document, dict(metadata)))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        rows = [
            row for row in self.rows if not where or all(row[2].get(k) == v for k, v in where.items())
        ]
        return {
            "ids": [row[0] for row in rows],
            "documents": [row[1] for row in rows],
            "metadatas": [row[2] for row in rows],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def seeded_store(tmp_path: Path) -> ChromaStore:
    client = StubClient()
    store = ChromaStore(tmp_path, client_factory=lambda: client)
    repo = RepositoryRecord(
        id="r1",
        url="https://github.com/dojoengine/katana.git",
        slug="github-com-dojoengine-katana",
        mirror_path="/m/github-com-dojoengine-katana.git",
        default_branch="main",
        created_at=1,
        last_fetched_at=2,
    )
    store.record_repository(repo)
    base = {"cwd": "/w", "title": "t", "created_at": 1, "updated_at": 1}
    store.record_session(
        SessionRecord(
            session_id="s-1",
            encoded_cwd="-w-1",
            last_activity_at=10,
            repo_id="r1",
            worktree_path="/w/1",
            total_cost_usd=0.25,
            **base,
        )
    )
    store.record_session(
        SessionRecord(session_id="s-2", encoded_cwd="-w", last_activity_at=30, source="index", **base)
    )
    store.record_session(
        SessionRecord(
            session_id="s-3",
            encoded_cwd="-w-3",
            last_activity_at=20,
            repo_id="r1",
            worktree_path="/w/3",
            total_cost_usd=0.5,
            **base,
        )
    )
    return store


def test_missing_chroma_exits_with_message(monkeypatch, capsys, tmp_path: Path) -> None:
    diag = load_diag("manager_diag_missing")

    def broken():
        raise ChromaUnavailableError("chromadb package is not installed")

    monkeypatch.setattr(diag, "ChromaStore", lambda path: ChromaStore(path, client_factory=broken))

    with pytest.raises(SystemExit) as excinfo:
        diag.main(["repos"])

    assert excinfo.value.code == 1
    assert "Chroma unavailable" in capsys.readouterr().out


def test_metrics_summarizes_rows(monkeypatch, capsys, tmp_path: Path) -> None:
    diag = load_diag("manager_diag_metrics")
    store = seeded_store(tmp_path)
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    diag.cmd_metrics(argparse.Namespace())

    payload = json.loads(capsys.readouterr().out)
    assert payload["repositories_total"] == 1
    assert payload["sessions_total"] == 3
    assert payload["worktree_sessions"] == 2
    assert payload["session_source_counts"] == {"manager": 2, "index": 1}
    assert payload["sessions_per_repository"] == {"r1": 2}
    assert payload["total_cost_usd"] == 0.75
    assert payload["repository_events"] == 1
    assert payload["session_events"] == 3


def test_sessions_filters_and_limits(monkeypatch, capsys, tmp_path: Path) -> None:
    diag = load_diag("manager_diag_sessions")
    store = seeded_store(tmp_path)
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    diag.main(["sessions", "--repo-id", "r1", "--limit", "1"])

    output = json.loads(capsys.readouterr().out)
    assert [row["session_id"] for row in output] == ["s-3"]


def test_repos_json_output(monkeypatch, capsys, tmp_path: Path) -> None:
    diag = load_diag("manager_diag_repos")
    store = seeded_store(tmp_path)
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)

    diag.main(["repos", "--json"])

    [repo] = json.loads(capsys.readouterr().out)
    assert repo["url"] == "https://github.com/dojoengine/katana.git"
    assert repo["mirror_path"].endswith("github-com-dojoengine-katana.git")


def test_no_command_prints_help(capsys) -> None:
    diag = load_diag("manager_diag_help")

    diag.main([])

    assert "Session manager diagnostics" in capsys.readouterr().out


def test_load_store_uses_configured_path(monkeypatch, tmp_path: Path) -> None:
    diag = load_diag("manager_diag_path")
    seen: list[Path] = []

    def fake_store(path):
        seen.append(path)
        return ChromaStore(path, client_factory=StubClient)

    monkeypatch.setattr(diag, "ChromaStore", fake_store)

    diag.load_store(ManagerSettings(chroma_persist_path=tmp_path / "chroma"))

    assert seen == [(tmp_path / "chroma").resolve()]
