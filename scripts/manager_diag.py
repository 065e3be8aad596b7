"""Session manager diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from cc_manager.config import ManagerSettings
from cc_manager.storage import ChromaStore, ChromaUnavailableError
from cc_manager.storage.chroma import REPOSITORY_EVENT, SESSION_EVENT


def load_store(settings: ManagerSettings) -> ChromaStore:
    store = ChromaStore(settings.resolved().chroma_persist_path)
    try:
        store.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return store


def cmd_repos(args: argparse.Namespace) -> None:
    store = load_store(ManagerSettings())
    repositories = sorted(store.list_repositories(), key=lambda record: record.created_at)
    if args.json:
        print(json.dumps([asdict(record) for record in repositories], indent=2))
    else:
        for record in repositories:
            print(f"{record.id} {record.url} [{record.default_branch}] -> {record.mirror_path}")


def cmd_sessions(args: argparse.Namespace) -> None:
    store = load_store(ManagerSettings())
    sessions = sorted(store.list_sessions(), key=lambda record: record.last_activity_at, reverse=True)
    if args.repo_id:
        sessions = [record for record in sessions if record.repo_id == args.repo_id]
    if args.limit is not None and args.limit > 0:
        sessions = sessions[: args.limit]
    print(json.dumps([record.to_wire() for record in sessions], indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    store = load_store(ManagerSettings())
    repositories = store.list_repositories()
    sessions = store.list_sessions()
    repository_events = store.search_events(filters={"event_type": REPOSITORY_EVENT})
    session_events = store.search_events(filters={"event_type": SESSION_EVENT})

    source_counts: dict[str, int] = {}
    for record in sessions:
        source_counts[record.source] = source_counts.get(record.source, 0) + 1

    sessions_per_repo: dict[str, int] = {}
    for record in sessions:
        if record.repo_id:
            sessions_per_repo[record.repo_id] = sessions_per_repo.get(record.repo_id, 0) + 1

    metrics = {
        "repositories_total": len(repositories),
        "sessions_total": len(sessions),
        "worktree_sessions": sum(1 for record in sessions if record.worktree_path),
        "session_source_counts": source_counts,
        "sessions_per_repository": sessions_per_repo,
        "total_cost_usd": round(sum(record.total_cost_usd for record in sessions), 6),
        "repository_events": len(repository_events),
        "session_events": len(session_events),
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Session manager diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_repos = sub.add_parser("repos", help="List registered repositories")
    p_repos.add_argument("--json", action="store_true", help="Output JSON")
    p_repos.set_defaults(func=cmd_repos)

    p_sessions = sub.add_parser("sessions", help="List indexed sessions")
    p_sessions.add_argument("--repo-id")
    p_sessions.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the N most recently active sessions",
    )
    p_sessions.set_defaults(func=cmd_sessions)

    p_metrics = sub.add_parser("metrics", help="Show repository/session counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
