"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(slots=True)
class RepositoryRecord:
    id: str
    url: str
    slug: str
    mirror_path: str
    default_branch: str
    created_at: int
    last_fetched_at: int

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "slug": self.slug,
            "default_branch": self.default_branch,
            "created_at": self.created_at,
            "last_fetched_at": self.last_fetched_at,
        }


@dataclass(slots=True)
class SessionRecord:
    session_id: str
    encoded_cwd: str
    cwd: str
    title: str
    created_at: int
    updated_at: int
    last_activity_at: int
    source: str = "manager"
    message_count: int = 0
    total_cost_usd: float = 0.0
    repo_id: str | None = None
    worktree_path: str | None = None
    branch: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.session_id, self.encoded_cwd)

    def to_wire(self) -> dict[str, Any]:
        payload = asdict(self)
        for optional in ("repo_id", "worktree_path", "branch"):
            if payload[optional] is None:
                payload.pop(optional)
        return payload


__all__ = ["RepositoryRecord", "SessionRecord"]
