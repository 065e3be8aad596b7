"""Git mirror and worktree management."""

from .locks import RepoLock, RepoLockTable
from .manager import (
    BranchResolution,
    RepoInfo,
    RepoState,
    StageResult,
    WorkspaceManager,
    WorktreeResult,
)
from .runner import FakeGitRunner, GitNotFoundError, GitResult, GitRunner, serialize_result
from .utils import normalize_repo_url, repo_url_to_slug, worktree_branch_name

__all__ = [
    "BranchResolution",
    "FakeGitRunner",
    "GitNotFoundError",
    "GitResult",
    "GitRunner",
    "RepoInfo",
    "RepoLock",
    "RepoLockTable",
    "RepoState",
    "StageResult",
    "WorkspaceManager",
    "WorktreeResult",
    "normalize_repo_url",
    "repo_url_to_slug",
    "serialize_result",
    "worktree_branch_name",
]
