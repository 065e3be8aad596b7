"""Utility helpers for git subprocesses and repository naming."""

from __future__ import annotations

import os
import re
from typing import Mapping

_SANITIZED_VARS = {
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_OBJECT_DIRECTORY",
    "GIT_ALTERNATE_OBJECT_DIRECTORIES",
    "GIT_NAMESPACE",
}

_SCHEME_RE = re.compile(r"^[a-zA-Z]+://")
_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]+")
_WORKTREE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

WORKTREE_BRANCH_PREFIX = "wt/"


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for git subprocess execution.

    Repository-location overrides inherited from the parent process are
    removed and interactive credential prompts are disabled, so a clone of a
    private repository fails instead of hanging on a terminal prompt.
    """

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    env["GIT_TERMINAL_PROMPT"] = "0"
    if additional:
        env.update(additional)
    return env


def normalize_repo_url(url: str) -> str:
    return url.strip().rstrip("/")


def repo_url_to_slug(url: str) -> str:
    """Derive the filesystem slug for a repository URL.

    ``https://github.com/dojoengine/katana.git`` -> ``github-com-dojoengine-katana``
    """

    slug = _SCHEME_RE.sub("", normalize_repo_url(url))
    if slug.endswith(".git"):
        slug = slug[: -len(".git")]
    slug = _NON_ALNUM_RE.sub("-", slug).strip("-")
    return slug.lower()


def is_safe_worktree_id(worktree_id: str) -> bool:
    return bool(_WORKTREE_ID_RE.match(worktree_id)) and ".." not in worktree_id


def worktree_branch_name(worktree_id: str) -> str:
    """Local branch owned by a single worktree.

    git refuses to check out one branch name in two worktrees, so every
    worktree gets its own branch even when sessions target the same upstream.
    """

    return f"{WORKTREE_BRANCH_PREFIX}{worktree_id}"


__all__ = [
    "WORKTREE_BRANCH_PREFIX",
    "is_safe_worktree_id",
    "normalize_repo_url",
    "repo_url_to_slug",
    "sanitize_environment",
    "worktree_branch_name",
]
