"""Git workspace lifecycle: deduplicated mirrors and per-session worktrees."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import RequestValidationError, UpstreamError, WorkspaceError
from .locks import RepoLockTable
from .runner import GitRunner, serialize_result
from .utils import (
    WORKTREE_BRANCH_PREFIX,
    is_safe_worktree_id,
    normalize_repo_url,
    repo_url_to_slug,
    worktree_branch_name,
)

if TYPE_CHECKING:
    from ..storage.models import RepositoryRecord
    from ..storage.registry import RepositoryRegistry

logger = logging.getLogger(__name__)

FETCH_REFSPEC = "+refs/heads/*:refs/remotes/origin/*"
REMOTE_HEAD_REF = "refs/remotes/origin/HEAD"
REMOTE_PREFIX = "refs/remotes/origin/"
FALLBACK_BRANCH = "main"


class RepoState(str, Enum):
    ABSENT = "absent"
    CLONING = "cloning"
    READY = "ready"


@dataclass(slots=True)
class StageResult:
    """Outcome of one stage in a staged git algorithm."""

    stage: str
    ok: bool
    value: str | None = None
    diagnostic: str = ""


@dataclass(slots=True)
class BranchResolution:
    branch: str
    stage: str
    attempts: list[StageResult] = field(default_factory=list)


@dataclass(slots=True)
class RepoInfo:
    mirror_path: Path
    default_branch: str
    repository: "RepositoryRecord | None" = None


@dataclass(slots=True)
class WorktreeResult:
    worktree_path: Path
    branch: str
    local_branch: str
    base_ref: str


def _mirror_exists(mirror_path: Path) -> bool:
    return (mirror_path / "HEAD").is_file()


class WorkspaceManager:
    """Provision mirrors and isolated worktrees under ``projects_dir``.

    Mirrors live in ``repos/<slug>.git`` and checkouts in
    ``worktrees/<worktree_id>``. Mutating git operations on one mirror are
    serialized through a per-repository lock: clone and fetch exclusively,
    worktree add/remove shared.
    """

    def __init__(
        self,
        projects_dir: Path,
        *,
        runner: GitRunner,
        registry: "RepositoryRegistry | None" = None,
    ) -> None:
        self._projects_dir = Path(projects_dir)
        self._runner = runner
        self._registry = registry
        self._locks = RepoLockTable()
        self._states: dict[str, RepoState] = {}

    @property
    def projects_dir(self) -> Path:
        return self._projects_dir

    @property
    def repos_dir(self) -> Path:
        return self._projects_dir / "repos"

    @property
    def worktrees_dir(self) -> Path:
        return self._projects_dir / "worktrees"

    def mirror_path_for(self, url: str) -> Path:
        return self.repos_dir / f"{repo_url_to_slug(url)}.git"

    def worktree_path_for(self, worktree_id: str) -> Path:
        return self.worktrees_dir / worktree_id

    def state(self, mirror_path: Path) -> RepoState:
        return self._states.get(str(mirror_path), RepoState.ABSENT)

    async def ensure_repo(self, url: str) -> RepoInfo:
        """Clone ``url`` into a bare mirror, or refresh the existing mirror."""

        canonical = normalize_repo_url(url)
        if not canonical or not repo_url_to_slug(canonical):
            raise RequestValidationError("repo_url must not be empty")

        mirror_path = self.mirror_path_for(canonical)
        key = str(mirror_path)
        async with self._locks.get(key).exclusive():
            if await asyncio.to_thread(_mirror_exists, mirror_path):
                self._states[key] = RepoState.CLONING
                try:
                    await self._refresh(mirror_path)
                finally:
                    self._states[key] = RepoState.READY
            else:
                self._states[key] = RepoState.CLONING
                try:
                    await self._clone(canonical, mirror_path)
                except BaseException:
                    self._states[key] = RepoState.ABSENT
                    await asyncio.to_thread(shutil.rmtree, mirror_path, True)
                    raise
                self._states[key] = RepoState.READY

            default_branch = await self.get_default_branch(mirror_path)
            repository = None
            if self._registry is not None:
                repository = await asyncio.to_thread(
                    self._registry.record_fetch,
                    canonical,
                    mirror_path=str(mirror_path),
                    default_branch=default_branch,
                )

        logger.info(
            "Repository ready",
            extra={"url": canonical, "mirror_path": key, "default_branch": default_branch},
        )
        return RepoInfo(mirror_path=mirror_path, default_branch=default_branch, repository=repository)

    async def _clone(self, url: str, mirror_path: Path) -> None:
        # a directory without HEAD is the remains of an interrupted clone
        await asyncio.to_thread(shutil.rmtree, mirror_path, True)
        await asyncio.to_thread(mirror_path.parent.mkdir, parents=True, exist_ok=True)

        logger.info("Cloning repository", extra={"url": url, "mirror_path": str(mirror_path)})
        result = await self._runner.run("clone", "--bare", url, str(mirror_path))
        self._check(result, "git clone failed")

        # a bare clone does not populate refs/remotes/origin/* on fetch
        result = await self._runner.run(
            "config", "remote.origin.fetch", FETCH_REFSPEC, cwd=mirror_path
        )
        self._check(result, "git config failed")
        await self._refresh(mirror_path)

    async def _refresh(self, mirror_path: Path) -> None:
        result = await self._runner.run("fetch", "--all", "--prune", cwd=mirror_path)
        self._check(result, "git fetch failed")

    @staticmethod
    def _check(result, message: str) -> None:
        if not result.ok:
            logger.warning(message, extra={"result": serialize_result(result)})
            result.raise_for_status(message)

    async def list_branches(self, mirror_path: Path) -> list[str]:
        """Local and remote-tracking branch names, deduplicated, in ref order.

        Branches owned by worktrees (``wt/<id>``) are not listed.
        """

        result = await self._runner.run(
            "for-each-ref", "--format=%(refname)", "refs/heads", "refs/remotes", cwd=Path(mirror_path)
        )
        if not result.ok:
            return []

        branches: list[str] = []
        seen: set[str] = set()
        for line in result.stdout.splitlines():
            ref = line.strip()
            if ref.startswith("refs/heads/"):
                name = ref[len("refs/heads/"):]
            elif ref.startswith("refs/remotes/"):
                _, _, name = ref[len("refs/remotes/"):].partition("/")
                if name == "HEAD":
                    continue
            else:
                continue
            if name.startswith(WORKTREE_BRANCH_PREFIX):
                continue
            if name and name not in seen:
                seen.add(name)
                branches.append(name)
        return branches

    async def resolve_default_branch(self, mirror_path: Path) -> BranchResolution:
        """Resolve the default branch in stages, keeping each stage's outcome."""

        attempts: list[StageResult] = []

        remote_head = await self._stage_remote_head(Path(mirror_path))
        attempts.append(remote_head)
        if remote_head.ok and remote_head.value:
            return BranchResolution(branch=remote_head.value, stage=remote_head.stage, attempts=attempts)

        branches = await self.list_branches(mirror_path)
        for preferred in ("main", "master"):
            stage = StageResult(stage=f"prefer_{preferred}", ok=preferred in branches, value=preferred)
            attempts.append(stage)
            if stage.ok:
                return BranchResolution(branch=preferred, stage=stage.stage, attempts=attempts)

        if branches:
            stage = StageResult(stage="first_listed", ok=True, value=branches[0])
            attempts.append(stage)
            return BranchResolution(branch=branches[0], stage=stage.stage, attempts=attempts)

        attempts.append(StageResult(stage="fallback", ok=True, value=FALLBACK_BRANCH))
        return BranchResolution(branch=FALLBACK_BRANCH, stage="fallback", attempts=attempts)

    async def _stage_remote_head(self, mirror_path: Path) -> StageResult:
        result = await self._runner.run("symbolic-ref", REMOTE_HEAD_REF, cwd=mirror_path)
        ref = result.stdout.strip()
        if not result.ok or not ref:
            return StageResult(stage="remote_head", ok=False, diagnostic=result.diagnostic)
        branch = ref[len(REMOTE_PREFIX):] if ref.startswith(REMOTE_PREFIX) else ref
        return StageResult(stage="remote_head", ok=bool(branch), value=branch)

    async def get_default_branch(self, mirror_path: Path) -> str:
        resolution = await self.resolve_default_branch(mirror_path)
        return resolution.branch

    async def create_worktree(
        self,
        mirror_path: Path,
        *,
        worktree_id: str,
        branch: str | None = None,
    ) -> WorktreeResult:
        """Check out ``branch`` (default branch when omitted) into a fresh worktree."""

        if not is_safe_worktree_id(worktree_id):
            raise RequestValidationError(f"Invalid worktree id '{worktree_id}'")

        mirror_path = Path(mirror_path)
        worktree_path = self.worktree_path_for(worktree_id)
        local_branch = worktree_branch_name(worktree_id)

        async with self._locks.get(str(mirror_path)).shared():
            target = branch or await self.get_default_branch(mirror_path)
            await asyncio.to_thread(self.worktrees_dir.mkdir, parents=True, exist_ok=True)

            attempts: list[StageResult] = []
            for base_ref in (f"origin/{target}", target):
                attempt = await self._attempt_worktree_add(mirror_path, worktree_path, local_branch, base_ref)
                attempts.append(attempt)
                if attempt.ok:
                    logger.info(
                        "Created worktree",
                        extra={
                            "worktree_path": str(worktree_path),
                            "branch": target,
                            "local_branch": local_branch,
                            "base_ref": base_ref,
                        },
                    )
                    return WorktreeResult(
                        worktree_path=worktree_path,
                        branch=target,
                        local_branch=local_branch,
                        base_ref=base_ref,
                    )

        diagnostic = "\n".join(f"{a.value}: {a.diagnostic}" for a in attempts)
        logger.warning(
            "git worktree add failed",
            extra={"mirror_path": str(mirror_path), "branch": target, "diagnostic": diagnostic},
        )
        raise WorkspaceError("git worktree add failed", diagnostic=diagnostic)

    async def _attempt_worktree_add(
        self,
        mirror_path: Path,
        worktree_path: Path,
        local_branch: str,
        base_ref: str,
    ) -> StageResult:
        result = await self._runner.run(
            "worktree", "add", "--no-track", "-b", local_branch, str(worktree_path), base_ref,
            cwd=mirror_path,
        )
        return StageResult(stage="worktree_add", ok=result.ok, value=base_ref, diagnostic=result.diagnostic)

    async def remove_worktree(self, mirror_path: Path, worktree_path: Path) -> bool:
        """Remove a worktree and its local branch; failures are logged, never raised."""

        mirror_path = Path(mirror_path)
        worktree_path = Path(worktree_path)
        removed = False
        async with self._locks.get(str(mirror_path)).shared():
            try:
                result = await self._runner.run(
                    "worktree", "remove", "--force", str(worktree_path), cwd=mirror_path
                )
                removed = result.ok
                if not result.ok:
                    logger.warning(
                        "git worktree remove failed",
                        extra={"worktree_path": str(worktree_path), "diagnostic": result.diagnostic},
                    )
                if is_safe_worktree_id(worktree_path.name):
                    result = await self._runner.run(
                        "branch", "-D", worktree_branch_name(worktree_path.name), cwd=mirror_path
                    )
                    if not result.ok:
                        logger.debug(
                            "Worktree branch cleanup skipped",
                            extra={"worktree_path": str(worktree_path), "diagnostic": result.diagnostic},
                        )
            except (UpstreamError, OSError) as exc:
                logger.warning(
                    "Worktree removal failed",
                    extra={"worktree_path": str(worktree_path), "error": str(exc)},
                )
        return removed


__all__ = [
    "BranchResolution",
    "RepoInfo",
    "RepoState",
    "StageResult",
    "WorkspaceManager",
    "WorktreeResult",
]
