"""Async runner for the git CLI."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from ..errors import GitTimeoutError, UpstreamError
from .utils import sanitize_environment

logger = logging.getLogger(__name__)


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Kill ``process`` if it is still running and wait until it has exited."""

    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await asyncio.shield(process.wait())


class GitNotFoundError(UpstreamError):
    """Raised when the git executable cannot be located."""


@dataclass(slots=True)
class GitResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        return self.stderr.strip() or self.stdout.strip()

    def raise_for_status(self, message: str) -> "GitResult":
        if not self.ok:
            raise UpstreamError(
                message,
                diagnostic=self.diagnostic,
                command=self.args,
                returncode=self.returncode,
            )
        return self


class GitRunner:
    """Execute git commands asynchronously with a bounded wait."""

    def __init__(self, executable: Path | None = None, *, timeout: float = 300.0) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._timeout = timeout

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    @property
    def timeout(self) -> float:
        return self._timeout

    async def run(self, *args: str, cwd: Path | None = None) -> GitResult:
        """Run ``git <args>``; a non-zero exit is returned, a timeout is raised."""

        return await self._invoke(args, cwd)

    async def _invoke(self, args: tuple[str, ...], cwd: Path | None) -> GitResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            await _reap(process)
            logger.warning(
                "git command timed out",
                extra={"git_args": list(args), "cwd": str(cwd) if cwd else None, "timeout": self._timeout},
            )
            raise GitTimeoutError(
                f"git {args[0] if args else ''} timed out after {self._timeout:g}s",
                command=tuple(cmd),
            ) from None
        except BaseException:
            # git must have exited before the caller releases its repository lock
            await _reap(process)
            logger.info(
                "git command cancelled",
                extra={"git_args": list(args), "cwd": str(cwd) if cwd else None},
            )
            raise
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GitResult(args=tuple(args), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeGitRunner(GitRunner):
    """Test double that simulates git responses.

    Responses are taken from ``responder`` when given, otherwise from the
    ``responses`` queue, otherwise a successful empty result is returned.
    """

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[GitResult] | None = None,
        *,
        responder: Callable[[tuple[str, ...], Path | None], GitResult | None] | None = None,
        delay: float = 0.0,
    ) -> None:
        self._responses = list(responses or [])
        self._responder = responder
        self._delay = delay
        self._invocations: list[tuple[tuple[str, ...], Path | None]] = []
        self._executable_path = Path("/tmp/fake-git")
        self._timeout = 1.0

    async def _invoke(self, args: tuple[str, ...], cwd: Path | None) -> GitResult:  # type: ignore[override]
        self._invocations.append((tuple(args), cwd))
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._responder is not None:
            result = self._responder(tuple(args), cwd)
            if result is not None:
                return result
        if self._responses:
            return self._responses.pop(0)
        return GitResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[tuple[str, ...], Path | None]]:
        return self._invocations

    def commands(self) -> list[tuple[str, ...]]:
        return [args for args, _ in self._invocations]


def serialize_result(result: GitResult) -> str:
    """Serialize a command result for logs and diagnostics output."""

    return json.dumps(
        {
            "args": list(result.args),
            "returncode": result.returncode,
            "stdout": result.stdout,
            "stderr": result.stderr,
        }
    )


__all__ = ["FakeGitRunner", "GitNotFoundError", "GitResult", "GitRunner", "serialize_result"]
