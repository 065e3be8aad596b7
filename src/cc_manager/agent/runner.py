"""Async runner for the Claude CLI, consumed as a streamed event producer."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable

from ..errors import ManagerError
from ..utils import extract_text_blocks
from ..workspace.utils import sanitize_environment

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024


class AgentRunnerError(ManagerError):
    """Base class for agent runner errors."""

    code = "agent_error"


class AgentNotFoundError(AgentRunnerError):
    """Raised when the Claude CLI executable cannot be located."""


@dataclass(slots=True)
class AgentEvent:
    """One increment produced by the agent.

    ``kind`` is ``delta`` for assistant text, ``result`` for the closing
    summary (cost and stats in ``payload``) and ``message`` for anything else.
    """

    kind: str
    text: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentExecutionResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def parse_stream_line(line: str) -> AgentEvent | None:
    """Translate one ``stream-json`` line into an :class:`AgentEvent`."""

    line = line.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON agent output", extra={"line": line[:200]})
        return None
    if not isinstance(payload, dict):
        return None

    kind = payload.get("type")
    if kind == "assistant":
        message = payload.get("message") or {}
        text = extract_text_blocks(message.get("content"))
        if text:
            return AgentEvent(kind="delta", text=text, payload=payload)
    elif kind == "result":
        return AgentEvent(kind="result", text=str(payload.get("result") or ""), payload=payload)
    return AgentEvent(kind="message", payload=payload)


class AgentStream:
    """Strictly ordered, cancellable producer of :class:`AgentEvent` for one request.

    Cancellation is observable by the producer: iteration stops at the next
    event boundary once :meth:`cancel` has been called.
    """

    def __init__(self) -> None:
        self._cancel_event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    async def aclose(self) -> None:
        """Cancel the stream and wait until whatever produces it has stopped."""

        self.cancel()

    def __aiter__(self) -> AsyncIterator[AgentEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[AgentEvent]:  # pragma: no cover - abstract
        raise NotImplementedError
        yield


class ProcessAgentStream(AgentStream):
    """Stream backed by a running CLI process emitting JSON lines on stdout."""

    def __init__(self, process: asyncio.subprocess.Process, args: tuple[str, ...]) -> None:
        super().__init__()
        self._process = process
        self._args = args
        self._stderr: list[bytes] = []
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _drain_stderr(self) -> None:
        if self._process.stderr is None:
            return
        while True:
            chunk = await self._process.stderr.read(4096)
            if not chunk:
                return
            self._stderr.append(chunk)

    def cancel(self) -> None:
        super().cancel()
        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    async def aclose(self) -> None:
        self.cancel()
        await self._reap()

    async def _reap(self) -> int:
        if self.cancelled and self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
        returncode = await self._process.wait()
        if self.cancelled:
            self._stderr_task.cancel()
        await asyncio.gather(self._stderr_task, return_exceptions=True)
        return returncode

    async def _iterate(self) -> AsyncIterator[AgentEvent]:
        assert self._process.stdout is not None
        try:
            while not self.cancelled:
                line = await self._process.stdout.readline()
                if not line:
                    break
                event = parse_stream_line(line.decode("utf-8", errors="replace"))
                if event is not None and not self.cancelled:
                    yield event
        finally:
            returncode = await self._reap()

        if returncode != 0 and not self.cancelled:
            stderr = b"".join(self._stderr).decode("utf-8", errors="replace").strip()
            raise AgentRunnerError(
                f"Agent exited with code {returncode}",
                details={"returncode": returncode, "diagnostic": stderr},
            )


class AgentRunner:
    """Interface for the model execution collaborator."""

    async def version(self) -> AgentExecutionResult:
        raise NotImplementedError

    async def start(
        self,
        prompt: str,
        *,
        cwd: Path,
        session_id: str,
        resume: bool = False,
    ) -> AgentStream:
        raise NotImplementedError


class ClaudeRunner(AgentRunner):
    """Execute the Claude CLI in print mode with streamed JSON output."""

    def __init__(self, executable: Path | None = None, *, model: str | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._model = model

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"Claude executable not found at {candidate}")

        binary = shutil.which("claude")
        if binary is None:
            raise AgentNotFoundError("Claude CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> AgentExecutionResult:
        cmd = [str(self._executable_path), "--version"]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        return AgentExecutionResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    def build_args(self, prompt: str, *, session_id: str, resume: bool) -> list[str]:
        args = ["--print", "--output-format", "stream-json", "--verbose"]
        if resume:
            args += ["--resume", session_id]
        else:
            args += ["--session-id", session_id]
        if self._model:
            args += ["--model", self._model]
        args += ["--", prompt]
        return args

    async def start(
        self,
        prompt: str,
        *,
        cwd: Path,
        session_id: str,
        resume: bool = False,
    ) -> AgentStream:
        args = self.build_args(prompt, session_id=session_id, resume=resume)
        cmd = [str(self._executable_path), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise AgentRunnerError(
                f"Failed to start agent: {exc}", details={"cwd": str(cwd)}
            ) from exc
        logger.info(
            "Agent started",
            extra={"session_id": session_id, "resume": resume, "cwd": str(cwd), "pid": process.pid},
        )
        return ProcessAgentStream(process, tuple(cmd))


class FakeAgentStream(AgentStream):
    def __init__(
        self,
        events: list[AgentEvent],
        *,
        delay: float = 0.0,
        fail_with: Exception | None = None,
    ) -> None:
        super().__init__()
        self._events = events
        self._delay = delay
        self._fail_with = fail_with
        self.closed = False

    async def aclose(self) -> None:
        await super().aclose()
        self.closed = True

    async def _iterate(self) -> AsyncIterator[AgentEvent]:
        for event in self._events:
            if self._delay:
                try:
                    await asyncio.wait_for(self._cancel_event.wait(), timeout=self._delay)
                except asyncio.TimeoutError:
                    pass
            if self.cancelled:
                return
            yield event
        if self._fail_with is not None:
            raise self._fail_with


class FakeAgentRunner(AgentRunner):
    """Test double that replays scripted text chunks followed by a result."""

    def __init__(
        self,
        chunks: Iterable[str] = ("Hello", " world"),
        *,
        delay: float = 0.0,
        cost: float = 0.01,
        fail_with: Exception | None = None,
        responder: Callable[[str], Iterable[str]] | None = None,
    ) -> None:
        self._chunks = list(chunks)
        self._responder = responder
        self._delay = delay
        self._cost = cost
        self._fail_with = fail_with
        self._invocations: list[dict[str, Any]] = []
        self._streams: list[FakeAgentStream] = []

    async def version(self) -> AgentExecutionResult:
        return AgentExecutionResult(args=("--version",), returncode=0, stdout="fake-claude 0.0\n", stderr="")

    async def start(
        self,
        prompt: str,
        *,
        cwd: Path,
        session_id: str,
        resume: bool = False,
    ) -> AgentStream:
        self._invocations.append(
            {"prompt": prompt, "cwd": str(cwd), "session_id": session_id, "resume": resume}
        )
        chunks = list(self._responder(prompt)) if self._responder is not None else self._chunks
        events = [AgentEvent(kind="delta", text=chunk) for chunk in chunks]
        if self._fail_with is None:
            events.append(
                AgentEvent(
                    kind="result",
                    text="".join(chunks),
                    payload={"type": "result", "total_cost_usd": self._cost, "num_turns": 1},
                )
            )
        stream = FakeAgentStream(events, delay=self._delay, fail_with=self._fail_with)
        self._streams.append(stream)
        return stream

    @property
    def invocations(self) -> list[dict[str, Any]]:
        return self._invocations

    @property
    def streams(self) -> list[FakeAgentStream]:
        return self._streams


__all__ = [
    "AgentEvent",
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "AgentStream",
    "ClaudeRunner",
    "FakeAgentRunner",
    "FakeAgentStream",
    "ProcessAgentStream",
    "parse_stream_line",
]
