"""Session and request orchestration.

The orchestrator owns the lifecycle of requests (one prompt/response exchange)
and sessions (a conversation bound to a working directory). All per-connection
mutable state lives in a :class:`ConnectionContext` passed through every call.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Coroutine, Union

from .agent.runner import AgentEvent, AgentRunner, AgentRunnerError, AgentStream
from .errors import ManagerError, RepoNotFoundError, RequestValidationError, SessionNotFoundError
from .history import HistoryIndexer
from .protocol import (
    ErrorFrame,
    Frame,
    RepoListFrame,
    SessionCreate,
    SessionCreated,
    SessionMeta,
    SessionStateFrame,
    StreamDelta,
    StreamDone,
    StreamMessage,
)
from .storage.models import RepositoryRecord, SessionRecord
from .storage.registry import RepositoryRegistry, SessionStore
from .utils import encode_cwd, now_ms, truncate
from .workspace.manager import WorkspaceManager, WorktreeResult

logger = logging.getLogger(__name__)

TITLE_LIMIT = 80

SendFunc = Callable[[dict[str, Any]], Awaitable[None]]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class RequestStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    DONE = "done"
    ERRORED = "errored"


@dataclass(slots=True)
class RequestState:
    request_id: str
    session_id: str | None = None
    encoded_cwd: str | None = None
    status: RequestStatus = RequestStatus.PENDING
    chunks: list[str] = field(default_factory=list)
    stream: AgentStream | None = None

    @property
    def accumulated_text(self) -> str:
        return "".join(self.chunks)

    def append(self, text: str) -> None:
        self.chunks.append(text)


class ConnectionContext:
    """Connection-scoped state: the outbound channel and the active requests.

    A request leaves the active set exactly once, through :meth:`finish` or
    :meth:`close`.
    """

    def __init__(self, send: SendFunc, *, client_id: str | None = None) -> None:
        self.client_id = client_id or uuid.uuid4().hex
        self.state = ConnectionState.CONNECTING
        self.requests: dict[str, RequestState] = {}
        self._send = send
        self._send_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def active_request_ids(self) -> set[str]:
        return set(self.requests)

    def mark_connected(self) -> None:
        if self.state is ConnectionState.CONNECTING:
            self.state = ConnectionState.CONNECTED

    async def emit(self, frame: Frame) -> bool:
        """Send one frame; returns ``False`` once the connection is gone."""

        if self.state is ConnectionState.DISCONNECTED:
            return False
        async with self._send_lock:
            try:
                await self._send(frame.dump())
            except (ConnectionError, RuntimeError) as exc:
                logger.debug(
                    "Dropping outbound frame",
                    extra={"client_id": self.client_id, "error": str(exc)},
                )
                return False
        return True

    def register(self, request_id: str) -> RequestState:
        if request_id in self.requests:
            raise RequestValidationError(
                f"Request '{request_id}' is already active", details={"request_id": request_id}
            )
        request = RequestState(request_id=request_id)
        self.requests[request_id] = request
        return request

    def is_active(self, request: RequestState) -> bool:
        return self.requests.get(request.request_id) is request

    def finish(self, request_id: str, status: RequestStatus) -> RequestState | None:
        """Remove a request from the active set; ``None`` if it already left."""

        request = self.requests.pop(request_id, None)
        if request is not None:
            request.status = status
        return request

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> list[str]:
        """Enter the terminal state, cancel in-flight generations and clear requests."""

        self.state = ConnectionState.DISCONNECTED
        dropped = list(self.requests)
        for request in self.requests.values():
            if request.stream is not None:
                request.stream.cancel()
        self.requests.clear()

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return dropped


@dataclass(frozen=True, slots=True)
class NoOrigin:
    pass


@dataclass(frozen=True, slots=True)
class CwdOrigin:
    cwd: str


@dataclass(frozen=True, slots=True)
class RepoUrlOrigin:
    url: str
    branch: str | None = None


@dataclass(frozen=True, slots=True)
class RepoIdOrigin:
    repo_id: str
    branch: str | None = None


Origin = Union[NoOrigin, CwdOrigin, RepoUrlOrigin, RepoIdOrigin]


def origin_from_create(message: SessionCreate) -> Origin:
    """Pick the origin of a create request: repo id, then repo url, then cwd."""

    if message.repo_id:
        return RepoIdOrigin(repo_id=message.repo_id, branch=message.branch)
    if message.repo_url:
        return RepoUrlOrigin(url=message.repo_url, branch=message.branch)
    if message.cwd:
        return CwdOrigin(cwd=message.cwd)
    return NoOrigin()


@dataclass(slots=True)
class Workdir:
    cwd: Path
    repository: RepositoryRecord | None = None
    mirror_path: Path | None = None
    worktree: WorktreeResult | None = None


def session_meta(record: SessionRecord) -> SessionMeta:
    return SessionMeta(**record.to_wire())


def error_frame(exc: ManagerError, request_id: str | None) -> ErrorFrame:
    return ErrorFrame(
        code=exc.code,
        message=exc.message,
        request_id=request_id,
        details=exc.details or None,
    )


class SessionOrchestrator:
    """Resolve workspaces and drive streamed responses for each request."""

    def __init__(
        self,
        *,
        sessions: SessionStore,
        registry: RepositoryRegistry,
        agent: AgentRunner | None,
        workspace: WorkspaceManager | None = None,
        indexer: HistoryIndexer | None = None,
        default_cwd: Path | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._sessions = sessions
        self._registry = registry
        self._agent = agent
        self._workspace = workspace
        self._indexer = indexer
        self._default_cwd = Path(default_cwd or Path.home())
        self._clock = clock

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def registry(self) -> RepositoryRegistry:
        return self._registry

    @property
    def indexer(self) -> HistoryIndexer | None:
        return self._indexer

    async def admit(self, ctx: ConnectionContext, request_id: str | None) -> RequestState | None:
        """Enter a request into the connection's active set before any work is scheduled.

        A later ``stop`` for the same id then always finds it. Returns ``None``
        after reporting a duplicate id to the client.
        """

        request_id = request_id or uuid.uuid4().hex
        try:
            return ctx.register(request_id)
        except ManagerError as exc:
            await ctx.emit(error_frame(exc, request_id))
            return None

    async def create(
        self,
        ctx: ConnectionContext,
        *,
        prompt: str,
        origin: Origin,
        request_id: str | None = None,
        title: str | None = None,
        request: RequestState | None = None,
    ) -> str:
        """Create a session for ``origin`` and stream the first response.

        ``request`` is a request already admitted with :meth:`admit`; otherwise
        one is registered here. Returns the request id, allocated here when the
        client sent none.
        """

        if request is None:
            request = await self.admit(ctx, request_id)
            if request is None:
                return request_id
        request_id = request.request_id
        if not ctx.is_active(request):
            logger.info("Request stopped before it started", extra={"request_id": request_id})
            return request_id

        workdir: Workdir | None = None
        record: SessionRecord | None = None
        try:
            if not prompt.strip():
                raise RequestValidationError("prompt must not be empty")
            self._require_agent()
            workdir = await self._resolve_origin(origin)
            if not ctx.is_active(request):
                logger.info("Request stopped during provisioning", extra={"request_id": request_id})
                return request_id

            timestamp = self._clock()
            cwd = str(workdir.cwd)
            record = SessionRecord(
                session_id=str(uuid.uuid4()),
                encoded_cwd=encode_cwd(cwd),
                cwd=cwd,
                title=title or truncate(prompt.strip(), TITLE_LIMIT),
                created_at=timestamp,
                updated_at=timestamp,
                last_activity_at=timestamp,
                source="manager",
                message_count=1,
                repo_id=workdir.repository.id if workdir.repository else None,
                worktree_path=str(workdir.worktree.worktree_path) if workdir.worktree else None,
                branch=workdir.worktree.branch if workdir.worktree else None,
            )
            await asyncio.to_thread(self._sessions.upsert, record)
        except ManagerError as exc:
            await self._fail(ctx, request_id, exc)
            return request_id
        except Exception:
            logger.exception("Session creation failed", extra={"request_id": request_id})
            await self._fail(ctx, request_id, ManagerError("Session creation failed"))
            return request_id
        finally:
            if record is None and workdir is not None and workdir.worktree is not None:
                await self._workspace.remove_worktree(workdir.mirror_path, workdir.worktree.worktree_path)

        request.session_id = record.session_id
        request.encoded_cwd = record.encoded_cwd
        logger.info(
            "Session created",
            extra={
                "request_id": request_id,
                "session_id": record.session_id,
                "cwd": record.cwd,
                "repo_id": record.repo_id,
            },
        )
        await ctx.emit(
            SessionCreated(
                request_id=request_id,
                session_id=record.session_id,
                encoded_cwd=record.encoded_cwd,
                cwd=record.cwd,
                session=session_meta(record),
            )
        )
        await self._run_stream(ctx, request, record, prompt, resume=False)
        return request_id

    async def send(
        self,
        ctx: ConnectionContext,
        *,
        session_id: str,
        encoded_cwd: str,
        prompt: str,
        request_id: str | None = None,
        request: RequestState | None = None,
    ) -> str:
        """Continue an existing session identified by ``(session_id, encoded_cwd)``."""

        if request is None:
            request = await self.admit(ctx, request_id)
            if request is None:
                return request_id
        request_id = request.request_id
        if not ctx.is_active(request):
            logger.info("Request stopped before it started", extra={"request_id": request_id})
            return request_id

        try:
            if not prompt.strip():
                raise RequestValidationError("prompt must not be empty")
            self._require_agent()
            record = self._sessions.get(session_id, encoded_cwd)
            if record is None:
                raise SessionNotFoundError(session_id, encoded_cwd)
        except ManagerError as exc:
            await self._fail(ctx, request_id, exc)
            return request_id

        request.session_id = record.session_id
        request.encoded_cwd = record.encoded_cwd
        timestamp = self._clock()
        record = replace(
            record,
            updated_at=timestamp,
            last_activity_at=timestamp,
            message_count=record.message_count + 1,
        )
        self._sessions.upsert(record, persist=False)
        await self._run_stream(ctx, request, record, prompt, resume=True)
        return request_id

    async def stop(self, ctx: ConnectionContext, request_id: str) -> bool:
        """Clear the request's bookkeeping and ask its generation to stop."""

        request = ctx.finish(request_id, RequestStatus.DONE)
        if request is None:
            logger.debug("Stop for inactive request", extra={"request_id": request_id})
            return False
        if request.stream is not None:
            request.stream.cancel()
        logger.info("Request stopped", extra={"request_id": request_id, "session_id": request.session_id})

        session = self._current_meta(request)
        await ctx.emit(
            SessionStateFrame(
                request_id=request_id,
                session_id=request.session_id,
                encoded_cwd=request.encoded_cwd,
                status="stopped",
                session=session,
            )
        )
        await ctx.emit(
            StreamDone(
                request_id=request_id,
                session_id=request.session_id,
                encoded_cwd=request.encoded_cwd or "",
                session=session,
            )
        )
        return True

    async def refresh_index(self, ctx: ConnectionContext) -> int:
        """Reconcile the session index with the history store, then notify the client."""

        count = 0
        if self._indexer is not None:
            try:
                count = await asyncio.to_thread(self._indexer.refresh_index)
            except OSError:
                logger.exception("Index refresh failed")
                await ctx.emit(ErrorFrame(code="internal_error", message="Index refresh failed"))
                return 0
        await ctx.emit(SessionStateFrame(status="index_refreshed", stats={"indexed": count}))
        return count

    async def list_repositories(self, ctx: ConnectionContext) -> list[RepositoryRecord]:
        repositories = await asyncio.to_thread(self._registry.list_all)
        await ctx.emit(RepoListFrame(repositories=[repo.to_wire() for repo in repositories]))
        return repositories

    async def disconnect(self, ctx: ConnectionContext) -> None:
        dropped = await ctx.close()
        logger.info(
            "Connection closed",
            extra={"client_id": ctx.client_id, "dropped_requests": dropped},
        )

    def _require_agent(self) -> AgentRunner:
        if self._agent is None:
            raise AgentRunnerError("Agent runner is not available")
        return self._agent

    async def _resolve_origin(self, origin: Origin) -> Workdir:
        if isinstance(origin, RepoIdOrigin):
            repository = self._registry.find_by_id(origin.repo_id)
            if repository is None:
                raise RepoNotFoundError(origin.repo_id)
            return await self._provision(repository.url, origin.branch, fallback=repository)
        if isinstance(origin, RepoUrlOrigin):
            return await self._provision(origin.url, origin.branch)
        if isinstance(origin, CwdOrigin):
            cwd = Path(origin.cwd).expanduser()
            if not await asyncio.to_thread(os.path.isdir, cwd):
                raise RequestValidationError(
                    f"cwd '{origin.cwd}' is not a directory", details={"cwd": origin.cwd}
                )
            return Workdir(cwd=cwd)
        return Workdir(cwd=self._default_cwd)

    async def _provision(
        self,
        url: str,
        branch: str | None,
        *,
        fallback: RepositoryRecord | None = None,
    ) -> Workdir:
        if self._workspace is None:
            raise RequestValidationError("Repository sessions are not configured")
        info = await self._workspace.ensure_repo(url)
        worktree = await self._workspace.create_worktree(
            info.mirror_path, worktree_id=uuid.uuid4().hex, branch=branch
        )
        return Workdir(
            cwd=worktree.worktree_path,
            repository=info.repository or fallback,
            mirror_path=info.mirror_path,
            worktree=worktree,
        )

    async def _run_stream(
        self,
        ctx: ConnectionContext,
        request: RequestState,
        record: SessionRecord,
        prompt: str,
        *,
        resume: bool,
    ) -> None:
        request_id = request.request_id
        try:
            stream = await self._agent.start(
                prompt, cwd=Path(record.cwd), session_id=record.session_id, resume=resume
            )
            request.stream = stream
            if not ctx.is_active(request):
                await stream.aclose()
                return
            request.status = RequestStatus.STREAMING
            await ctx.emit(
                SessionStateFrame(
                    request_id=request_id,
                    session_id=record.session_id,
                    encoded_cwd=record.encoded_cwd,
                    status="running",
                )
            )
            async with contextlib.aclosing(stream.__aiter__()) as events:
                async for event in events:
                    if not ctx.is_active(request):
                        break
                    record = self._apply_event(record, event)
                    await self._emit_event(ctx, request, record, event)
        except ManagerError as exc:
            await self._fail(ctx, request_id, exc)
            return
        except asyncio.CancelledError:
            ctx.finish(request_id, RequestStatus.ERRORED)
            if request.stream is not None:
                request.stream.cancel()
            raise
        except Exception:
            logger.exception("Agent stream failed", extra={"request_id": request_id})
            await self._fail(ctx, request_id, ManagerError("Agent stream failed"))
            return
        finally:
            await asyncio.to_thread(self._sessions.upsert, record)

        if ctx.finish(request_id, RequestStatus.DONE) is None:
            return
        await ctx.emit(
            StreamDone(
                request_id=request_id,
                session_id=record.session_id,
                encoded_cwd=record.encoded_cwd,
                session=session_meta(record),
            )
        )

    def _apply_event(self, record: SessionRecord, event: AgentEvent) -> SessionRecord:
        timestamp = self._clock()
        changes: dict[str, Any] = {"updated_at": timestamp, "last_activity_at": timestamp}
        if event.kind == "result":
            cost = event.payload.get("total_cost_usd")
            if isinstance(cost, (int, float)):
                changes["total_cost_usd"] = record.total_cost_usd + float(cost)
            changes["message_count"] = record.message_count + 1
        record = replace(record, **changes)
        self._sessions.upsert(record, persist=False)
        return record

    async def _emit_event(
        self,
        ctx: ConnectionContext,
        request: RequestState,
        record: SessionRecord,
        event: AgentEvent,
    ) -> None:
        if event.kind == "delta":
            request.append(event.text)
            await ctx.emit(
                StreamDelta(request_id=request.request_id, session_id=record.session_id, text=event.text)
            )
        elif event.kind == "result":
            stats = {
                key: value
                for key, value in event.payload.items()
                if key in {"total_cost_usd", "num_turns", "duration_ms", "duration_api_ms", "usage", "is_error"}
            }
            await ctx.emit(
                SessionStateFrame(
                    request_id=request.request_id,
                    session_id=record.session_id,
                    encoded_cwd=record.encoded_cwd,
                    status="result",
                    stats=stats,
                    session=session_meta(record),
                )
            )
        else:
            await ctx.emit(
                StreamMessage(
                    request_id=request.request_id,
                    session_id=record.session_id,
                    sdk_message=event.payload,
                )
            )

    def _current_meta(self, request: RequestState) -> SessionMeta | None:
        if request.session_id is None or request.encoded_cwd is None:
            return None
        record = self._sessions.get(request.session_id, request.encoded_cwd)
        return session_meta(record) if record is not None else None

    async def _fail(self, ctx: ConnectionContext, request_id: str, exc: ManagerError) -> None:
        if ctx.finish(request_id, RequestStatus.ERRORED) is None:
            return
        logger.warning(
            "Request failed",
            extra={"request_id": request_id, "code": exc.code, "error": exc.message},
        )
        await ctx.emit(error_frame(exc, request_id))


__all__ = [
    "ConnectionContext",
    "ConnectionState",
    "CwdOrigin",
    "NoOrigin",
    "Origin",
    "RepoIdOrigin",
    "RepoUrlOrigin",
    "RequestState",
    "RequestStatus",
    "SessionOrchestrator",
    "Workdir",
    "error_frame",
    "origin_from_create",
    "session_meta",
]
