"""Websocket gateway: one persistent duplex connection per client."""

from __future__ import annotations

import hmac
import logging
import uuid
from typing import Callable

from aiohttp import WSCloseCode, WSMsgType, web

from .orchestrator import ConnectionContext, SessionOrchestrator, origin_from_create
from .protocol import (
    ErrorFrame,
    Hello,
    InvalidMessage,
    Ping,
    Pong,
    RefreshIndex,
    RepoListRequest,
    SessionCreate,
    SessionSend,
    SessionStop,
    UnknownMessage,
    decode_client_frame,
)
from .utils import now_ms

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 30.0


def extract_token(request: web.Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[len("bearer "):].strip() or None
    return request.query.get("token") or None


def is_authorized(request: web.Request, auth_token: str | None) -> bool:
    if auth_token is None:
        return True
    supplied = extract_token(request)
    return supplied is not None and hmac.compare_digest(supplied, auth_token)


def unauthorized_response() -> web.Response:
    return web.json_response(
        {"error": {"code": "unauthorized", "message": "Missing or invalid token"}},
        status=401,
    )


class ConnectionGateway:
    """Accept websocket upgrades and route frames to the orchestrator."""

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        *,
        auth_token: str | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._orchestrator = orchestrator
        self._auth_token = auth_token
        self._clock = clock
        self._connections: dict[str, tuple[web.WebSocketResponse, ConnectionContext]] = {}

    @property
    def requires_auth(self) -> bool:
        return self._auth_token is not None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def contexts(self) -> list[ConnectionContext]:
        return [ctx for _, ctx in self._connections.values()]

    async def handle(self, request: web.Request) -> web.StreamResponse:
        if not is_authorized(request, self._auth_token):
            logger.warning("Rejected websocket connection", extra={"remote": request.remote})
            return unauthorized_response()

        ws = web.WebSocketResponse(heartbeat=HEARTBEAT_SECONDS)
        await ws.prepare(request)

        ctx = ConnectionContext(ws.send_json, client_id=uuid.uuid4().hex)
        self._connections[ctx.client_id] = (ws, ctx)
        ctx.mark_connected()
        logger.info("Client connected", extra={"client_id": ctx.client_id, "remote": request.remote})

        try:
            await ctx.emit(Hello(requires_auth=self.requires_auth, server_time=self._clock()))
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self.dispatch(ctx, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "Websocket error",
                        extra={"client_id": ctx.client_id, "error": str(ws.exception())},
                    )
                    break
                else:
                    logger.debug("Ignoring non-text frame", extra={"client_id": ctx.client_id})
        finally:
            self._connections.pop(ctx.client_id, None)
            await self._orchestrator.disconnect(ctx)
        return ws

    async def dispatch(self, ctx: ConnectionContext, raw: str | bytes) -> None:
        """Route one inbound frame; long-running work runs off the read loop."""

        message = decode_client_frame(raw)
        if message is None or isinstance(message, UnknownMessage):
            return

        orchestrator = self._orchestrator
        if isinstance(message, InvalidMessage):
            await ctx.emit(
                ErrorFrame(
                    code="invalid_request",
                    message=message.errors,
                    request_id=message.request_id,
                )
            )
        elif isinstance(message, SessionCreate):
            # admitted before the read loop continues so a following stop sees it
            request = await orchestrator.admit(ctx, message.request_id)
            if request is not None:
                ctx.spawn(
                    orchestrator.create(
                        ctx,
                        prompt=message.prompt,
                        origin=origin_from_create(message),
                        title=message.title,
                        request=request,
                    )
                )
        elif isinstance(message, SessionSend):
            request = await orchestrator.admit(ctx, message.request_id)
            if request is not None:
                ctx.spawn(
                    orchestrator.send(
                        ctx,
                        session_id=message.session_id,
                        encoded_cwd=message.encoded_cwd,
                        prompt=message.prompt,
                        request=request,
                    )
                )
        elif isinstance(message, SessionStop):
            await orchestrator.stop(ctx, message.request_id)
        elif isinstance(message, RefreshIndex):
            ctx.spawn(orchestrator.refresh_index(ctx))
        elif isinstance(message, RepoListRequest):
            ctx.spawn(orchestrator.list_repositories(ctx))
        elif isinstance(message, Ping):
            await ctx.emit(Pong(server_time=self._clock()))

    async def close_all(self) -> None:
        """Close every live connection; each one then runs the disconnect path."""

        connections = list(self._connections.values())
        for ws, ctx in connections:
            logger.info("Closing connection for shutdown", extra={"client_id": ctx.client_id})
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")


__all__ = ["ConnectionGateway", "extract_token", "is_authorized", "unauthorized_response"]
