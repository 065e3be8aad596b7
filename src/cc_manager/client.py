"""Client-side connection controller with reconnection and idle heartbeat.

The controller keeps per-request transcripts keyed by request id, discards
all connection-scoped state when the transport drops, and schedules exactly
one reconnect attempt per unexpected close. In-flight requests are never
resumed after a reconnect.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import aiohttp

from .errors import TransportError
from .protocol import (
    ErrorFrame,
    Hello,
    SessionCreated,
    SessionStateFrame,
    StreamDelta,
    StreamDone,
    UnknownMessage,
    decode_server_frame,
)

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 2.0
HEARTBEAT_INTERVAL = 10.0


class ClientStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(slots=True)
class Transcript:
    request_id: str
    prompt: str
    text: str = ""
    done: bool = False
    lost: bool = False
    error: str | None = None


class ManagerClient:
    """Connect to the manager's websocket and track request state."""

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        session: aiohttp.ClientSession | None = None,
        reconnect_delay: float = RECONNECT_DELAY,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        on_sessions_stale: Callable[[], None] | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._session = session
        self._owns_session = session is None
        self._reconnect_delay = reconnect_delay
        self._heartbeat_interval = heartbeat_interval
        self._on_sessions_stale = on_sessions_stale

        self.status = ClientStatus.DISCONNECTED
        self.active_request_ids: set[str] = set()
        self.transcripts: dict[str, Transcript] = {}
        self.session_id: str | None = None
        self.encoded_cwd: str | None = None
        self.session_view_active = False
        self.sessions_stale = False
        self.connect_attempts = 0

        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._connect_task: asyncio.Task | None = None
        self._intentional_close = False
        self._connected_event = asyncio.Event()

    @property
    def is_streaming(self) -> bool:
        return bool(self.active_request_ids)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    async def connect(self) -> bool:
        self._intentional_close = False
        return await self._open()

    async def wait_connected(self, timeout: float = 5.0) -> None:
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                f"No greeting from manager within {timeout:g}s", details={"url": self._url}
            ) from None

    async def _open(self) -> bool:
        if self._intentional_close:
            return False
        self.connect_attempts += 1
        self.status = ClientStatus.CONNECTING
        self._connected_event.clear()
        if self._session is None:
            self._session = aiohttp.ClientSession()

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        try:
            ws = await self._session.ws_connect(self._url, headers=headers)
        except (aiohttp.ClientError, OSError) as exc:
            logger.warning("Connection attempt failed", extra={"url": self._url, "error": str(exc)})
            self._handle_transport_closed(None)
            return False

        self._ws = ws
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
        return True

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.handle_server_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break
        finally:
            self._handle_transport_closed(ws)

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not ws.closed:
            await asyncio.sleep(self._heartbeat_interval)
            if self.status is ClientStatus.CONNECTED and not self.is_streaming:
                await self.send({"type": "session.refresh_index"})

    def _handle_transport_closed(self, ws: aiohttp.ClientWebSocketResponse | None) -> None:
        if ws is not None and ws is not self._ws:
            return
        self._ws = None
        self.status = ClientStatus.DISCONNECTED
        self._connected_event.clear()
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        for request_id in self.active_request_ids:
            transcript = self.transcripts.get(request_id)
            if transcript is not None:
                transcript.lost = True
        self.active_request_ids.clear()

        if not self.session_view_active:
            self.session_id = None
            self.encoded_cwd = None

        if not self._intentional_close:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self._reconnect_delay, self._fire_reconnect)
        logger.info("Reconnect scheduled", extra={"delay": self._reconnect_delay})

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if not self._intentional_close:
            self._connect_task = asyncio.create_task(self._open())

    async def close(self) -> None:
        """Close intentionally; disables auto-reconnect."""

        self._intentional_close = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        if self._connect_task is not None:
            await asyncio.gather(self._connect_task, return_exceptions=True)
            self._connect_task = None
        heartbeat = self._heartbeat_task
        ws = self._ws
        if ws is not None:
            await ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        self._handle_transport_closed(ws)
        if heartbeat is not None:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def send(self, payload: dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None or ws.closed:
            return False
        try:
            await ws.send_json(payload)
        except (ConnectionError, RuntimeError) as exc:
            logger.debug("Send failed", extra={"error": str(exc)})
            return False
        return True

    def enter_session(self, session_id: str | None = None, encoded_cwd: str | None = None) -> None:
        """Open the session view, for a new session or an existing one."""

        self.session_view_active = True
        self.session_id = session_id
        self.encoded_cwd = encoded_cwd
        self.active_request_ids.clear()

    def exit_session_view(self) -> None:
        self.session_view_active = False
        self.active_request_ids.clear()

    async def submit(self, prompt: str, **create_fields: Any) -> str | None:
        """Send ``prompt`` to the current session, creating one when there is none."""

        text = prompt.strip()
        if not text:
            return None
        request_id = uuid.uuid4().hex
        payload: dict[str, Any] = {"request_id": request_id, "prompt": text}
        if self.session_id and self.encoded_cwd:
            payload.update(type="session.send", session_id=self.session_id, encoded_cwd=self.encoded_cwd)
        else:
            payload["type"] = "session.create"
            payload.update({key: value for key, value in create_fields.items() if value is not None})

        transcript = Transcript(request_id=request_id, prompt=text)
        self.transcripts[request_id] = transcript
        self.active_request_ids.add(request_id)
        if not await self.send(payload):
            self.active_request_ids.discard(request_id)
            transcript.error = "Not connected to manager"
            return None
        return request_id

    async def stop(self, request_id: str) -> bool:
        return await self.send({"type": "session.stop", "request_id": request_id})

    async def refresh_index(self) -> bool:
        return await self.send({"type": "session.refresh_index"})

    def handle_server_message(self, raw: str | bytes) -> None:
        message = decode_server_frame(raw)
        if message is None or isinstance(message, UnknownMessage):
            return

        if isinstance(message, Hello):
            self.status = ClientStatus.CONNECTED
            self._connected_event.set()
        elif isinstance(message, SessionCreated):
            if message.request_id in self.transcripts:
                self.session_id = message.session_id
                self.encoded_cwd = message.encoded_cwd
        elif isinstance(message, SessionStateFrame):
            if message.status == "index_refreshed":
                if not self.session_view_active:
                    self.sessions_stale = True
                    if self._on_sessions_stale is not None:
                        self._on_sessions_stale()
            elif message.request_id in self.active_request_ids:
                if message.session_id:
                    self.session_id = message.session_id
                if message.encoded_cwd:
                    self.encoded_cwd = message.encoded_cwd
        elif isinstance(message, StreamDelta):
            # deltas only ever extend their own, still active, request
            if message.request_id in self.active_request_ids:
                self.transcripts[message.request_id].text += message.text
        elif isinstance(message, StreamDone):
            self._finish(message.request_id)
        elif isinstance(message, ErrorFrame):
            if message.request_id is None:
                self.active_request_ids.clear()
                return
            transcript = self._finish(message.request_id)
            if transcript is not None:
                transcript.error = message.message

    def _finish(self, request_id: str) -> Transcript | None:
        self.active_request_ids.discard(request_id)
        transcript = self.transcripts.get(request_id)
        if transcript is not None:
            transcript.done = True
        return transcript


__all__ = ["ClientStatus", "ManagerClient", "Transcript"]
