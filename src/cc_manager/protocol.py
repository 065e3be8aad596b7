"""Tagged JSON frames exchanged over the session websocket.

Each direction is a closed union discriminated on ``type``. Frames whose tag
is not part of the union decode to :class:`UnknownMessage` and are ignored;
frames that are not JSON objects with a string tag decode to ``None`` and are
dropped.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)


class Frame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def _require_text(value: str, field_name: str) -> str:
    if not value.strip():
        raise ValueError(f"{field_name} must not be empty")
    return value


# Client -> server


class SessionCreate(Frame):
    type: Literal["session.create"] = "session.create"
    request_id: str | None = None
    prompt: str
    cwd: str | None = None
    title: str | None = None
    repo_url: str | None = None
    repo_id: str | None = None
    branch: str | None = None

    @field_validator("prompt")
    @classmethod
    def _validate_prompt(cls, value: str) -> str:
        return _require_text(value, "prompt")

    @field_validator("cwd", "title", "repo_url", "repo_id", "branch", "request_id")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value


class SessionSend(Frame):
    type: Literal["session.send"] = "session.send"
    request_id: str | None = None
    session_id: str
    encoded_cwd: str
    prompt: str

    @field_validator("session_id", "encoded_cwd")
    @classmethod
    def _validate_identity(cls, value: str, info) -> str:
        return _require_text(value, info.field_name)

    @field_validator("prompt")
    @classmethod
    def _validate_prompt(cls, value: str) -> str:
        return _require_text(value, "prompt")


class SessionStop(Frame):
    type: Literal["session.stop"] = "session.stop"
    request_id: str

    @field_validator("request_id")
    @classmethod
    def _validate_request_id(cls, value: str) -> str:
        return _require_text(value, "request_id")


class RefreshIndex(Frame):
    type: Literal["session.refresh_index"] = "session.refresh_index"


class RepoListRequest(Frame):
    type: Literal["repo.list"] = "repo.list"


class Ping(Frame):
    type: Literal["ping"] = "ping"


ClientMessage = Annotated[
    Union[SessionCreate, SessionSend, SessionStop, RefreshIndex, RepoListRequest, Ping],
    Field(discriminator="type"),
]

CLIENT_TYPES = frozenset(
    {"session.create", "session.send", "session.stop", "session.refresh_index", "repo.list", "ping"}
)

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


@dataclass(slots=True)
class UnknownMessage:
    """A well-formed frame whose tag this side does not understand."""

    type: str


@dataclass(slots=True)
class InvalidMessage:
    """A known tag with missing or invalid fields."""

    type: str
    request_id: str | None
    errors: str


# Server -> client


class SessionMeta(Frame):
    session_id: str
    encoded_cwd: str
    cwd: str
    title: str
    created_at: int
    updated_at: int
    last_activity_at: int
    source: str
    message_count: int = 0
    total_cost_usd: float = 0.0
    repo_id: str | None = None
    worktree_path: str | None = None
    branch: str | None = None


class Hello(Frame):
    type: Literal["hello"] = "hello"
    requires_auth: bool
    server_time: int


class SessionCreated(Frame):
    type: Literal["session.created"] = "session.created"
    request_id: str
    session_id: str
    encoded_cwd: str
    cwd: str
    session: SessionMeta | None = None


class SessionStateFrame(Frame):
    type: Literal["session.state"] = "session.state"
    request_id: str | None = None
    session_id: str | None = None
    encoded_cwd: str | None = None
    status: str
    stats: dict[str, Any] | None = None
    session: SessionMeta | None = None


class StreamDelta(Frame):
    type: Literal["stream.delta"] = "stream.delta"
    request_id: str
    session_id: str | None = None
    text: str


class StreamMessage(Frame):
    type: Literal["stream.message"] = "stream.message"
    request_id: str
    session_id: str | None = None
    sdk_message: dict[str, Any]
    session: SessionMeta | None = None


class StreamDone(Frame):
    type: Literal["stream.done"] = "stream.done"
    request_id: str
    session_id: str | None = None
    encoded_cwd: str
    session: SessionMeta | None = None


class ErrorFrame(Frame):
    type: Literal["error"] = "error"
    code: str
    message: str
    request_id: str | None = None
    details: dict[str, Any] | None = None


class RepoListFrame(Frame):
    type: Literal["repo.list"] = "repo.list"
    repositories: list[dict[str, Any]] = Field(default_factory=list)


class Pong(Frame):
    type: Literal["pong"] = "pong"
    server_time: int


ServerMessage = Annotated[
    Union[
        Hello,
        SessionCreated,
        SessionStateFrame,
        StreamDelta,
        StreamMessage,
        StreamDone,
        ErrorFrame,
        RepoListFrame,
        Pong,
    ],
    Field(discriminator="type"),
]

SERVER_TYPES = frozenset(
    {
        "hello",
        "session.created",
        "session.state",
        "stream.delta",
        "stream.message",
        "stream.done",
        "error",
        "repo.list",
        "pong",
    }
)

_server_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def _load_object(raw: str | bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Dropping malformed frame")
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        logger.debug("Dropping frame without a type tag")
        return None
    return payload


def decode_client_frame(raw: str | bytes):
    """Decode one inbound frame.

    Returns a client message model, :class:`UnknownMessage`,
    :class:`InvalidMessage`, or ``None`` for frames that must be dropped.
    """

    payload = _load_object(raw)
    if payload is None:
        return None
    tag = payload["type"]
    if tag not in CLIENT_TYPES:
        logger.debug("Ignoring unknown message type", extra={"message_type": tag})
        return UnknownMessage(type=tag)
    try:
        return _client_adapter.validate_python(payload)
    except ValidationError as exc:
        request_id = payload.get("request_id")
        return InvalidMessage(
            type=tag,
            request_id=request_id if isinstance(request_id, str) else None,
            errors="; ".join(
                f"{'.'.join(str(part) for part in error['loc'][1:]) or tag}: {error['msg']}"
                for error in exc.errors()
            ),
        )


def decode_server_frame(raw: str | bytes):
    """Client-side counterpart of :func:`decode_client_frame`."""

    payload = _load_object(raw)
    if payload is None:
        return None
    tag = payload["type"]
    if tag not in SERVER_TYPES:
        return UnknownMessage(type=tag)
    try:
        return _server_adapter.validate_python(payload)
    except ValidationError:
        logger.debug("Dropping invalid server frame", extra={"message_type": tag})
        return None


__all__ = [
    "CLIENT_TYPES",
    "ClientMessage",
    "ErrorFrame",
    "Frame",
    "Hello",
    "InvalidMessage",
    "Ping",
    "Pong",
    "RefreshIndex",
    "RepoListFrame",
    "RepoListRequest",
    "SERVER_TYPES",
    "ServerMessage",
    "SessionCreate",
    "SessionCreated",
    "SessionMeta",
    "SessionSend",
    "SessionStateFrame",
    "SessionStop",
    "StreamDelta",
    "StreamDone",
    "StreamMessage",
    "UnknownMessage",
    "decode_client_frame",
    "decode_server_frame",
]
