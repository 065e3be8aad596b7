"""Read-only REST surface: session list, session history and repositories."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import web

from .errors import ManagerError
from .gateway import is_authorized, unauthorized_response
from .history import HistoryIndexer
from .storage.registry import RepositoryRegistry, SessionStore

logger = logging.getLogger(__name__)


def error_response(status: int, code: str, message: str) -> web.Response:
    return web.json_response({"error": {"code": code, "message": message}}, status=status)


def _parse_cursor(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw, 10)
    except ValueError:
        return None


class ListingRoutes:
    """Handlers for the ``/v1`` listing endpoints."""

    def __init__(
        self,
        *,
        sessions: SessionStore,
        registry: RepositoryRegistry,
        indexer: HistoryIndexer | None = None,
        auth_token: str | None = None,
    ) -> None:
        self._sessions = sessions
        self._registry = registry
        self._indexer = indexer
        self._auth_token = auth_token

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get("/v1/sessions", self.list_sessions)
        router.add_get("/v1/sessions/{session_id}/history", self.session_history)
        router.add_get("/v1/repos", self.list_repositories)
        router.add_route("*", "/v1/{tail:.*}", self.not_found)

    async def list_sessions(self, request: web.Request) -> web.Response:
        if not is_authorized(request, self._auth_token):
            return unauthorized_response()

        if self._indexer is not None and request.query.get("refresh") == "1":
            try:
                await asyncio.to_thread(self._indexer.refresh_index)
            except OSError:
                logger.exception("Index refresh failed")
        sessions = await asyncio.to_thread(self._sessions.list_all)
        return web.json_response({"sessions": [record.to_wire() for record in sessions]})

    async def session_history(self, request: web.Request) -> web.Response:
        if not is_authorized(request, self._auth_token):
            return unauthorized_response()

        session_id = request.match_info["session_id"]
        encoded_cwd = request.query.get("encoded_cwd")
        candidates = self._sessions.find_candidates(session_id)
        if encoded_cwd:
            chosen = next((c for c in candidates if c.encoded_cwd == encoded_cwd), None)
        else:
            chosen = candidates[0] if candidates else None

        if chosen is None:
            return error_response(404, "session_not_found", "Session not found")
        if self._indexer is None:
            return error_response(501, "not_implemented", "History endpoint requires indexer")

        try:
            page = await asyncio.to_thread(
                self._indexer.read_history,
                session_id,
                chosen.encoded_cwd,
                _parse_cursor(request.query.get("cursor")),
            )
        except ManagerError as exc:
            return error_response(404 if exc.code.endswith("not_found") else 500, exc.code, exc.message)

        payload: dict[str, Any] = {
            "session_id": session_id,
            "encoded_cwd": chosen.encoded_cwd,
            "messages": page.messages,
            "next_cursor": page.next_cursor,
            "total_messages": page.total_messages,
        }
        return web.json_response(payload)

    async def list_repositories(self, request: web.Request) -> web.Response:
        if not is_authorized(request, self._auth_token):
            return unauthorized_response()

        repositories = await asyncio.to_thread(self._registry.list_all)
        return web.json_response({"repositories": [repo.to_wire() for repo in repositories]})

    async def not_found(self, request: web.Request) -> web.Response:
        return error_response(404, "not_found", "Not found")


__all__ = ["ListingRoutes", "error_response"]
