"""aiohttp application bootstrap for the session manager."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from aiohttp import web

from . import __version__
from .agent import AgentNotFoundError, AgentRunner, ClaudeRunner
from .config import ManagerSettings, get_settings
from .gateway import ConnectionGateway
from .history import HistoryIndexer
from .listing import ListingRoutes
from .orchestrator import SessionOrchestrator
from .storage import ChromaStore, ChromaUnavailableError, RepositoryRegistry, SessionStore
from .workspace import GitNotFoundError, GitRunner, WorkspaceManager

logger = logging.getLogger(__name__)

GATEWAY_KEY = web.AppKey("gateway", ConnectionGateway)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", SessionOrchestrator)
METADATA_KEY = web.AppKey("metadata", dict)
SETTINGS_KEY = web.AppKey("settings", ManagerSettings)


def configure_logging(level: str) -> None:
    """Configure root logging for the manager."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


@web.middleware
async def request_logging_middleware(request: web.Request, handler) -> web.StreamResponse:
    start = time.monotonic()
    context: dict[str, Any] = {"method": request.method, "path": request.path_qs}
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        context.update(status=exc.status, duration_ms=round((time.monotonic() - start) * 1000, 1))
        logger.info("HTTP request", extra=context)
        raise
    except Exception:
        context["duration_ms"] = round((time.monotonic() - start) * 1000, 1)
        logger.exception("HTTP request failed", extra=context)
        raise
    context.update(
        status=getattr(response, "status", None),
        duration_ms=round((time.monotonic() - start) * 1000, 1),
    )
    logger.info("HTTP request", extra=context)
    return response


async def handle_health(request: web.Request) -> web.Response:
    metadata = request.app[METADATA_KEY]
    return web.json_response(
        {
            "status": "ok",
            "time": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "agent": metadata["agent"],
            "git": metadata["git"],
            "storage": metadata["storage"],
            "connections": request.app[GATEWAY_KEY].connection_count,
        }
    )


def create_app(
    settings: Optional[ManagerSettings] = None,
    *,
    git_runner: GitRunner | None = None,
    agent_runner: AgentRunner | None = None,
    chroma_store: ChromaStore | None = None,
    persistence: bool = True,
) -> web.Application:
    """Wire the workspace, storage, orchestration and transport layers."""

    settings = settings or get_settings()

    agent_metadata: dict[str, Any] = {"available": False, "version": None, "error": None}
    if agent_runner is None:
        try:
            agent_runner = ClaudeRunner(
                Path(settings.claude_path) if settings.claude_path else None,
                model=settings.claude_default_model,
            )
            agent_metadata["available"] = True
        except AgentNotFoundError as exc:
            agent_metadata["error"] = str(exc)
            agent_runner = None
    else:
        agent_metadata["available"] = True

    git_metadata: dict[str, Any] = {"available": False, "projects_dir": str(settings.projects_dir), "error": None}
    if git_runner is None:
        try:
            git_runner = GitRunner(timeout=settings.git_timeout)
            git_metadata["available"] = True
        except GitNotFoundError as exc:
            git_metadata["error"] = str(exc)
    else:
        git_metadata["available"] = True

    storage_metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "cc_manager",
        "error": None,
    }
    if chroma_store is None and persistence:
        try:
            chroma_store = ChromaStore(settings.chroma_persist_path)
            chroma_store.ping()
        except ChromaUnavailableError as exc:
            storage_metadata["error"] = str(exc)
            chroma_store = None
    if chroma_store is not None:
        storage_metadata["available"] = True
        storage_metadata["path"] = str(chroma_store.path)

    registry = RepositoryRegistry(chroma_store)
    sessions = SessionStore(chroma_store)
    indexer = HistoryIndexer(
        settings.claude_projects_dir, sessions, page_size=settings.history_page_size
    )
    workspace = (
        WorkspaceManager(settings.projects_dir, runner=git_runner, registry=registry)
        if git_runner is not None
        else None
    )
    orchestrator = SessionOrchestrator(
        sessions=sessions,
        registry=registry,
        agent=agent_runner,
        workspace=workspace,
        indexer=indexer,
        default_cwd=settings.default_cwd,
    )
    gateway = ConnectionGateway(orchestrator, auth_token=settings.auth_token)
    listing = ListingRoutes(
        sessions=sessions, registry=registry, indexer=indexer, auth_token=settings.auth_token
    )

    app = web.Application(middlewares=[request_logging_middleware])
    app[SETTINGS_KEY] = settings
    app[ORCHESTRATOR_KEY] = orchestrator
    app[GATEWAY_KEY] = gateway
    app[METADATA_KEY] = {"agent": agent_metadata, "git": git_metadata, "storage": storage_metadata}

    app.router.add_get("/health", handle_health)
    app.router.add_get("/v1/ws", gateway.handle)
    listing.register(app.router)

    async def _probe_agent(app: web.Application) -> None:
        if agent_runner is None:
            return
        try:
            result = await agent_runner.version()
        except OSError as exc:
            agent_metadata["error"] = str(exc)
            return
        if result.ok:
            agent_metadata["version"] = result.stdout.strip()
        else:
            agent_metadata["error"] = result.stderr.strip() or "Agent version command failed"

    async def _close_connections(app: web.Application) -> None:
        await gateway.close_all()

    app.on_startup.append(_probe_agent)
    app.on_shutdown.append(_close_connections)

    logger.info(
        "Session manager configured",
        extra={
            "projects_dir": str(settings.projects_dir),
            "agent_available": agent_metadata["available"],
            "git_available": git_metadata["available"],
            "storage_available": storage_metadata["available"],
        },
    )
    return app


def main() -> None:
    """Entry point used by the ``cc-manager`` console script."""

    settings = get_settings()
    configure_logging(settings.log_level)
    app = create_app(settings)
    web.run_app(app, host=settings.host, port=settings.port, print=None)


if __name__ == "__main__":  # pragma: no cover
    main()


__all__ = ["configure_logging", "create_app", "main"]
