from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
from pathlib import Path
from typing import Any

from aiohttp import WSMsgType
from aiohttp.test_utils import AioHTTPTestCase

from cc_manager.agent import FakeAgentRunner
from cc_manager.config import ManagerSettings
from cc_manager.orchestrator import ConnectionContext
from cc_manager.server import GATEWAY_KEY, create_app
from cc_manager.workspace import FakeGitRunner, GitResult

URL = "https://github.com/dojoengine/katana.git"


def git_responder(args, cwd):
    if args[0] == "clone":
        mirror = Path(args[-1])
        mirror.mkdir(parents=True)
        (mirror / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    elif args[0] == "symbolic-ref":
        return GitResult(args=args, returncode=0, stdout="refs/remotes/origin/main\n", stderr="")
    return None


def make_settings(root: Path, **overrides: Any) -> ManagerSettings:
    values: dict[str, Any] = {
        "projects_dir": root / "projects",
        "default_cwd": root,
        "claude_projects_dir": root / "history",
        "chroma_persist_path": root / "chroma",
        "history_page_size": 2,
    }
    values.update(overrides)
    return ManagerSettings(**values)


async def read_until(ws, predicate, limit: int = 50) -> list[dict[str, Any]]:
    frames: list[dict[str, Any]] = []
    for _ in range(limit):
        frame = await ws.receive_json(timeout=5)
        frames.append(frame)
        if predicate(frame):
            return frames
    raise AssertionError(f"predicate never matched: {frames}")


def done_for(request_id: str):
    return lambda frame: frame["type"] in {"stream.done", "error"} and frame.get("request_id") == request_id


class GatewayTestCase(AioHTTPTestCase):
    auth_token: str | None = None

    async def get_application(self):
        self.root = Path(tempfile.mkdtemp())
        self.git = FakeGitRunner(responder=git_responder)
        self.agent = FakeAgentRunner(responder=lambda prompt: [f"echo:{prompt}"])
        settings = make_settings(self.root, auth_token=self.auth_token)
        return create_app(settings, git_runner=self.git, agent_runner=self.agent, persistence=False)

    async def asyncTearDown(self):
        await super().asyncTearDown()
        shutil.rmtree(self.root, ignore_errors=True)

    def write_transcript(self, encoded_cwd: str, session_id: str, texts: list[str]) -> None:
        directory = self.root / "history" / encoded_cwd
        directory.mkdir(parents=True, exist_ok=True)
        lines = []
        for index, text in enumerate(texts):
            role = "user" if index % 2 == 0 else "assistant"
            lines.append(
                json.dumps(
                    {
                        "type": role,
                        "uuid": f"m{index}",
                        "cwd": "/srv/app",
                        "timestamp": f"2025-01-01T00:00:0{index}Z",
                        "message": {"role": role, "content": text},
                    }
                )
            )
        (directory / f"{session_id}.jsonl").write_text("\n".join(lines) + "\n", encoding="utf-8")


class TestGateway(GatewayTestCase):
    async def test_hello_and_ping(self):
        async with self.client.ws_connect("/v1/ws") as ws:
            hello = await ws.receive_json(timeout=5)
            assert hello["type"] == "hello"
            assert hello["requires_auth"] is False
            await ws.send_json({"type": "ping"})
            pong = await ws.receive_json(timeout=5)
            assert pong["type"] == "pong"

    async def test_create_and_send_over_websocket(self):
        workdir = self.root / "work"
        workdir.mkdir()
        async with self.client.ws_connect("/v1/ws") as ws:
            await ws.receive_json(timeout=5)
            await ws.send_json(
                {"type": "session.create", "request_id": "r1", "prompt": "hi", "cwd": str(workdir)}
            )
            frames = await read_until(ws, done_for("r1"))
            assert [f["type"] for f in frames] == [
                "session.created",
                "session.state",
                "stream.delta",
                "session.state",
                "stream.done",
            ]
            created = frames[0]
            assert frames[2]["text"] == "echo:hi"

            await ws.send_json(
                {
                    "type": "session.send",
                    "request_id": "r2",
                    "session_id": created["session_id"],
                    "encoded_cwd": created["encoded_cwd"],
                    "prompt": "again",
                }
            )
            frames = await read_until(ws, done_for("r2"))
            assert frames[-1]["type"] == "stream.done"
            assert self.agent.invocations[-1]["resume"] is True

        resp = await self.client.get("/v1/sessions")
        assert resp.status == 200
        sessions = (await resp.json())["sessions"]
        assert [s["session_id"] for s in sessions] == [created["session_id"]]

    async def test_repo_session_and_repo_listing(self):
        async with self.client.ws_connect("/v1/ws") as ws:
            await ws.receive_json(timeout=5)
            await ws.send_json({"type": "session.create", "request_id": "r1", "prompt": "go", "repo_url": URL})
            frames = await read_until(ws, done_for("r1"))
            created = frames[0]
            assert created["type"] == "session.created"
            assert Path(created["cwd"]).parent == self.root / "projects" / "worktrees"

            await ws.send_json({"type": "repo.list"})
            [listing] = await read_until(ws, lambda f: f["type"] == "repo.list")
            assert listing["repositories"][0]["slug"] == "github-com-dojoengine-katana"

        resp = await self.client.get("/v1/repos")
        repos = (await resp.json())["repositories"]
        assert [r["id"] for r in repos] == [created["session"]["repo_id"]]

    async def test_unknown_repo_id_reports_error(self):
        async with self.client.ws_connect("/v1/ws") as ws:
            await ws.receive_json(timeout=5)
            await ws.send_json({"type": "session.create", "request_id": "r1", "prompt": "go", "repo_id": "nope"})
            error = await ws.receive_json(timeout=5)
            assert error["type"] == "error"
            assert error["code"] == "repo_not_found"
            assert error["request_id"] == "r1"
        assert self.git.invocations == []

    async def test_invalid_and_unknown_frames(self):
        async with self.client.ws_connect("/v1/ws") as ws:
            await ws.receive_json(timeout=5)
            await ws.send_str("not json")
            await ws.send_json({"type": "session.teleport"})
            await ws.send_json({"type": "session.create", "request_id": "r1", "prompt": ""})
            error = await ws.receive_json(timeout=5)
            assert error["type"] == "error"
            assert error["code"] == "invalid_request"
            assert error["request_id"] == "r1"
            await ws.send_json({"type": "ping"})
            assert (await ws.receive_json(timeout=5))["type"] == "pong"

    async def test_refresh_index_notifies_and_lists_discovered_sessions(self):
        self.write_transcript("-srv-app", "external-1", ["question", "answer"])
        async with self.client.ws_connect("/v1/ws") as ws:
            await ws.receive_json(timeout=5)
            await ws.send_json({"type": "session.refresh_index"})
            state = await ws.receive_json(timeout=5)
            assert state == {"type": "session.state", "status": "index_refreshed", "stats": {"indexed": 1}}

        resp = await self.client.get("/v1/sessions")
        [session] = (await resp.json())["sessions"]
        assert session["session_id"] == "external-1"
        assert session["source"] == "index"
        assert session["cwd"] == "/srv/app"

    async def test_history_pages(self):
        self.write_transcript("-srv-app", "s-1", ["one", "two", "three"])
        await self.client.get("/v1/sessions?refresh=1")

        resp = await self.client.get("/v1/sessions/s-1/history")
        assert resp.status == 200
        page = await resp.json()
        assert [m["text"] for m in page["messages"]] == ["one", "two"]
        assert page["next_cursor"] == 2
        assert page["total_messages"] == 3

        resp = await self.client.get("/v1/sessions/s-1/history?cursor=2&encoded_cwd=-srv-app")
        page = await resp.json()
        assert [m["text"] for m in page["messages"]] == ["three"]
        assert page["next_cursor"] is None

    async def test_history_unknown_session(self):
        resp = await self.client.get("/v1/sessions/ghost/history")
        assert resp.status == 404
        assert (await resp.json())["error"]["code"] == "session_not_found"

    async def test_unknown_v1_route(self):
        resp = await self.client.get("/v1/nothing/here")
        assert resp.status == 404
        assert (await resp.json())["error"]["code"] == "not_found"

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["agent"]["available"] is True
        assert data["agent"]["version"] == "fake-claude 0.0"
        assert data["git"]["available"] is True
        assert data["storage"]["available"] is False
        assert data["connections"] == 0

    async def test_stop_right_after_create_is_honoured(self):
        gateway = self.app[GATEWAY_KEY]
        frames: list[dict[str, Any]] = []

        async def record(payload: dict[str, Any]) -> None:
            frames.append(payload)

        ctx = ConnectionContext(record)
        ctx.mark_connected()
        await gateway.dispatch(
            ctx, json.dumps({"type": "session.create", "request_id": "r1", "prompt": "hi"})
        )
        await gateway.dispatch(ctx, json.dumps({"type": "session.stop", "request_id": "r1"}))
        await asyncio.sleep(0.2)

        assert [frame["type"] for frame in frames] == ["session.state", "stream.done"]
        assert frames[0]["status"] == "stopped"
        assert ctx.active_request_ids == set()
        assert self.agent.invocations == []

    async def test_http_requests_are_logged_with_context(self):
        with self.assertLogs("cc_manager.server", level="INFO") as logs:
            resp = await self.client.get("/v1/repos")
            assert resp.status == 200

        [record] = [r for r in logs.records if r.getMessage() == "HTTP request"]
        assert (record.method, record.path, record.status) == ("GET", "/v1/repos", 200)
        assert record.duration_ms >= 0

    async def test_disconnect_drops_connection_state(self):
        gateway = self.app[GATEWAY_KEY]
        ws = await self.client.ws_connect("/v1/ws")
        await ws.receive_json(timeout=5)
        assert gateway.connection_count == 1
        await ws.close()
        for _ in range(50):
            if gateway.connection_count == 0:
                break
            await asyncio.sleep(0.01)
        assert gateway.connection_count == 0

    async def test_shutdown_closes_connections(self):
        gateway = self.app[GATEWAY_KEY]
        ws = await self.client.ws_connect("/v1/ws")
        await ws.receive_json(timeout=5)
        closing = asyncio.create_task(gateway.close_all())
        msg = await ws.receive(timeout=5)
        assert msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED}
        await closing
        await ws.close()
        assert ws.closed


class TestGatewayAuth(GatewayTestCase):
    auth_token = "secret-token"

    async def test_upgrade_without_token_is_rejected(self):
        resp = await self.client.get("/v1/ws")
        assert resp.status == 401
        assert (await resp.json())["error"]["code"] == "unauthorized"

    async def test_upgrade_with_query_token(self):
        async with self.client.ws_connect("/v1/ws?token=secret-token") as ws:
            hello = await ws.receive_json(timeout=5)
            assert hello["requires_auth"] is True

    async def test_upgrade_with_bearer_header(self):
        headers = {"Authorization": "Bearer secret-token"}
        async with self.client.ws_connect("/v1/ws", headers=headers) as ws:
            assert (await ws.receive_json(timeout=5))["type"] == "hello"

    async def test_listing_requires_token(self):
        assert (await self.client.get("/v1/sessions")).status == 401
        assert (await self.client.get("/v1/sessions?token=wrong")).status == 401
        resp = await self.client.get("/v1/repos", headers={"Authorization": "Bearer secret-token"})
        assert resp.status == 200
        assert (await resp.json()) == {"repositories": []}
