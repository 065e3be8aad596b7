from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from cc_manager.agent import (
    AgentEvent,
    AgentNotFoundError,
    AgentRunnerError,
    ClaudeRunner,
    FakeAgentRunner,
    parse_stream_line,
)


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "claude"
    script.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    script.chmod(0o755)
    return script


def _assistant(text: str) -> str:
    return json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})


async def _collect(stream) -> list[AgentEvent]:
    return [event async for event in stream]


def test_parse_stream_line_classifies_events() -> None:
    delta = parse_stream_line(_assistant("hi"))
    result = parse_stream_line(json.dumps({"type": "result", "result": "done", "total_cost_usd": 0.2}))
    tool = parse_stream_line(json.dumps({"type": "assistant", "message": {"content": [{"type": "tool_use"}]}}))
    system = parse_stream_line(json.dumps({"type": "system", "subtype": "init"}))

    assert (delta.kind, delta.text) == ("delta", "hi")
    assert (result.kind, result.text) == ("result", "done")
    assert result.payload["total_cost_usd"] == 0.2
    assert tool.kind == "message"
    assert system.kind == "message"
    assert parse_stream_line("not json") is None
    assert parse_stream_line("   ") is None
    assert parse_stream_line("[1, 2]") is None


def test_build_args_for_new_and_resumed_sessions(tmp_path: Path) -> None:
    runner = ClaudeRunner(_script(tmp_path, "exit 0"), model="sonnet")

    fresh = runner.build_args("do it", session_id="s-1", resume=False)
    resumed = runner.build_args("-again", session_id="s-1", resume=True)

    assert fresh == [
        "--print", "--output-format", "stream-json", "--verbose",
        "--session-id", "s-1", "--model", "sonnet", "--", "do it",
    ]
    assert resumed[4:6] == ["--resume", "s-1"]
    assert resumed[-2:] == ["--", "-again"]


def test_claude_runner_streams_events_in_order(tmp_path: Path) -> None:
    argv_file = tmp_path / "argv.txt"
    lines = [
        json.dumps({"type": "system", "subtype": "init"}),
        _assistant("Hello"),
        "garbage line",
        _assistant(" world"),
        json.dumps({"type": "result", "result": "Hello world", "total_cost_usd": 0.03}),
    ]
    body = f'printf "%s\\n" "$@" > "{argv_file}"\npwd >> "{argv_file}"\n' + "\n".join(
        f"echo '{line}'" for line in lines
    )
    runner = ClaudeRunner(_script(tmp_path, body))
    workdir = tmp_path / "work"
    workdir.mkdir()

    async def scenario():
        stream = await runner.start("say hello", cwd=workdir, session_id="s-1")
        return await _collect(stream)

    events = asyncio.run(scenario())

    assert [e.kind for e in events] == ["message", "delta", "delta", "result"]
    assert "".join(e.text for e in events if e.kind == "delta") == "Hello world"
    recorded = argv_file.read_text(encoding="utf-8").splitlines()
    assert recorded[:4] == ["--print", "--output-format", "stream-json", "--verbose"]
    assert "say hello" in recorded
    assert Path(recorded[-1]).resolve() == workdir.resolve()


def test_claude_runner_non_zero_exit_raises(tmp_path: Path) -> None:
    body = f"echo '{_assistant('partial')}'\necho 'session not found' >&2\nexit 3"
    runner = ClaudeRunner(_script(tmp_path, body))

    async def scenario():
        stream = await runner.start("x", cwd=tmp_path, session_id="s-1", resume=True)
        seen: list[AgentEvent] = []
        with pytest.raises(AgentRunnerError) as excinfo:
            async for event in stream:
                seen.append(event)
        return seen, excinfo.value

    seen, error = asyncio.run(scenario())

    assert [e.text for e in seen] == ["partial"]
    assert error.details["returncode"] == 3
    assert error.details["diagnostic"] == "session not found"
    assert error.code == "agent_error"


def test_claude_runner_cancel_terminates_process(tmp_path: Path) -> None:
    body = f"echo '{_assistant('first')}'\nexec sleep 30"
    runner = ClaudeRunner(_script(tmp_path, body))

    async def scenario():
        stream = await runner.start("x", cwd=tmp_path, session_id="s-1")
        seen = []
        async for event in stream:
            seen.append(event)
            stream.cancel()
        return seen, stream

    seen, stream = asyncio.run(asyncio.wait_for(scenario(), timeout=10))

    assert [e.text for e in seen] == ["first"]
    assert stream.cancelled


def test_claude_runner_aclose_reaps_unread_process(tmp_path: Path) -> None:
    runner = ClaudeRunner(_script(tmp_path, "exec sleep 30"))

    async def scenario():
        stream = await runner.start("x", cwd=tmp_path, session_id="s-1")
        await stream.aclose()
        return stream

    stream = asyncio.run(asyncio.wait_for(scenario(), timeout=10))

    assert stream.cancelled
    assert stream._process.returncode is not None
    assert stream._stderr_task.done()


def test_claude_runner_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(AgentNotFoundError):
        ClaudeRunner(tmp_path / "nope")


def test_claude_runner_version(tmp_path: Path) -> None:
    runner = ClaudeRunner(_script(tmp_path, 'echo "1.2.3"'))

    result = asyncio.run(runner.version())

    assert result.ok
    assert result.stdout.strip() == "1.2.3"


def test_fake_agent_runner_replays_chunks_and_result() -> None:
    runner = FakeAgentRunner(responder=lambda prompt: [prompt.upper(), "!"], cost=0.5)

    async def scenario():
        stream = await runner.start("hey", cwd=Path("/tmp"), session_id="s-9", resume=True)
        return await _collect(stream)

    events = asyncio.run(scenario())

    assert [(e.kind, e.text) for e in events] == [("delta", "HEY"), ("delta", "!"), ("result", "HEY!")]
    assert events[-1].payload["total_cost_usd"] == 0.5
    assert runner.invocations == [{"prompt": "hey", "cwd": "/tmp", "session_id": "s-9", "resume": True}]


def test_fake_agent_stream_stops_on_cancel() -> None:
    runner = FakeAgentRunner(chunks=["a", "b", "c"], delay=0.05)

    async def scenario():
        stream = await runner.start("x", cwd=Path("/tmp"), session_id="s")
        seen = []
        async for event in stream:
            seen.append(event.text)
            stream.cancel()
        return seen

    assert asyncio.run(scenario()) == ["a"]


def test_fake_agent_runner_failure() -> None:
    runner = FakeAgentRunner(chunks=["partial"], fail_with=AgentRunnerError("boom"))

    async def scenario():
        stream = await runner.start("x", cwd=Path("/tmp"), session_id="s")
        return await _collect(stream)

    with pytest.raises(AgentRunnerError):
        asyncio.run(scenario())
