"""Model execution collaborator."""

from .runner import (
    AgentEvent,
    AgentExecutionResult,
    AgentNotFoundError,
    AgentRunner,
    AgentRunnerError,
    AgentStream,
    ClaudeRunner,
    FakeAgentRunner,
    parse_stream_line,
)

__all__ = [
    "AgentEvent",
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "AgentStream",
    "ClaudeRunner",
    "FakeAgentRunner",
    "parse_stream_line",
]
