"""Error taxonomy shared by the workspace, orchestration and transport layers."""

from __future__ import annotations

from typing import Any, Sequence


class ManagerError(RuntimeError):
    """Base class for errors that are reported to clients as ``error`` frames."""

    code = "internal_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(ManagerError):
    """Raised when a session or repository reference does not resolve."""

    code = "not_found"


class RepoNotFoundError(NotFoundError):
    code = "repo_not_found"

    def __init__(self, repo_id: str) -> None:
        super().__init__(f"Repository '{repo_id}' not found", details={"repo_id": repo_id})
        self.repo_id = repo_id


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"

    def __init__(self, session_id: str, encoded_cwd: str | None = None) -> None:
        details = {"session_id": session_id}
        if encoded_cwd is not None:
            details["encoded_cwd"] = encoded_cwd
        super().__init__(f"Session '{session_id}' not found", details=details)
        self.session_id = session_id
        self.encoded_cwd = encoded_cwd


class RequestValidationError(ManagerError):
    """Raised when a required field is missing or empty."""

    code = "invalid_request"


class UpstreamError(ManagerError):
    """Raised when a git (or ssh) subprocess exits non-zero."""

    code = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        diagnostic: str = "",
        command: Sequence[str] = (),
        returncode: int | None = None,
    ) -> None:
        details: dict[str, Any] = {"diagnostic": diagnostic}
        if command:
            details["command"] = list(command)
        if returncode is not None:
            details["returncode"] = returncode
        text = f"{message}: {diagnostic}" if diagnostic else message
        super().__init__(text, details=details)
        self.diagnostic = diagnostic
        self.command = tuple(command)
        self.returncode = returncode


class GitTimeoutError(UpstreamError):
    """Raised when a git subprocess exceeds its bounded wait."""

    code = "upstream_timeout"


class WorkspaceError(UpstreamError):
    """Workspace provisioning failed; fatal for the triggering request only."""

    code = "workspace_error"


class TransportError(ManagerError):
    """Raised on connection failures."""

    code = "transport_error"


__all__ = [
    "GitTimeoutError",
    "ManagerError",
    "NotFoundError",
    "RepoNotFoundError",
    "RequestValidationError",
    "SessionNotFoundError",
    "TransportError",
    "UpstreamError",
    "WorkspaceError",
]
