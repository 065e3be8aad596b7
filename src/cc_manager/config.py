"""Configuration management for the session manager."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ManagerSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    host: str = Field(default="0.0.0.0", validation_alias="CC_MANAGER_HOST")
    port: int = Field(default=8787, validation_alias="CC_MANAGER_PORT")
    projects_dir: Path = Field(
        default=Path("~/.cc-manager/projects"), validation_alias="CC_MANAGER_PROJECTS_DIR"
    )
    default_cwd: Path = Field(default=Path("~"), validation_alias="CC_MANAGER_DEFAULT_CWD")
    log_level: str = Field(default="INFO", validation_alias="CC_MANAGER_LOG_LEVEL")
    git_timeout: float = Field(default=300.0, validation_alias="CC_MANAGER_GIT_TIMEOUT")
    auth_token: str | None = Field(default=None, validation_alias="CC_MANAGER_AUTH_TOKEN")
    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    claude_default_model: str | None = Field(default=None, validation_alias="CLAUDE_DEFAULT_MODEL")
    claude_projects_dir: Path = Field(
        default=Path("~/.claude/projects"), validation_alias="CLAUDE_PROJECTS_DIR"
    )
    history_page_size: int = Field(default=50, validation_alias="CC_MANAGER_HISTORY_PAGE_SIZE")
    chroma_persist_path: Path = Field(
        default=Path("~/.cc-manager/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CC_MANAGER_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError("CC_MANAGER_PORT must be between 1 and 65535")
        return value

    @field_validator("git_timeout")
    @classmethod
    def _validate_git_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("CC_MANAGER_GIT_TIMEOUT must be > 0")
        return value

    @field_validator("history_page_size")
    @classmethod
    def _validate_page_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("CC_MANAGER_HISTORY_PAGE_SIZE must be >= 1")
        return value

    @field_validator("auth_token", "claude_path", "claude_default_model", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def requires_auth(self) -> bool:
        return self.auth_token is not None

    def resolved(self) -> "ManagerSettings":
        """Return a copy with every filesystem path expanded and made absolute."""

        return self.model_copy(
            update={
                "projects_dir": self.projects_dir.expanduser().resolve(),
                "default_cwd": self.default_cwd.expanduser().resolve(),
                "claude_projects_dir": self.claude_projects_dir.expanduser().resolve(),
                "chroma_persist_path": self.chroma_persist_path.expanduser().resolve(),
            }
        )


@lru_cache(maxsize=1)
def get_settings() -> ManagerSettings:
    """Return cached settings instance."""

    return ManagerSettings().resolved()


__all__ = ["ManagerSettings", "get_settings"]
