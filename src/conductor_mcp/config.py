"""Configuration management for Conductor MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ConductorSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    project_dir: Path = Field(default=Path("."), validation_alias="CONDUCTOR_PROJECT_DIR")
    state_dir_name: str = Field(default=".conductor", validation_alias="CONDUCTOR_STATE_DIR")
    worktree_dir_name: str = Field(
        default=".conductor/worktrees", validation_alias="CONDUCTOR_WORKTREE_DIR"
    )
    branch_prefix: str = Field(default="conductor", validation_alias="CONDUCTOR_BRANCH_PREFIX")
    default_provider: str = Field(default="simulator", validation_alias="CONDUCTOR_DEFAULT_PROVIDER")
    max_concurrent_agents: int = Field(default=12, validation_alias="CONDUCTOR_MAX_CONCURRENT_AGENTS")
    default_mode: str = Field(default="smart", validation_alias="CONDUCTOR_DEFAULT_MODE")
    simulator_delay_scale: float = Field(
        default=1.0, validation_alias="CONDUCTOR_SIMULATOR_DELAY_SCALE"
    )
    cursor_agent_command: str = Field(default="agent", validation_alias="CURSOR_AGENT_CMD")
    cursor_model: str = Field(default="opus-4.5-thinking", validation_alias="CURSOR_MODEL")
    claude_cli_command: str = Field(default="claude", validation_alias="CLAUDE_CLI_CMD")
    claude_model: str | None = Field(default=None, validation_alias="CLAUDE_MODEL")
    memory_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path(".conductor/memory"),), validation_alias="CONDUCTOR_MEMORY_PATHS"
    )
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="CONDUCTOR_LOG_LEVEL")
    max_parse_retries: int = Field(default=2, validation_alias="CONDUCTOR_MAX_PARSE_RETRIES")
    max_plan_format_attempts: int = Field(
        default=3, validation_alias="CONDUCTOR_MAX_PLAN_FORMAT_ATTEMPTS"
    )
    preflight_timeout_seconds: float = Field(
        default=1.5, validation_alias="CONDUCTOR_PREFLIGHT_TIMEOUT"
    )
    subtask_wait_seconds: float = Field(
        default=1800.0, validation_alias="CONDUCTOR_SUBTASK_WAIT_SECONDS"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CONDUCTOR_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("default_mode")
    @classmethod
    def _normalize_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"smart", "rush"}:
            raise ValueError("CONDUCTOR_DEFAULT_MODE must be 'smart' or 'rush'")
        return normalized

    @field_validator("memory_paths", mode="before")
    @classmethod
    def _parse_memory_paths(cls, value):
        if value is None or value == "":
            return (Path(".conductor/memory"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path(".conductor/memory"),)
        raise TypeError(
            "CONDUCTOR_MEMORY_PATHS must be a list of paths or a path-separated string"
        )

    @field_validator("max_concurrent_agents", "max_plan_format_attempts")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @field_validator("max_parse_retries")
    @classmethod
    def _validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("CONDUCTOR_MAX_PARSE_RETRIES must be >= 0")
        return value

    @property
    def state_dir(self) -> Path:
        return self.project_dir / self.state_dir_name

    def task_dir(self, task_id: str) -> Path:
        return self.state_dir / "tasks" / task_id


@lru_cache(maxsize=1)
def get_settings() -> ConductorSettings:
    """Return cached settings instance."""

    settings = ConductorSettings()
    settings.project_dir = settings.project_dir.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.memory_paths = tuple(
        path if path.is_absolute() else settings.project_dir / path
        for path in (p.expanduser() for p in settings.memory_paths)
    )
    return settings


__all__ = ["ConductorSettings", "get_settings"]
