"""Configuration management for Tether MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class TetherSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    agent_cli_path: str | None = Field(default=None, validation_alias="AGENT_CLI_PATH")
    agent_flags: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("--dangerously-skip-permissions",), validation_alias="TETHER_AGENT_FLAGS"
    )
    execution_timeout_seconds: float = Field(
        default=6000.0, validation_alias="TETHER_EXECUTION_TIMEOUT"
    )
    synthetic_result_min_seconds: float = Field(
        default=5.0, validation_alias="TETHER_SYNTHETIC_RESULT_MIN_SECONDS"
    )
    abort_grace_seconds: float = Field(default=5.0, validation_alias="TETHER_ABORT_GRACE_SECONDS")
    execution_retention_seconds: float = Field(
        default=3600.0, validation_alias="TETHER_EXECUTION_RETENTION"
    )
    execution_log_dir: Path | None = Field(default=None, validation_alias="TETHER_EXECUTION_LOG_DIR")
    signal_store_path: Path = Field(
        default=Path("./storage/signals"), validation_alias="TETHER_SIGNAL_STORE_PATH"
    )
    signal_window_size: int = Field(default=20, validation_alias="TETHER_SIGNAL_WINDOW")
    signal_prefer_strongest: bool = Field(
        default=False, validation_alias="TETHER_SIGNAL_PREFER_STRONGEST"
    )
    pattern_lookback_days: int = Field(default=7, validation_alias="TETHER_PATTERN_LOOKBACK_DAYS")
    improvement_pattern_limit: int = Field(
        default=10, validation_alias="TETHER_IMPROVEMENT_PATTERN_LIMIT"
    )
    project_env_var: str = Field(default="TETHER_PROJECT_ID", validation_alias="TETHER_PROJECT_ENV_VAR")
    base_url_env_var: str = Field(default="TETHER_BASE_URL", validation_alias="TETHER_BASE_URL_ENV_VAR")
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="TETHER_PROFILE_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="TETHER_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "TETHER_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("agent_flags", mode="before")
    @classmethod
    def _parse_agent_flags(cls, value):
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(value.split())
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        raise ValueError("TETHER_AGENT_FLAGS must be a list of flags or a whitespace-separated string")

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise ValueError("TETHER_PROFILE_PATHS must be a list of paths or a path-separated string")

    @field_validator("execution_timeout_seconds", "execution_retention_seconds")
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timeout and retention windows must be > 0")
        return value

    @field_validator("synthetic_result_min_seconds", "abort_grace_seconds")
    @classmethod
    def _validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("Synthetic result threshold and abort grace must be >= 0")
        return value

    @field_validator("signal_window_size")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if value < 3:
            raise ValueError("TETHER_SIGNAL_WINDOW must be >= 3")
        return value

    @field_validator("pattern_lookback_days", "improvement_pattern_limit")
    @classmethod
    def _validate_at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Pattern lookback and improvement limit must be >= 1")
        return value


@lru_cache(maxsize=1)
def get_settings() -> TetherSettings:
    """Return cached settings instance."""

    settings = TetherSettings()
    settings.signal_store_path = settings.signal_store_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    if settings.execution_log_dir is not None:
        settings.execution_log_dir = settings.execution_log_dir.expanduser().resolve()
    return settings


__all__ = ["TetherSettings", "get_settings"]
