"""Configuration management for the cron engine.

This module provides configuration models and loading functionality using Pydantic
for validation and type safety.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DOTENV_LOADED = False

VALID_HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _load_env_once() -> None:
    """Load environment variables from a .env file exactly once."""

    global _DOTENV_LOADED
    if not _DOTENV_LOADED:
        load_dotenv()
        _DOTENV_LOADED = True


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand environment variables in configuration data."""

    if isinstance(data, str):
        return os.path.expandvars(data)
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    return data


class SchedulerConfig(BaseModel):
    """Configuration for the dispatcher loop."""

    enabled: bool = Field(default=True, description="Enable the dispatcher loop")
    poll_interval_seconds: int = Field(
        default=30, ge=1, le=3600, description="Seconds between dispatcher ticks"
    )

    # Executor settings
    max_workers: int = Field(default=10, description="Maximum concurrent handler invocations")

    # Abandoned execution recovery
    stale_execution_grace_seconds: int = Field(
        default=60,
        ge=0,
        description="Seconds past a job's timeout after which a running execution is abandoned",
    )
    recover_on_start: bool = Field(
        default=True, description="Finalize abandoned executions when the dispatcher starts"
    )

    # Execution history
    history_retention_days: int = Field(
        default=30, ge=1, description="Days to retain terminal executions"
    )

    # Hooks
    logging_hook_enabled: bool = Field(default=True, description="Enable logging hook")
    metrics_hook_enabled: bool = Field(default=True, description="Enable metrics hook")
    alert_hook_enabled: bool = Field(default=False, description="Enable alert hook")
    failure_threshold: int = Field(
        default=3, ge=1, description="Consecutive failures before the alert hook fires"
    )

    @field_validator("max_workers")
    @classmethod
    def validate_max_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_workers must be at least 1")
        return value


class StoreConfig(BaseModel):
    """Configuration for the SQLite job store."""

    path: str = Field(default="cron_jobs.db", description="Path to the SQLite database")
    busy_timeout_seconds: float = Field(
        default=5.0, gt=0.0, description="Seconds to wait on a locked database"
    )


class HandlerConfig(BaseModel):
    """Configuration for invoking job handlers over HTTP."""

    base_url: str = Field(
        default="http://localhost:3000", description="Base URL job paths are resolved against"
    )
    method: str = Field(default="POST", description="HTTP method used to call handlers")
    headers: dict[str, str] = Field(
        default_factory=dict, description="Additional headers sent with every invocation"
    )
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates")
    max_response_chars: int = Field(
        default=1000, ge=0, description="Characters of the response body kept on an execution"
    )
    max_error_chars: int = Field(
        default=500, ge=16, description="Characters of an error message kept on an execution"
    )

    @field_validator("method")
    @classmethod
    def normalise_method(cls, value: str) -> str:
        method = (value or "POST").strip().upper()
        if method not in VALID_HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")
        return method

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return value.rstrip("/")


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(job_context)s%(message)s",
        description="Log format",
    )
    log_file: str | None = Field(default=None, description="Log file path")
    max_bytes: int = Field(default=10485760, description="Max log file size (10MB)")
    backup_count: int = Field(default=5, description="Number of backup files")

    @field_validator("level")
    @classmethod
    def normalise_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level: {value}")
        return level


class EngineConfig(BaseSettings):
    """Main configuration for the cron engine."""

    model_config = SettingsConfigDict(
        env_prefix="CRON_ENGINE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig, description="Dispatcher configuration"
    )
    store: StoreConfig = Field(default_factory=StoreConfig, description="Job store configuration")
    handler: HandlerConfig = Field(
        default_factory=HandlerConfig, description="Handler invocation settings"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> EngineConfig:
        """Load configuration from a YAML file."""

        _load_env_once()
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, encoding="utf-8") as handle:
            try:
                config_data = yaml.safe_load(handle)
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in config file: {exc}") from exc

        if not config_data:
            config_data = {}

        config_data = _expand_env_vars(config_data)
        return cls(**config_data)

    @classmethod
    def from_json(cls, path: str | Path) -> EngineConfig:
        """Load configuration from a JSON file."""

        import json

        _load_env_once()
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, encoding="utf-8") as handle:
            try:
                config_data = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON in config file: {exc}") from exc

        config_data = _expand_env_vars(config_data)
        return cls(**config_data)

    def to_yaml(self, path: str | Path) -> None:
        """Write the configuration to a YAML file."""

        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as handle:
            yaml.safe_dump(self.model_dump(), handle, default_flow_style=False, sort_keys=False)
