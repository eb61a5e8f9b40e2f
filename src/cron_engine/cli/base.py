"""Base utilities and shared imports for CLI module."""

from __future__ import annotations

import argparse
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..core import EngineConfig, get_logger, setup_logging
from ..scheduler import JobStore

logger = get_logger("cli")

DEFAULT_CONFIG_PATH = "cron-engine.yaml"


def load_config(args: argparse.Namespace) -> EngineConfig:
    """Load the engine configuration named by ``--config`` and apply CLI overrides.

    A missing config file is not an error: defaults (and ``CRON_ENGINE_*``
    environment variables) apply.
    """
    config_path = Path(getattr(args, "config", None) or DEFAULT_CONFIG_PATH)
    if config_path.exists():
        config = EngineConfig.from_yaml(config_path)
    else:
        logger.debug(f"Config file {config_path} not found, using defaults")
        config = EngineConfig()

    if getattr(args, "db", None):
        config.store.path = args.db
    if getattr(args, "debug", False):
        config.logging.level = "DEBUG"

    setup_logging(config.logging)
    return config


def open_store(config: EngineConfig) -> JobStore:
    return JobStore(config.store.path, busy_timeout=config.store.busy_timeout_seconds)


def format_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def status_markup(status: str | None) -> str:
    colors = {"success": "green", "failed": "red", "timeout": "yellow", "running": "cyan"}
    if not status:
        return "[dim]-[/]"
    return f"[{colors.get(status, 'white')}]{status}[/]"


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "Console",
    "Panel",
    "Table",
    "__version__",
    "format_time",
    "load_config",
    "logger",
    "open_store",
    "status_markup",
]
