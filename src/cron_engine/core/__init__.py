"""Core modules for the cron engine.

This package contains the shared infrastructure:
- Configuration management
- Logging utilities
"""

from .config import (
    EngineConfig,
    HandlerConfig,
    LoggingConfig,
    SchedulerConfig,
    StoreConfig,
)
from .logger import execution_scope, get_logger, log_exception, setup_logging

__all__ = [
    # Config
    "EngineConfig",
    "HandlerConfig",
    "LoggingConfig",
    "SchedulerConfig",
    "StoreConfig",
    # Logging
    "execution_scope",
    "get_logger",
    "log_exception",
    "setup_logging",
]
