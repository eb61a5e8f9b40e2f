"""Logging setup for the cron engine.

Records go to a Rich console handler and, when configured, to a size-rotated
log file. While the dispatcher runs an attempt, every record logged from that
attempt carries the job and execution ids (see :func:`execution_scope`), so
interleaved output from concurrent workers can be told apart.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from .config import LoggingConfig

ROOT_LOGGER_NAME = "cron_engine"

# (job_id, execution_id) of the attempt running in the current context
_current_execution: ContextVar[tuple[str, str] | None] = ContextVar(
    "cron_engine_execution", default=None
)
_loggers: dict[str, logging.Logger] = {}
_level: int = logging.INFO

console = Console()


class ExecutionContextFilter(logging.Filter):
    """Stamp records with ``job_id``, ``execution_id`` and a ``job_context`` prefix.

    Outside an execution scope the ids are ``None`` and the prefix is empty,
    so format strings may always reference ``%(job_context)s``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        current = _current_execution.get()
        if current is None:
            record.job_id = record.execution_id = None
            record.job_context = ""
        else:
            record.job_id, record.execution_id = current
            record.job_context = f"[{current[0]}/{current[1]}] "
        return True


@contextmanager
def execution_scope(job_id: str, execution_id: str) -> Iterator[None]:
    """Attribute everything logged inside the block to one job execution."""
    token = _current_execution.set((job_id, execution_id))
    try:
        yield
    finally:
        _current_execution.reset(token)


class CloseOnEmitFileHandler(RotatingFileHandler):
    """Rotating file handler that releases the file after every record.

    Open handles would otherwise keep temporary log directories from being
    removed on Windows. With ``delay=True`` the next record reopens the file.
    """

    def emit(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        try:
            super().emit(record)
        finally:
            self.close()


def _build_handlers(config: LoggingConfig, level: int) -> list[logging.Handler]:
    console_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=True,
        markup=False,
        rich_tracebacks=True,
    )
    console_handler.setFormatter(logging.Formatter("%(job_context)s%(message)s"))
    handlers: list[logging.Handler] = [console_handler]

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = CloseOnEmitFileHandler(
            log_path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
            delay=True,
        )
        file_handler.setFormatter(logging.Formatter(config.format))
        handlers.append(file_handler)

    context_filter = ExecutionContextFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.addFilter(context_filter)
    return handlers


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Replace the root handlers with the engine's console and file handlers.

    Calling it again (e.g. after loading a config file) swaps the handlers
    rather than stacking them, and re-levels every logger handed out by
    :func:`get_logger`.
    """
    global _level

    config = config or LoggingConfig()
    _level = getattr(logging, config.level)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        with suppress(Exception):
            handler.close()
    root.setLevel(_level)
    for handler in _build_handlers(config, _level):
        root.addHandler(handler)

    logging.getLogger(ROOT_LOGGER_NAME).setLevel(_level)
    for named in _loggers.values():
        named.setLevel(_level)

    logger = get_logger("setup")
    logger.info(f"Logging configured: level={config.level}")
    if config.log_file:
        logger.info(f"Log file: {config.log_file}")


def get_logger(name: str) -> logging.Logger:
    """Return the ``cron_engine.<name>`` logger (e.g. ``scheduler.stores``)."""
    logger = _loggers.get(name)
    if logger is None:
        logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
        logger.setLevel(_level)
        _loggers[name] = logger
    return logger


def log_exception(logger: logging.Logger, exc: Exception, context: str = "") -> None:
    """Log ``exc`` with its traceback, prefixed by ``context`` when given."""
    logger.exception(f"{context or 'Exception occurred'}: {exc}")


__all__ = [
    "CloseOnEmitFileHandler",
    "ExecutionContextFilter",
    "ROOT_LOGGER_NAME",
    "execution_scope",
    "get_logger",
    "log_exception",
    "setup_logging",
]
