"""CLI command handlers package."""

from .basic import cmd_cleanup, cmd_init, cmd_run
from .jobs import cmd_jobs
from .schedule import cmd_describe, cmd_next, cmd_validate

__all__ = [
    "cmd_cleanup",
    "cmd_describe",
    "cmd_init",
    "cmd_jobs",
    "cmd_next",
    "cmd_run",
    "cmd_validate",
]
