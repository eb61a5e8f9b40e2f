"""CLI module for Cron Engine.

This module provides the command-line interface for the engine.
"""

from __future__ import annotations

from collections.abc import Sequence

from .commands import (
    cmd_cleanup,
    cmd_describe,
    cmd_init,
    cmd_jobs,
    cmd_next,
    cmd_run,
    cmd_validate,
)
from .parser import build_parser


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point.

    Args:
        argv: Optional sequence of CLI arguments (without the program name).

    Returns:
        Process exit code. 0 for success.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        raise SystemExit(0)

    handlers = {
        "validate": cmd_validate,
        "describe": cmd_describe,
        "next": cmd_next,
        "jobs": cmd_jobs,
        "run": cmd_run,
        "cleanup": cmd_cleanup,
        "init": cmd_init,
    }

    handler = handlers.get(args.command)
    if handler:
        return handler(args)

    parser.print_help()
    return 1


__all__ = [
    "build_parser",
    "cmd_cleanup",
    "cmd_describe",
    "cmd_init",
    "cmd_jobs",
    "cmd_next",
    "cmd_run",
    "cmd_validate",
    "main",
]
