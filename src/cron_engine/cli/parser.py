"""CLI argument parser."""

from __future__ import annotations

import argparse

from .. import __version__
from .base import DEFAULT_CONFIG_PATH


def _add_store_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c",
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--db", help="Override the SQLite database path from the config")
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )


def _job_definition_options(parser: argparse.ArgumentParser, required: bool) -> None:
    parser.add_argument("--name", required=required, help="Job name")
    parser.add_argument(
        "--schedule", required=required, help="Cron expression, e.g. '*/5 * * * *'"
    )
    parser.add_argument("--path", required=required, help="Handler path, e.g. /api/cron/report")
    parser.add_argument(
        "--timezone", "--tz", dest="timezone", help="IANA timezone (default: UTC)"
    )
    parser.add_argument("--timeout", type=int, help="Timeout in seconds (1-300)")
    parser.add_argument("--retries", type=int, help="Retries on failure (0-5)")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser.

    Returns:
        ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="cron-engine",
        description="Cron Engine - scheduled jobs with exactly-once dispatch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check and explain a schedule
  cron-engine validate "*/15 9-17 * * mon-fri"
  cron-engine next "0 9 * * 1" --tz Europe/Berlin -n 3

  # Manage jobs
  cron-engine jobs add --project p1 --name nightly --schedule "0 2 * * *" --path /api/cron
  cron-engine jobs list

  # Run the dispatcher
  cron-engine run -c cron-engine.yaml
        """,
    )

    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s v{__version__}",
        help="Show program's version number and exit",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Schedule helpers
    validate_parser = subparsers.add_parser("validate", help="Validate a cron expression")
    validate_parser.add_argument("expression", nargs="+", help="Cron expression (quote it)")

    describe_parser = subparsers.add_parser("describe", help="Describe a cron expression")
    describe_parser.add_argument("expression", nargs="+", help="Cron expression (quote it)")

    next_parser = subparsers.add_parser("next", help="Show upcoming run times")
    next_parser.add_argument("expression", nargs="+", help="Cron expression (quote it)")
    next_parser.add_argument("--tz", default="UTC", help="IANA timezone (default: UTC)")
    next_parser.add_argument(
        "-n", "--count", type=int, default=5, help="Number of runs to show (default: 5)"
    )

    # Jobs
    jobs_parser = subparsers.add_parser("jobs", help="Manage cron jobs")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", help="Job commands")

    jobs_list = jobs_subparsers.add_parser("list", help="List jobs")
    jobs_list.add_argument("--project", help="Only jobs of this project")
    _add_store_options(jobs_list)

    jobs_add = jobs_subparsers.add_parser("add", help="Create a job")
    jobs_add.add_argument("--project", required=True, help="Owning project id")
    _job_definition_options(jobs_add, required=True)
    jobs_add.add_argument("--disabled", action="store_true", help="Create the job disabled")
    _add_store_options(jobs_add)

    jobs_show = jobs_subparsers.add_parser("show", help="Show job details")
    jobs_show.add_argument("job_id", help="Job id")
    _add_store_options(jobs_show)

    jobs_update = jobs_subparsers.add_parser("update", help="Update a job")
    jobs_update.add_argument("job_id", help="Job id")
    _job_definition_options(jobs_update, required=False)
    _add_store_options(jobs_update)

    for name, help_text in (
        ("enable", "Enable a job"),
        ("disable", "Disable a job"),
        ("delete", "Delete a job and its history"),
        ("trigger", "Run a job once right now"),
    ):
        sub = jobs_subparsers.add_parser(name, help=help_text)
        sub.add_argument("job_id", help="Job id")
        _add_store_options(sub)

    jobs_history = jobs_subparsers.add_parser("history", help="Show execution history")
    jobs_history.add_argument("job_id", help="Job id")
    jobs_history.add_argument(
        "-n", "--limit", type=int, default=20, help="Number of executions (default: 20)"
    )
    _add_store_options(jobs_history)

    # Dispatcher
    run_parser = subparsers.add_parser("run", help="Run the dispatcher")
    run_parser.add_argument(
        "--once", action="store_true", help="Run a single tick, wait for it and exit"
    )
    _add_store_options(run_parser)

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old execution history")
    cleanup_parser.add_argument(
        "--days", type=int, help="Retention in days (default: from configuration)"
    )
    _add_store_options(cleanup_parser)

    # Init
    init_parser = subparsers.add_parser("init", help="Generate default configuration")
    init_parser.add_argument(
        "-o",
        "--output",
        default=DEFAULT_CONFIG_PATH,
        help=f"Output config file path (default: {DEFAULT_CONFIG_PATH})",
    )
    init_parser.add_argument(
        "-f", "--force", action="store_true", help="Overwrite an existing file"
    )

    return parser


__all__ = ["build_parser"]
