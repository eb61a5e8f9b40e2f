"""Schedule CLI commands: validate, describe, next."""

from __future__ import annotations

import argparse

from ...scheduler import (
    CronExpressionParser,
    describe_cron_schedule,
    parse_next_run,
    validate_cron_expression,
)
from ...scheduler.expressions import get_zone
from ..base import Console, Table, format_time


def _expression(args: argparse.Namespace) -> str:
    return " ".join(args.expression)


def cmd_validate(args: argparse.Namespace) -> int:
    """Handle validate command."""
    expression = _expression(args)
    result = validate_cron_expression(expression)
    if not result.valid:
        print(f"✗ Invalid: {result.error}")
        return 1

    print(f"✓ Valid: {expression}")
    print(f"  {describe_cron_schedule(expression)}")
    print(f"  Next run: {format_time(parse_next_run(expression))}")
    return 0


def cmd_describe(args: argparse.Namespace) -> int:
    """Handle describe command."""
    expression = _expression(args)
    description = describe_cron_schedule(expression)
    print(description)
    return 1 if description == "Invalid schedule" else 0


def cmd_next(args: argparse.Namespace) -> int:
    """Handle next command."""
    expression = _expression(args)
    valid, error = CronExpressionParser.validate(expression)
    if not valid:
        print(f"✗ Invalid: {error}")
        return 1
    try:
        zone = get_zone(args.tz)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    runs = CronExpressionParser.get_next_n_runs(expression, max(args.count, 1), timezone=args.tz)
    if not runs:
        print(f"No upcoming runs for '{expression}' within a year")
        return 1

    table = Table(title=f"Next runs of '{expression}'")
    table.add_column("#", justify="right", style="dim")
    table.add_column(f"Local ({args.tz})", style="cyan")
    table.add_column("UTC", style="green")
    for index, run in enumerate(runs, 1):
        table.add_row(str(index), format_time(run.astimezone(zone)), format_time(run))

    Console().print(table)
    return 0


__all__ = ["cmd_describe", "cmd_next", "cmd_validate"]
