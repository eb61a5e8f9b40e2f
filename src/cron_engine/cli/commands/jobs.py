"""Job management CLI commands."""

from __future__ import annotations

import argparse
from typing import Any

from ...core import EngineConfig
from ...scheduler import (
    CronDispatcher,
    CronJobService,
    HttpHandlerInvoker,
    JobNotFoundError,
    JobValidationError,
)
from ..base import (
    Console,
    Panel,
    Table,
    format_time,
    load_config,
    logger,
    open_store,
    status_markup,
)


def cmd_jobs(args: argparse.Namespace) -> int:
    """Handle job management commands."""
    if not args.jobs_command:
        print("Usage: cron-engine jobs <subcommand>")
        print(
            "Subcommands: list, add, show, update, enable, disable, delete, trigger, history"
        )
        return 1

    handlers = {
        "list": _cmd_jobs_list,
        "add": _cmd_jobs_add,
        "show": _cmd_jobs_show,
        "update": _cmd_jobs_update,
        "enable": _cmd_jobs_enable,
        "disable": _cmd_jobs_disable,
        "delete": _cmd_jobs_delete,
        "trigger": _cmd_jobs_trigger,
        "history": _cmd_jobs_history,
    }

    handler = handlers.get(args.jobs_command)
    if handler is None:
        print(f"Unknown jobs subcommand: {args.jobs_command}")
        return 1

    config = load_config(args)
    store = open_store(config)
    try:
        return handler(args, CronJobService(store), config)
    except JobNotFoundError as e:
        print(f"Error: {e}")
        return 1
    except JobValidationError as e:
        print(f"Invalid job: {e}")
        return 1
    except Exception as e:
        logger.error(f"Error running jobs {args.jobs_command}: {e}", exc_info=True)
        print(f"Error: {e}")
        return 1
    finally:
        store.close()


def _definition_fields(args: argparse.Namespace) -> dict[str, Any]:
    fields = {
        "name": args.name,
        "schedule": args.schedule,
        "path": args.path,
        "timezone": args.timezone,
        "timeout_seconds": args.timeout,
        "retry_count": args.retries,
    }
    return {key: value for key, value in fields.items() if value is not None}


def _cmd_jobs_list(
    args: argparse.Namespace, service: CronJobService, config: EngineConfig
) -> int:
    jobs = service.list_jobs(args.project)
    console = Console()
    if not jobs:
        console.print("[yellow]No cron jobs found.[/]")
        return 0

    table = Table(title=f"Cron Jobs ({len(jobs)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="magenta")
    table.add_column("Project")
    table.add_column("Schedule")
    table.add_column("Path")
    table.add_column("Status")
    table.add_column("Next Run")
    table.add_column("Last")

    for job in jobs:
        table.add_row(
            job.id,
            job.name,
            job.project_id,
            f"{job.schedule} ({job.timezone})",
            job.path,
            "[green]Enabled[/]" if job.enabled else "[red]Disabled[/]",
            format_time(job.next_run_at),
            status_markup(job.last_status.value if job.last_status else None),
        )

    console.print(table)
    return 0


def _cmd_jobs_add(
    args: argparse.Namespace, service: CronJobService, config: EngineConfig
) -> int:
    data = _definition_fields(args)
    data["enabled"] = not args.disabled
    job = service.create_job(args.project, data)
    print(f"✓ Created job {job.name}: {job.id}")
    print(f"  Next run: {format_time(job.next_run_at)}")
    return 0


def _cmd_jobs_show(
    args: argparse.Namespace, service: CronJobService, config: EngineConfig
) -> int:
    summary = service.get_job_summary(args.job_id)
    job = summary["job"]
    stats = summary["statistics"]
    console = Console()

    lines = [
        f"[bold]ID:[/] {job['id']}",
        f"[bold]Project:[/] {job['project_id']}",
        f"[bold]Schedule:[/] {job['schedule']} ({job['timezone']})",
        f"[bold]Description:[/] {summary['description']}",
        f"[bold]Path:[/] {job['path']}",
        f"[bold]Enabled:[/] {job['enabled']}",
        f"[bold]Timeout:[/] {job['timeout_seconds']}s",
        f"[bold]Retries:[/] {job['retry_count']}",
        f"[bold]Next Run:[/] {job['next_run_at'] or '-'}",
        f"[bold]Last Run:[/] {job['last_run_at'] or '-'} {status_markup(job['last_status'])}",
        "",
        f"[bold]Executions:[/] {stats['total_executions']}",
        f"[bold]Success Rate (last {stats['recent_executions']}):[/] {stats['success_rate']}%",
        f"[bold]Average Duration:[/] {stats['average_duration_ms']}ms",
    ]
    console.print(Panel("\n".join(lines), title=f"[bold]{job['name']}[/]", expand=False))

    upcoming = service.upcoming_runs(args.job_id)
    if upcoming:
        console.print("\n[bold]Upcoming runs[/]")
        for run in upcoming:
            console.print(f"  • {format_time(run)}")
    return 0


def _cmd_jobs_update(
    args: argparse.Namespace, service: CronJobService, config: EngineConfig
) -> int:
    job = service.update_job(args.job_id, _definition_fields(args))
    print(f"✓ Updated job {job.name}")
    print(f"  Next run: {format_time(job.next_run_at)}")
    return 0


def _cmd_jobs_enable(
    args: argparse.Namespace, service: CronJobService, config: EngineConfig
) -> int:
    job = service.set_enabled(args.job_id, True)
    print(f"✓ Enabled job {job.name}, next run {format_time(job.next_run_at)}")
    return 0


def _cmd_jobs_disable(
    args: argparse.Namespace, service: CronJobService, config: EngineConfig
) -> int:
    job = service.set_enabled(args.job_id, False)
    print(f"✓ Disabled job {job.name}")
    return 0


def _cmd_jobs_delete(
    args: argparse.Namespace, service: CronJobService, config: EngineConfig
) -> int:
    service.delete_job(args.job_id)
    print(f"✓ Deleted job {args.job_id}")
    return 0


def _cmd_jobs_trigger(
    args: argparse.Namespace, service: CronJobService, config: EngineConfig
) -> int:
    invoker = HttpHandlerInvoker(config.handler)
    dispatcher = CronDispatcher(service.store, invoker, config)
    try:
        execution = dispatcher.run_now(args.job_id)
        if execution is None:
            print(f"Job {args.job_id} is already running")
            return 1
        dispatcher.wait_for_idle()
    finally:
        dispatcher.shutdown()

    finished = service.store.get_execution(execution.id)
    status = finished.status.value if finished else "unknown"
    print(f"Execution {execution.id}: {status}")
    if finished and finished.error:
        print(f"  Error: {finished.error}")
    return 0 if status == "success" else 1


def _cmd_jobs_history(
    args: argparse.Namespace, service: CronJobService, config: EngineConfig
) -> int:
    executions = service.get_executions(args.job_id, limit=args.limit)
    console = Console()
    if not executions:
        console.print("[yellow]No executions recorded.[/]")
        return 0

    table = Table(title=f"Executions of {args.job_id}")
    table.add_column("Started", style="cyan")
    table.add_column("Status")
    table.add_column("Attempt", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error")

    for execution in executions:
        table.add_row(
            format_time(execution.started_at),
            status_markup(execution.status.value),
            str(execution.retry_attempt),
            f"{execution.duration_ms}ms" if execution.duration_ms is not None else "-",
            execution.error or "",
        )

    console.print(table)
    return 0


__all__ = ["cmd_jobs"]
