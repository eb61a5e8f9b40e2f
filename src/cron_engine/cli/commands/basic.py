"""Basic CLI commands: run, cleanup, init."""

from __future__ import annotations

import argparse
import signal
import threading
from pathlib import Path
from types import FrameType

from ...core import EngineConfig, log_exception
from ...scheduler import CronDispatcher, HttpHandlerInvoker
from ..base import Console, Panel, __version__, load_config, logger, open_store


def print_banner(config: EngineConfig, args: argparse.Namespace) -> None:
    """Print a startup banner with configuration info."""
    sched = config.scheduler
    info = f"""[bold]Cron Engine[/bold] [green]v{__version__}[/]

[bold]Config:[/bold]   [yellow]{args.config}[/]
[bold]Database:[/bold] [yellow]{config.store.path}[/]
[bold]Handlers:[/bold] [yellow]{config.handler.method} {config.handler.base_url}[/]
[bold]Poll:[/bold]     [yellow]every {sched.poll_interval_seconds}s, {sched.max_workers} workers[/]"""
    Console().print(
        Panel(info, title="[bold white]Dispatcher[/]", border_style="blue", expand=False)
    )


def _install_signal_handlers(
    shutdown_event: threading.Event,
) -> dict[int, signal.Handlers | None]:
    previous: dict[int, signal.Handlers | None] = {}

    def signal_handler(sig: int, frame: FrameType | None) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        shutdown_event.set()

    for sig in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)):
        if sig is None:
            continue
        try:
            previous[sig] = signal.getsignal(sig)
            signal.signal(sig, signal_handler)
        except (AttributeError, OSError, ValueError) as exc:
            logger.warning(f"Unable to register handler for signal {sig}: {exc}")
    return previous


def _restore_signal_handlers(previous: dict[int, signal.Handlers | None]) -> None:
    for sig, handler in previous.items():
        try:
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
        except (AttributeError, OSError, ValueError) as exc:
            logger.debug(f"Unable to restore handler for signal {sig}: {exc}")


def cmd_run(args: argparse.Namespace) -> int:
    """Handle run command.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    try:
        config = load_config(args)
        store = open_store(config)
    except Exception as e:
        logger.error(f"Error starting dispatcher: {e}", exc_info=True)
        print(f"Error: {e}")
        return 1

    dispatcher = CronDispatcher(store, HttpHandlerInvoker(config.handler), config)
    try:
        if args.once:
            if config.scheduler.recover_on_start:
                dispatcher.recover_abandoned()
            claimed = dispatcher.tick()
            dispatcher.wait_for_idle()
            print(f"Dispatched {claimed} job(s)")
            return 0

        print_banner(config, args)
        shutdown_event = threading.Event()
        previous = _install_signal_handlers(shutdown_event)
        try:
            dispatcher.start()
            while not shutdown_event.wait(timeout=1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Dispatcher interrupted by user")
        finally:
            _restore_signal_handlers(previous)
        return 0
    except Exception as e:
        log_exception(logger, e, "Dispatcher failed")
        return 1
    finally:
        dispatcher.shutdown()
        store.close()


def cmd_cleanup(args: argparse.Namespace) -> int:
    """Handle cleanup command."""
    config = load_config(args)
    days = args.days or config.scheduler.history_retention_days
    if days < 1:
        print("Error: --days must be at least 1")
        return 1

    store = open_store(config)
    try:
        deleted = store.cleanup_old_records(days)
    except Exception as e:
        logger.error(f"Error cleaning up history: {e}", exc_info=True)
        print(f"Error: {e}")
        return 1
    finally:
        store.close()

    print(f"✓ Removed {deleted} execution(s) older than {days} days")
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    """Handle init command.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    output_path = Path(args.output)

    if output_path.exists() and not args.force:
        response = input(f"{output_path} already exists. Overwrite? (y/N): ")
        if response.lower() != "y":
            print("Cancelled.")
            return 0

    EngineConfig().to_yaml(output_path)

    print(f"✓ Configuration file created: {output_path}")
    print("\nNext steps:")
    print(f"1. Edit {output_path} and set handler.base_url")
    print(f"2. Add a job: cron-engine jobs add -c {output_path} --project ... --schedule ...")
    print(f"3. Start the dispatcher: cron-engine run --config {output_path}")

    return 0


__all__ = ["cmd_cleanup", "cmd_init", "cmd_run", "print_banner"]
