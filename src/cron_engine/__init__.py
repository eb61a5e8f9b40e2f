"""Cron Engine.

A scheduled-job engine for a hosting platform with:
- Five-field cron parsing with POSIX day-of-month/day-of-week semantics
- Timezone-aware next-run calculation
- Exactly-once dispatch per occurrence through an atomic store claim
- Per-run deadlines, immediate retries and an auditable execution history

Example:
    ```python
    from cron_engine import CronDispatcher, CronJobService, JobStore
    from cron_engine.scheduler import HttpHandlerInvoker

    store = JobStore("cron_jobs.db")
    service = CronJobService(store)
    service.create_job("proj_1", {"name": "Nightly", "schedule": "0 2 * * *", "path": "/api/cron"})

    dispatcher = CronDispatcher(store, HttpHandlerInvoker())
    dispatcher.start()
    ```
"""

from importlib.metadata import PackageNotFoundError, version

from .core import EngineConfig, get_logger, setup_logging
from .scheduler import (
    CronDispatcher,
    CronExpressionParser,
    CronJobService,
    JobStore,
    compute_next_run,
    parse_cron_expression,
)

__all__ = [
    "__version__",
    "CronDispatcher",
    "CronExpressionParser",
    "CronJobService",
    "EngineConfig",
    "JobStore",
    "compute_next_run",
    "get_logger",
    "parse_cron_expression",
    "setup_logging",
]

try:  # pragma: no cover - best-effort during development
    __version__ = version("cron-engine")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"
