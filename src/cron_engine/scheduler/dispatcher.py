"""Dispatcher loop that claims due jobs and runs them.

This module wraps APScheduler to provide:
- A recurring tick that claims every due job exactly once per occurrence
- A bounded worker pool so slow handlers never delay the tick
- Per-invocation deadlines and immediate retries
- Recovery of executions abandoned by a previous process
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Any

from apscheduler.executors.pool import ThreadPoolExecutor as SchedulerThreadPool
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..core.config import EngineConfig
from ..core.logger import execution_scope, get_logger
from .admin import JobNotFoundError
from .expressions import NoRunFoundError, compute_next_run
from .hooks import (
    ExecutionContext,
    ExecutionOutcome,
    HookRegistry,
    MetricsHook,
    create_default_hook_registry,
)
from .invoker import HandlerInvoker, HandlerTimeoutError, InvocationResult
from .models import UTC, Execution, ExecutionStatus, JobDefinition, truncate, utcnow
from .stores import JobStore

logger = get_logger("scheduler.dispatcher")

TICK_JOB_ID = "cron-engine-tick"
CLEANUP_JOB_ID = "cron-engine-cleanup"


class CronDispatcher:
    """Polls the job store and dispatches due occurrences.

    Every coordination decision goes through the store: an occurrence is
    run only if :meth:`JobStore.claim` succeeds, so several ticks (or several
    dispatchers sharing one database) never run the same occurrence twice.

    Example:
        ```python
        store = JobStore("cron_jobs.db")
        dispatcher = CronDispatcher(store, HttpHandlerInvoker(config.handler), config)
        dispatcher.start()
        ...
        dispatcher.shutdown()
        ```
    """

    def __init__(
        self,
        store: JobStore,
        invoker: HandlerInvoker,
        config: EngineConfig | None = None,
        hooks: HookRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.invoker = invoker
        self.config = config or EngineConfig()
        self.hooks = hooks if hooks is not None else self._default_hooks()
        self._clock = clock or utcnow

        self._scheduler: BackgroundScheduler | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._in_flight: set[Future] = set()
        self._in_flight_lock = threading.Lock()
        self._stopping = threading.Event()
        self._last_tick_at: datetime | None = None
        self._last_tick_claimed = 0

    def _default_hooks(self) -> HookRegistry:
        sched = self.config.scheduler
        return create_default_hook_registry(
            logging_enabled=sched.logging_hook_enabled,
            metrics_enabled=sched.metrics_hook_enabled,
            alert_enabled=sched.alert_hook_enabled,
            failure_threshold=sched.failure_threshold,
        )

    @property
    def is_running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the recurring tick.

        Raises:
            RuntimeError: If the dispatcher is disabled in configuration
        """
        sched = self.config.scheduler
        if not sched.enabled:
            raise RuntimeError("Dispatcher is disabled in configuration")
        if self.is_running:
            return

        self._stopping.clear()
        if sched.recover_on_start:
            self.recover_abandoned()
        self._ensure_executor()

        self._scheduler = BackgroundScheduler(
            executors={"default": SchedulerThreadPool(max_workers=2)},
            timezone=UTC,
        )
        self._scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=sched.poll_interval_seconds, timezone=UTC),
            id=TICK_JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            next_run_time=datetime.now(UTC),
        )
        self._scheduler.add_job(
            self.cleanup_history,
            IntervalTrigger(hours=24, timezone=UTC),
            id=CLEANUP_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            f"Dispatcher started (poll every {sched.poll_interval_seconds}s, "
            f"{sched.max_workers} workers)"
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop ticking and release the worker pool.

        Args:
            wait: Whether to wait for in-flight executions to finish
        """
        self._stopping.set()
        if self._scheduler:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=wait)
            self._scheduler = None
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor:
            executor.shutdown(wait=wait)
        logger.info("Dispatcher stopped")

    def wait_for_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted execution (including retries) has finished.

        Returns:
            False if ``timeout`` elapsed first
        """
        with self._in_flight_lock:
            pending = set(self._in_flight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.scheduler.max_workers,
                    thread_name_prefix="cron-worker",
                )
            return self._executor

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> int:
        """Claim and dispatch every job due at ``now``.

        Never raises: store failures are logged and retried on the next tick.

        Returns:
            Number of occurrences claimed by this tick
        """
        now = now or self._clock()
        self._last_tick_at = now
        try:
            due_jobs = self.store.list_due_jobs(now)
        except Exception as e:
            logger.error(f"Tick failed to list due jobs: {e}")
            self._last_tick_claimed = 0
            return 0

        claimed = 0
        for job in due_jobs:
            scheduled_for = job.next_run_at
            try:
                execution = self._claim(job, now)
            except Exception as e:
                logger.error(f"Failed to claim job {job.name} [{job.id}]: {e}")
                continue
            if execution is None:
                logger.debug(f"Job {job.id} already claimed elsewhere, skipping")
                continue
            claimed += 1
            self._submit(job, execution, trigger="schedule", scheduled_for=scheduled_for)

        self._last_tick_claimed = claimed
        if claimed:
            logger.debug(f"Tick at {now.isoformat()} claimed {claimed} job(s)")
        return claimed

    def _stale_before(self, job: JobDefinition, now: datetime) -> datetime:
        grace = self.config.scheduler.stale_execution_grace_seconds
        return now - timedelta(seconds=job.timeout_seconds + grace)

    def _claim(self, job: JobDefinition, now: datetime) -> Execution | None:
        scheduled_for = job.next_run_at
        try:
            next_run_at: datetime | None = compute_next_run(job.schedule, job.timezone, after=now)
        except (ValueError, NoRunFoundError) as e:
            logger.warning(f"Job {job.name} [{job.id}] has no further occurrence, disabling: {e}")
            next_run_at = None
        execution = self.store.claim(job, now, next_run_at, self._stale_before(job, now))
        if execution is not None and scheduled_for is not None:
            logger.debug(f"Claimed {job.id} for occurrence {scheduled_for.isoformat()}")
        return execution

    # ------------------------------------------------------------------
    # Manual trigger
    # ------------------------------------------------------------------

    def run_now(self, job_id: str) -> Execution | None:
        """Run a job immediately without touching its schedule.

        Returns:
            The created execution, or None if the job already has one in flight

        Raises:
            JobNotFoundError: If the job does not exist
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        now = self._clock()
        execution = self.store.create_execution(
            job.id, 0, now, exclusive_since=self._stale_before(job, now)
        )
        if execution is None:
            logger.warning(f"Job {job.name} [{job.id}] is already running, not triggering")
            return None
        self._submit(job, execution, trigger="manual")
        return execution

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _submit(
        self,
        job: JobDefinition,
        execution: Execution,
        trigger: str,
        scheduled_for: datetime | None = None,
    ) -> None:
        future = self._ensure_executor().submit(
            self._run_with_retries, job, execution, trigger, scheduled_for
        )
        with self._in_flight_lock:
            self._in_flight.add(future)
        future.add_done_callback(self._discard_future)

    def _discard_future(self, future: Future) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(future)
        exc = None if future.cancelled() else future.exception()
        if exc is not None:
            logger.error(f"Worker crashed: {exc}", exc_info=exc)

    def _run_with_retries(
        self,
        job: JobDefinition,
        execution: Execution,
        trigger: str,
        scheduled_for: datetime | None,
    ) -> None:
        current: Execution | None = execution
        while current is not None:
            with execution_scope(job.id, current.id):
                current = self._execute_once(job, current, trigger, scheduled_for)
            trigger = "retry"

    async def _invoke_with_deadline(
        self, job: JobDefinition, execution: Execution
    ) -> InvocationResult:
        return await asyncio.wait_for(
            self.invoker.invoke(job, execution), timeout=job.timeout_seconds
        )

    def _execute_once(
        self,
        job: JobDefinition,
        execution: Execution,
        trigger: str,
        scheduled_for: datetime | None,
    ) -> Execution | None:
        """Run one attempt and record it.

        Returns:
            The next attempt, already marked running, or None when done
        """
        handler = self.config.handler
        context = ExecutionContext(
            job_id=job.id,
            job_name=job.name,
            project_id=job.project_id,
            execution_id=execution.id,
            path=job.path,
            started_at=execution.started_at,
            retry_attempt=execution.retry_attempt,
            trigger=trigger,
            scheduled_for=scheduled_for,
        )
        self.hooks.before_execution(context)

        error: str | None = None
        response: str | None = None
        try:
            result = asyncio.run(self._invoke_with_deadline(job, execution))
            status = ExecutionStatus.SUCCESS
            response = truncate(result.body, handler.max_response_chars)
        except (asyncio.TimeoutError, HandlerTimeoutError):
            status = ExecutionStatus.TIMEOUT
            error = str(HandlerTimeoutError(job.timeout_seconds))
            self.hooks.on_timeout(context, job.timeout_seconds)
        except Exception as e:
            status = ExecutionStatus.FAILED
            error = truncate(str(e) or e.__class__.__name__, handler.max_error_chars)

        finished_at = self._clock()
        retry: Execution | None = None
        try:
            if self._should_retry(job, execution, status):
                # Attempt N+1 is inserted in the transaction that ends attempt N
                finished, retry = self.store.finish_and_retry(
                    execution.id,
                    status,
                    finished_at,
                    execution.retry_attempt + 1,
                    error=error,
                    response=response,
                )
                if finished is not None and retry is None:
                    logger.info(f"Job {job.id} was deleted, not retrying")
            else:
                finished = self.store.finish_execution(
                    execution.id, status, finished_at, error=error, response=response
                )
        except Exception as e:
            logger.error(f"Failed to record execution {execution.id}: {e}")
            return None
        if finished is None:
            logger.warning(f"Execution {execution.id} was already finalized, result dropped")
            return None

        outcome = ExecutionOutcome(
            job_id=job.id,
            execution_id=execution.id,
            status=status,
            started_at=execution.started_at,
            finished_at=finished_at,
            duration_ms=finished.duration_ms or 0,
            error=error,
        )
        self.hooks.after_execution(context, outcome)
        if retry is not None:
            logger.info(
                f"Retrying {job.name} (attempt {retry.retry_attempt} of {job.retry_count})"
            )
        return retry

    def _should_retry(
        self, job: JobDefinition, execution: Execution, status: ExecutionStatus
    ) -> bool:
        if status == ExecutionStatus.SUCCESS or execution.retry_attempt >= job.retry_count:
            return False
        if self._stopping.is_set():
            logger.info(f"Dispatcher stopping, abandoning retries of {job.name}")
            return False
        return True

    # ------------------------------------------------------------------
    # Maintenance and status
    # ------------------------------------------------------------------

    def recover_abandoned(self) -> int:
        """Fail executions left ``running`` by a dispatcher that went away."""
        try:
            return self.store.recover_abandoned_executions(
                self._clock(), self.config.scheduler.stale_execution_grace_seconds
            )
        except Exception as e:
            logger.error(f"Failed to recover abandoned executions: {e}")
            return 0

    def cleanup_history(self) -> int:
        days = self.config.scheduler.history_retention_days
        try:
            deleted = self.store.cleanup_old_records(days, now=self._clock())
        except Exception as e:
            logger.error(f"Failed to clean up execution history: {e}")
            return 0
        if deleted:
            logger.info(f"Removed {deleted} execution(s) older than {days} days")
        return deleted

    def get_status(self) -> dict[str, Any]:
        with self._in_flight_lock:
            in_flight = len(self._in_flight)
        metrics_hook = self.hooks.find(MetricsHook)
        return {
            "running": self.is_running,
            "poll_interval_seconds": self.config.scheduler.poll_interval_seconds,
            "max_workers": self.config.scheduler.max_workers,
            "in_flight": in_flight,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "last_tick_claimed": self._last_tick_claimed,
            "metrics": metrics_hook.get_metrics() if isinstance(metrics_hook, MetricsHook) else {},
        }


__all__ = ["CronDispatcher"]
