"""Tests for the dispatcher: claiming, execution, timeouts and retries."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from datetime import timedelta

import pytest

from cron_engine.core.config import EngineConfig, HandlerConfig, SchedulerConfig
from cron_engine.core.logger import ExecutionContextFilter
from cron_engine.scheduler.admin import JobNotFoundError
from cron_engine.scheduler.dispatcher import CronDispatcher
from cron_engine.scheduler.hooks import (
    ExecutionContext,
    ExecutionHook,
    ExecutionOutcome,
    HookRegistry,
)
from cron_engine.scheduler.invoker import CallableHandlerInvoker
from cron_engine.scheduler.models import ExecutionStatus
from cron_engine.scheduler.stores import ABANDONED_ERROR, JobStore

PATH = "/api/cron/report"


class RecordingHook(ExecutionHook):
    """Hook that records every call it receives."""

    def __init__(self) -> None:
        self.before: list[ExecutionContext] = []
        self.after: list[tuple[ExecutionContext, ExecutionOutcome]] = []
        self.timeouts: list[int] = []

    def before_execution(self, context):
        self.before.append(context)

    def after_execution(self, context, outcome):
        self.after.append((context, outcome))

    def on_timeout(self, context, timeout_seconds):
        self.timeouts.append(timeout_seconds)


class ExplodingHook(ExecutionHook):
    def before_execution(self, context):
        raise RuntimeError("hook failure")

    def after_execution(self, context, outcome):
        raise RuntimeError("hook failure")


@pytest.fixture
def invoker():
    handlers = CallableHandlerInvoker()
    yield handlers
    handlers.close()


@pytest.fixture
def make_dispatcher(store, invoker, engine_config, clock):
    created: list[CronDispatcher] = []

    def factory(**kwargs):
        kwargs.setdefault("config", engine_config)
        kwargs.setdefault("clock", clock)
        dispatcher = CronDispatcher(kwargs.pop("store", store), invoker, **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield factory
    for dispatcher in created:
        dispatcher.shutdown(wait=True)


@pytest.fixture
def dispatcher(make_dispatcher):
    return make_dispatcher()


def _attempts(store, job_id):
    return sorted(store.get_executions(job_id), key=lambda e: e.retry_attempt)


class TestTick:
    """Tests for claiming and running due jobs."""

    def test_success(self, dispatcher, invoker, store, make_job, clock):
        invoker.register(PATH, lambda job, execution: "done")
        job = make_job()

        assert dispatcher.tick() == 1
        assert dispatcher.wait_for_idle(timeout=5)

        executions = store.get_executions(job.id)
        assert len(executions) == 1
        assert executions[0].status == ExecutionStatus.SUCCESS
        assert executions[0].response == "done"
        assert executions[0].retry_attempt == 0

        loaded = store.get_job(job.id)
        assert loaded.next_run_at == clock.now + timedelta(minutes=5)
        assert loaded.last_status == ExecutionStatus.SUCCESS
        assert loaded.last_run_at == clock.now

    def test_occurrence_runs_once(self, dispatcher, invoker, store, make_job):
        invoker.register(PATH, lambda job, execution: None)
        job = make_job()

        assert dispatcher.tick() == 1
        assert dispatcher.tick() == 0
        dispatcher.wait_for_idle(timeout=5)

        assert store.count_executions(job.id) == 1

    def test_not_due_yet(self, dispatcher, invoker, store, make_job, clock):
        invoker.register(PATH, lambda job, execution: None)
        job = make_job(next_run_at=clock.now + timedelta(minutes=1))

        assert dispatcher.tick() == 0
        assert store.count_executions(job.id) == 0

    def test_missed_occurrences_run_once(self, dispatcher, invoker, store, make_job, clock):
        invoker.register(PATH, lambda job, execution: None)
        job = make_job(next_run_at=clock.now - timedelta(hours=2))

        assert dispatcher.tick() == 1
        dispatcher.wait_for_idle(timeout=5)

        assert store.count_executions(job.id) == 1
        assert store.get_job(job.id).next_run_at == clock.now + timedelta(minutes=5)

    def test_async_handler(self, dispatcher, invoker, store, make_job):
        async def handler(job, execution):
            await asyncio.sleep(0)
            return {"ok": True}

        invoker.register(PATH, handler)
        job = make_job()

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)

        execution = store.get_executions(job.id)[0]
        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.response == "{'ok': True}"

    def test_handler_logs_are_tagged_with_execution(self, dispatcher, invoker, store, make_job):
        tagged = []

        async def handler(job, execution):
            record = logging.makeLogRecord({"msg": "inside handler"})
            ExecutionContextFilter().filter(record)
            tagged.append((record.job_id, record.execution_id))

        invoker.register(PATH, handler)
        job = make_job()

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)

        execution = store.get_executions(job.id)[0]
        assert tagged == [(job.id, execution.id)]

    def test_missing_handler_fails(self, dispatcher, store, make_job):
        job = make_job()

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)

        execution = store.get_executions(job.id)[0]
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == f"no handler registered for {PATH}"

    def test_failure_is_isolated(self, dispatcher, invoker, store, make_job):
        def broken(job, execution):
            raise RuntimeError("boom")

        invoker.register("/broken", broken)
        invoker.register("/healthy", lambda job, execution: "fine")
        bad = make_job(name="bad", path="/broken")
        good = make_job(name="good", path="/healthy")

        assert dispatcher.tick() == 2
        dispatcher.wait_for_idle(timeout=5)

        assert store.get_executions(bad.id)[0].status == ExecutionStatus.FAILED
        assert store.get_executions(bad.id)[0].error == "boom"
        assert store.get_executions(good.id)[0].status == ExecutionStatus.SUCCESS
        assert store.get_job(good.id).next_run_at is not None
        assert store.get_job(bad.id).next_run_at is not None

    def test_empty_error_message_uses_class_name(self, dispatcher, invoker, store, make_job):
        def broken(job, execution):
            raise KeyError()

        invoker.register(PATH, broken)
        job = make_job()

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)

        assert store.get_executions(job.id)[0].error == "KeyError"

    def test_error_is_truncated(self, make_dispatcher, invoker, store, make_job):
        config = EngineConfig(
            scheduler=SchedulerConfig(logging_hook_enabled=False),
            handler=HandlerConfig(max_error_chars=50),
        )
        dispatcher = make_dispatcher(config=config)

        def broken(job, execution):
            raise RuntimeError("x" * 500)

        invoker.register(PATH, broken)
        job = make_job()

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)

        error = store.get_executions(job.id)[0].error
        assert len(error) == 50
        assert error.endswith("...")

    def test_response_is_truncated(self, make_dispatcher, invoker, store, make_job):
        config = EngineConfig(
            scheduler=SchedulerConfig(logging_hook_enabled=False),
            handler=HandlerConfig(max_response_chars=20),
        )
        dispatcher = make_dispatcher(config=config)
        invoker.register(PATH, lambda job, execution: "y" * 100)
        job = make_job()

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)

        assert len(store.get_executions(job.id)[0].response) == 20

    def test_exhausted_schedule_disables_job(self, dispatcher, invoker, store, make_job):
        invoker.register(PATH, lambda job, execution: None)
        job = make_job(schedule="0 0 30 2 *")

        assert dispatcher.tick() == 1
        dispatcher.wait_for_idle(timeout=5)

        loaded = store.get_job(job.id)
        assert loaded.enabled is False
        assert loaded.next_run_at is None
        assert store.get_executions(job.id)[0].status == ExecutionStatus.SUCCESS

    def test_store_failure_returns_zero(self, dispatcher, store, monkeypatch):
        def fail(now):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(store, "list_due_jobs", fail)

        assert dispatcher.tick() == 0
        assert dispatcher.get_status()["last_tick_claimed"] == 0

    def test_claim_failure_skips_only_that_job(
        self, dispatcher, invoker, store, make_job, monkeypatch
    ):
        invoker.register(PATH, lambda job, execution: None)
        broken = make_job(name="broken")
        healthy = make_job(name="healthy")
        original_claim = store.claim

        def claim(job, *args, **kwargs):
            if job.id == broken.id:
                raise sqlite3.OperationalError("disk I/O error")
            return original_claim(job, *args, **kwargs)

        monkeypatch.setattr(store, "claim", claim)

        assert dispatcher.tick() == 1
        dispatcher.wait_for_idle(timeout=5)
        assert store.count_executions(healthy.id) == 1
        assert store.count_executions(broken.id) == 0

    def test_two_dispatchers_claim_once(self, make_dispatcher, invoker, db_path, make_job):
        calls = []
        lock = threading.Lock()

        def handler(job, execution):
            with lock:
                calls.append(execution.id)

        invoker.register(PATH, handler)
        job = make_job()
        stores = [JobStore(db_path), JobStore(db_path)]
        dispatchers = [make_dispatcher(store=s) for s in stores]
        barrier = threading.Barrier(2)
        claimed = []

        def run(d):
            barrier.wait()
            claimed.append(d.tick())

        threads = [threading.Thread(target=run, args=(d,)) for d in dispatchers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        for d in dispatchers:
            d.wait_for_idle(timeout=5)

        try:
            assert sum(claimed) == 1
            assert len(calls) == 1
            assert stores[0].count_executions(job.id) == 1
        finally:
            for d in dispatchers:
                d.shutdown()
            for s in stores:
                s.close()


class TestRetries:
    """Tests for timeouts and retries."""

    def test_retries_until_exhausted(self, dispatcher, invoker, store, make_job):
        def broken(job, execution):
            raise RuntimeError("boom")

        invoker.register(PATH, broken)
        job = make_job(retry_count=2)

        assert dispatcher.tick() == 1
        dispatcher.wait_for_idle(timeout=5)

        attempts = _attempts(store, job.id)
        assert [e.retry_attempt for e in attempts] == [0, 1, 2]
        assert all(e.status == ExecutionStatus.FAILED for e in attempts)
        assert store.get_job(job.id).last_status == ExecutionStatus.FAILED

    def test_retry_succeeds(self, dispatcher, invoker, store, make_job):
        seen = []

        def flaky(job, execution):
            seen.append(execution.retry_attempt)
            if execution.retry_attempt == 0:
                raise RuntimeError("first attempt fails")
            return "recovered"

        invoker.register(PATH, flaky)
        job = make_job(retry_count=3)

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)

        attempts = _attempts(store, job.id)
        assert seen == [0, 1]
        assert [e.status for e in attempts] == [ExecutionStatus.FAILED, ExecutionStatus.SUCCESS]
        assert attempts[1].response == "recovered"
        assert store.get_job(job.id).last_status == ExecutionStatus.SUCCESS

    def test_no_retry_without_retry_count(self, dispatcher, invoker, store, make_job):
        def broken(job, execution):
            raise RuntimeError("boom")

        invoker.register(PATH, broken)
        job = make_job(retry_count=0)

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)

        assert store.count_executions(job.id) == 1

    def test_timeout(self, dispatcher, invoker, store, make_job):
        async def slow(job, execution):
            await asyncio.sleep(10)

        invoker.register(PATH, slow)
        job = make_job(timeout_seconds=1)

        dispatcher.tick()
        assert dispatcher.wait_for_idle(timeout=10)

        execution = store.get_executions(job.id)[0]
        assert execution.status == ExecutionStatus.TIMEOUT
        assert execution.error == "Execution timed out after 1s"
        assert store.get_job(job.id).last_status == ExecutionStatus.TIMEOUT

    def test_timeout_is_retried(self, dispatcher, invoker, store, make_job):
        async def slow_then_fast(job, execution):
            if execution.retry_attempt == 0:
                await asyncio.sleep(10)
            return "ok"

        invoker.register(PATH, slow_then_fast)
        job = make_job(timeout_seconds=1, retry_count=1)

        dispatcher.tick()
        assert dispatcher.wait_for_idle(timeout=10)

        attempts = _attempts(store, job.id)
        assert [e.status for e in attempts] == [ExecutionStatus.TIMEOUT, ExecutionStatus.SUCCESS]

    def test_no_overlap_between_retry_and_next_occurrence(
        self, make_dispatcher, invoker, store, make_job, clock
    ):
        running = []
        peak = []
        lock = threading.Lock()

        def flaky(job, execution):
            with lock:
                running.append(execution.id)
                peak.append(len(running))
            try:
                if execution.retry_attempt == 0:
                    raise RuntimeError("first attempt fails")
            finally:
                with lock:
                    running.remove(execution.id)

        class TickAfterFailure(ExecutionHook):
            """Ticks once the next occurrence is due, right after the failed attempt."""

            def __init__(self) -> None:
                self.claimed: list[int] = []

            def before_execution(self, context):
                pass

            def after_execution(self, context, outcome):
                if outcome.status == ExecutionStatus.FAILED:
                    clock.advance(minutes=1)
                    self.claimed.append(dispatcher.tick())

        invoker.register(PATH, flaky)
        job = make_job(schedule="* * * * *", retry_count=1)
        hook = TickAfterFailure()
        hooks = HookRegistry()
        hooks.register(hook)
        dispatcher = make_dispatcher(hooks=hooks)

        assert dispatcher.tick() == 1
        assert dispatcher.wait_for_idle(timeout=5)

        assert hook.claimed == [0]
        assert max(peak) == 1
        attempts = _attempts(store, job.id)
        assert [e.status for e in attempts] == [ExecutionStatus.FAILED, ExecutionStatus.SUCCESS]
        assert store.get_job(job.id).next_run_at == clock.now

        # The skipped occurrence is still due and runs on the following tick
        assert dispatcher.tick() == 1
        dispatcher.wait_for_idle(timeout=5)
        assert store.count_executions(job.id) == 3


class TestRunNow:
    """Tests for manual triggering."""

    def test_run_now(self, dispatcher, invoker, store, make_job, clock):
        invoker.register(PATH, lambda job, execution: "manual")
        next_at = clock.now + timedelta(hours=3)
        job = make_job(next_run_at=next_at)

        execution = dispatcher.run_now(job.id)
        dispatcher.wait_for_idle(timeout=5)

        assert execution is not None
        assert store.get_execution(execution.id).status == ExecutionStatus.SUCCESS
        assert store.get_job(job.id).next_run_at == next_at

    def test_run_now_disabled_job(self, dispatcher, invoker, store, make_job):
        invoker.register(PATH, lambda job, execution: None)
        job = make_job(enabled=False, next_run_at=None)

        execution = dispatcher.run_now(job.id)
        dispatcher.wait_for_idle(timeout=5)

        assert store.get_execution(execution.id).status == ExecutionStatus.SUCCESS
        assert store.get_job(job.id).enabled is False

    def test_run_now_unknown_job(self, dispatcher):
        with pytest.raises(JobNotFoundError):
            dispatcher.run_now("missing")

    def test_run_now_while_running(self, dispatcher, store, make_job, clock):
        job = make_job()
        store.create_execution(job.id, 0, clock.now)

        assert dispatcher.run_now(job.id) is None
        assert store.count_executions(job.id) == 1


class TestOverlapAndRecovery:
    """Tests for overlapping runs and abandoned executions."""

    def test_fresh_running_execution_skips_occurrence(
        self, dispatcher, invoker, store, make_job, clock
    ):
        invoker.register(PATH, lambda job, execution: None)
        job = make_job()
        store.create_execution(job.id, 0, clock.now - timedelta(seconds=10))

        assert dispatcher.tick() == 0
        assert store.get_job(job.id).next_run_at == clock.now

    def test_stale_running_execution_does_not_block(
        self, dispatcher, invoker, store, make_job, clock
    ):
        invoker.register(PATH, lambda job, execution: None)
        job = make_job(timeout_seconds=30)
        store.create_execution(job.id, 0, clock.now - timedelta(minutes=30))

        assert dispatcher.tick() == 1
        dispatcher.wait_for_idle(timeout=5)

    def test_recover_abandoned(self, dispatcher, store, make_job, clock):
        job = make_job(timeout_seconds=30)
        stale = store.create_execution(job.id, 0, clock.now - timedelta(minutes=30))

        assert dispatcher.recover_abandoned() == 1

        execution = store.get_execution(stale.id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == ABANDONED_ERROR

    def test_cleanup_history(self, dispatcher, store, make_job, clock):
        job = make_job()
        old = store.create_execution(job.id, 0, clock.now - timedelta(days=45))
        store.finish_execution(old.id, ExecutionStatus.SUCCESS, clock.now - timedelta(days=45))

        assert dispatcher.cleanup_history() == 1
        assert store.count_executions(job.id) == 0


class TestLifecycle:
    """Tests for starting, stopping and status reporting."""

    def test_start_runs_first_tick_immediately(self, dispatcher, invoker, make_job):
        ran = threading.Event()
        invoker.register(PATH, lambda job, execution: ran.set())
        make_job()

        dispatcher.start()
        try:
            assert dispatcher.is_running
            assert ran.wait(timeout=10)
        finally:
            dispatcher.shutdown()

        assert not dispatcher.is_running

    def test_start_is_idempotent(self, dispatcher):
        dispatcher.start()
        dispatcher.start()
        assert dispatcher.is_running
        dispatcher.shutdown()

    def test_start_disabled(self, make_dispatcher):
        config = EngineConfig(scheduler=SchedulerConfig(enabled=False))
        dispatcher = make_dispatcher(config=config)

        with pytest.raises(RuntimeError, match="disabled"):
            dispatcher.start()

    def test_get_status(self, dispatcher, invoker, make_job, clock):
        invoker.register(PATH, lambda job, execution: None)
        job = make_job()

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)
        status = dispatcher.get_status()

        assert status["running"] is False
        assert status["max_workers"] == 4
        assert status["last_tick_at"] == clock.now.isoformat()
        assert status["last_tick_claimed"] == 1
        assert status["metrics"][job.id]["success_count"] == 1


class TestHooks:
    """Tests for hook invocation around executions."""

    def test_hooks_see_every_attempt(self, make_dispatcher, invoker, store, make_job, clock):
        hook = RecordingHook()
        registry = HookRegistry()
        registry.register(hook)
        dispatcher = make_dispatcher(hooks=registry)

        def broken(job, execution):
            raise RuntimeError("boom")

        invoker.register(PATH, broken)
        job = make_job(retry_count=1)

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)

        assert [c.trigger for c in hook.before] == ["schedule", "retry"]
        assert [c.retry_attempt for c in hook.before] == [0, 1]
        assert hook.before[0].scheduled_for == clock.now
        assert hook.before[0].job_id == job.id
        assert [o.status for _, o in hook.after] == [ExecutionStatus.FAILED] * 2
        assert hook.after[0][1].error == "boom"

    def test_timeout_hook(self, make_dispatcher, invoker, make_job):
        hook = RecordingHook()
        registry = HookRegistry()
        registry.register(hook)
        dispatcher = make_dispatcher(hooks=registry)

        async def slow(job, execution):
            await asyncio.sleep(10)

        invoker.register(PATH, slow)
        make_job(timeout_seconds=1)

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=10)

        assert hook.timeouts == [1]
        assert hook.after[0][1].status == ExecutionStatus.TIMEOUT

    def test_failing_hook_does_not_affect_execution(
        self, make_dispatcher, invoker, store, make_job
    ):
        registry = HookRegistry()
        registry.register(ExplodingHook())
        dispatcher = make_dispatcher(hooks=registry)
        invoker.register(PATH, lambda job, execution: "ok")
        job = make_job()

        dispatcher.tick()
        dispatcher.wait_for_idle(timeout=5)

        assert store.get_executions(job.id)[0].status == ExecutionStatus.SUCCESS

    def test_manual_trigger_context(self, make_dispatcher, invoker, make_job):
        hook = RecordingHook()
        registry = HookRegistry()
        registry.register(hook)
        dispatcher = make_dispatcher(hooks=registry)
        invoker.register(PATH, lambda job, execution: None)
        job = make_job()

        dispatcher.run_now(job.id)
        dispatcher.wait_for_idle(timeout=5)

        assert hook.before[0].trigger == "manual"
        assert hook.before[0].scheduled_for is None
