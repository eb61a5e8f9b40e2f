"""Test configuration hooks."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from cron_engine.core.config import EngineConfig, SchedulerConfig
from cron_engine.scheduler.models import UTC, JobDefinition
from cron_engine.scheduler.stores import JobStore


# Configure anyio to only use asyncio backend (skip trio tests)
@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio to use only asyncio backend."""
    return "asyncio"


class FakeClock:
    """Settable clock injected into the dispatcher and the admin service."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 15, 10, 0, tzinfo=UTC))


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cron_jobs.db"


@pytest.fixture
def store(db_path: Path) -> Iterator[JobStore]:
    job_store = JobStore(db_path)
    yield job_store
    job_store.close()


@pytest.fixture
def make_job(store: JobStore, clock: FakeClock) -> Callable[..., JobDefinition]:
    """Create and persist a job that is due at the clock's current time."""

    def factory(**overrides: Any) -> JobDefinition:
        values: dict[str, Any] = {
            "project_id": "proj_1",
            "name": "report",
            "schedule": "*/5 * * * *",
            "path": "/api/cron/report",
            "next_run_at": clock.now,
            "created_at": clock.now,
            "updated_at": clock.now,
        }
        values.update(overrides)
        return store.create_job(JobDefinition(**values))

    return factory


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        scheduler=SchedulerConfig(
            max_workers=4,
            logging_hook_enabled=False,
            stale_execution_grace_seconds=60,
        )
    )
