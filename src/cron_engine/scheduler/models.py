"""Job definition and execution records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

UTC = timezone.utc

MIN_TIMEOUT_SECONDS = 1
MAX_TIMEOUT_SECONDS = 300
DEFAULT_TIMEOUT_SECONDS = 60
MIN_RETRY_COUNT = 0
MAX_RETRY_COUNT = 5


def utcnow() -> datetime:
    return datetime.now(UTC)


def clamp_timeout(value: int) -> int:
    return max(MIN_TIMEOUT_SECONDS, min(int(value), MAX_TIMEOUT_SECONDS))


def clamp_retry_count(value: int) -> int:
    return max(MIN_RETRY_COUNT, min(int(value), MAX_RETRY_COUNT))


def truncate(text: str | None, limit: int) -> str | None:
    """Cut ``text`` down to at most ``limit`` characters."""
    if text is None or len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ExecutionStatus(str, Enum):
    """Lifecycle states of an execution."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


@dataclass
class JobDefinition:
    """A user-defined scheduled job.

    ``next_run_at`` is server-computed: it is set whenever the job is
    created, its schedule, timezone or enabled flag changes, and every time
    the dispatcher claims an occurrence. It is ``None`` exactly when the job
    is disabled.
    """

    project_id: str
    name: str
    schedule: str
    path: str
    timezone: str = "UTC"
    enabled: bool = True
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    retry_count: int = 0
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_status: ExecutionStatus | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.timeout_seconds = clamp_timeout(self.timeout_seconds)
        self.retry_count = clamp_retry_count(self.retry_count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "schedule": self.schedule,
            "path": self.path,
            "timezone": self.timezone,
            "enabled": self.enabled,
            "timeout_seconds": self.timeout_seconds,
            "retry_count": self.retry_count,
            "next_run_at": _iso(self.next_run_at),
            "last_run_at": _iso(self.last_run_at),
            "last_status": self.last_status.value if self.last_status else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Execution:
    """One attempt at running a job occurrence.

    Created as ``running`` when the dispatcher claims a job (or schedules a
    retry) and moved exactly once to a terminal status.
    """

    job_id: str
    started_at: datetime
    status: ExecutionStatus = ExecutionStatus.RUNNING
    retry_attempt: int = 0
    finished_at: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None
    response: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_ms": self.duration_ms,
            "error": self.error,
            "response": self.response,
            "retry_attempt": self.retry_attempt,
        }


__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "MAX_RETRY_COUNT",
    "MAX_TIMEOUT_SECONDS",
    "MIN_RETRY_COUNT",
    "MIN_TIMEOUT_SECONDS",
    "Execution",
    "ExecutionStatus",
    "JobDefinition",
    "clamp_retry_count",
    "clamp_timeout",
    "truncate",
    "utcnow",
]
