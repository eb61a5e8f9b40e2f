"""Admin boundary: schedule helpers and job CRUD that keeps ``next_run_at`` live.

The three module-level functions are pure and never touch the store, so
request handlers can call them freely. :class:`CronJobService` owns every
write to a job definition and recomputes ``next_run_at`` whenever the
schedule, the timezone or the enabled flag changes.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..core.logger import get_logger
from .expressions import (
    CronExpressionParser,
    InvalidCronError,
    NoRunFoundError,
    compute_next_run,
    get_zone,
    parse_cron_expression,
)
from .models import (
    DEFAULT_TIMEOUT_SECONDS,
    Execution,
    JobDefinition,
    clamp_retry_count,
    clamp_timeout,
    utcnow,
)
from .stores import JobStore

logger = get_logger("scheduler.admin")

ModelT = TypeVar("ModelT", bound=BaseModel)


class JobValidationError(ValueError):
    """A job definition was rejected."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class JobNotFoundError(KeyError):
    """No job exists with the given id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Cron job not found: {self.job_id}"


# ----------------------------------------------------------------------
# Pure schedule helpers
# ----------------------------------------------------------------------


@dataclass
class CronValidationResult:
    """Outcome of validating a schedule."""

    valid: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "error": self.error}


def validate_cron_expression(schedule: str) -> CronValidationResult:
    """Check that ``schedule`` parses and has an occurrence within a year."""
    try:
        compute_next_run(parse_cron_expression(schedule))
    except (InvalidCronError, NoRunFoundError) as e:
        return CronValidationResult(valid=False, error=str(e))
    return CronValidationResult(valid=True)


def describe_cron_schedule(schedule: str) -> str:
    return CronExpressionParser.describe(schedule)


def parse_next_run(
    schedule: str, timezone: str = "UTC", after: datetime | None = None
) -> datetime:
    """Next occurrence of ``schedule`` in ``timezone`` as an aware UTC instant."""
    return compute_next_run(schedule, timezone, after=after)


# ----------------------------------------------------------------------
# Request models
# ----------------------------------------------------------------------


def _check_schedule(value: str) -> str:
    schedule = " ".join(value.split())
    result = validate_cron_expression(schedule)
    if not result.valid:
        raise ValueError(result.error)
    return schedule


def _check_path(value: str) -> str:
    if not value.startswith("/"):
        raise ValueError("path must start with '/'")
    return value


def _check_timezone(value: str) -> str:
    get_zone(value)
    return value


class CronJobCreate(BaseModel):
    """Request model for creating a cron job."""

    name: str = Field(..., min_length=1, max_length=200, description="Job name")
    schedule: str = Field(..., description="Five-field cron expression")
    path: str = Field(..., description="Handler path, starting with '/'")
    timezone: str = Field(default="UTC", description="IANA timezone the schedule runs in")
    enabled: bool = Field(default=True, description="Whether the job is dispatched")
    timeout_seconds: int = Field(
        default=DEFAULT_TIMEOUT_SECONDS, description="Handler deadline, clamped to 1-300"
    )
    retry_count: int = Field(default=0, description="Immediate retries on failure, clamped to 0-5")

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        name = value.strip()
        if not name:
            raise ValueError("name must not be empty")
        return name

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, value: str) -> str:
        return _check_schedule(value)

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        return _check_path(value)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return _check_timezone(value)

    @field_validator("timeout_seconds")
    @classmethod
    def normalise_timeout(cls, value: int) -> int:
        return clamp_timeout(value)

    @field_validator("retry_count")
    @classmethod
    def normalise_retry_count(cls, value: int) -> int:
        return clamp_retry_count(value)


class CronJobUpdate(BaseModel):
    """Request model for a partial update; omitted fields are left alone."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    schedule: str | None = None
    path: str | None = None
    timezone: str | None = None
    enabled: bool | None = None
    timeout_seconds: int | None = None
    retry_count: int | None = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str | None) -> str | None:
        if value is None:
            return value
        name = value.strip()
        if not name:
            raise ValueError("name must not be empty")
        return name

    @field_validator("schedule")
    @classmethod
    def validate_schedule(cls, value: str | None) -> str | None:
        return None if value is None else _check_schedule(value)

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str | None) -> str | None:
        return None if value is None else _check_path(value)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        return None if value is None else _check_timezone(value)

    @field_validator("timeout_seconds")
    @classmethod
    def normalise_timeout(cls, value: int | None) -> int | None:
        return None if value is None else clamp_timeout(value)

    @field_validator("retry_count")
    @classmethod
    def normalise_retry_count(cls, value: int | None) -> int | None:
        return None if value is None else clamp_retry_count(value)


def _coerce(model: type[ModelT], data: ModelT | dict[str, Any]) -> ModelT:
    """Validate ``data`` into ``model``, reporting the first problem as a JobValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or None
        message = error["msg"].removeprefix("Value error, ")
        raise JobValidationError(f"{field}: {message}" if field else message, field) from e


# ----------------------------------------------------------------------
# Service
# ----------------------------------------------------------------------


class CronJobService:
    """Create, update and inspect cron jobs for the admin API."""

    def __init__(self, store: JobStore, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self._clock = clock or utcnow

    def _require(self, job_id: str) -> JobDefinition:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _next_run(self, job: JobDefinition, now: datetime) -> datetime:
        try:
            return compute_next_run(job.schedule, job.timezone, after=now)
        except (InvalidCronError, NoRunFoundError) as e:
            raise JobValidationError(str(e), "schedule") from e
        except ValueError as e:
            raise JobValidationError(str(e), "timezone") from e

    def create_job(self, project_id: str, data: CronJobCreate | dict[str, Any]) -> JobDefinition:
        request = _coerce(CronJobCreate, data)
        now = self._clock()
        job = JobDefinition(
            project_id=project_id,
            name=request.name,
            schedule=request.schedule,
            path=request.path,
            timezone=request.timezone,
            enabled=request.enabled,
            timeout_seconds=request.timeout_seconds,
            retry_count=request.retry_count,
            created_at=now,
            updated_at=now,
        )
        job.next_run_at = self._next_run(job, now) if job.enabled else None
        self.store.create_job(job)
        logger.info(f"Created cron job {job.name} [{job.id}] for project {project_id}")
        return job

    def get_job(self, job_id: str) -> JobDefinition:
        return self._require(job_id)

    def list_jobs(self, project_id: str | None = None) -> list[JobDefinition]:
        return self.store.list_jobs(project_id)

    def update_job(self, job_id: str, data: CronJobUpdate | dict[str, Any]) -> JobDefinition:
        """Apply a partial update.

        ``next_run_at`` is recomputed from now when the schedule or timezone
        changes or the job is re-enabled, and cleared when it is disabled.

        Raises:
            JobNotFoundError: If the job does not exist
            JobValidationError: If a field is invalid or nothing would change
        """
        changes = _coerce(CronJobUpdate, data).model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            raise JobValidationError("no fields to update")

        def apply(job: JobDefinition) -> None:
            was_enabled = job.enabled
            for key, value in changes.items():
                setattr(job, key, value)

            now = self._clock()
            if not job.enabled:
                job.next_run_at = None
            elif (
                "schedule" in changes
                or "timezone" in changes
                or not was_enabled
                or job.next_run_at is None
            ):
                job.next_run_at = self._next_run(job, now)
            job.updated_at = now

        # Read and written under one write lock, never across a claim
        job = self.store.modify_job(job_id, apply)
        if job is None:
            raise JobNotFoundError(job_id)
        logger.info(f"Updated cron job {job.name} [{job.id}]: {', '.join(sorted(changes))}")
        return job

    def set_enabled(self, job_id: str, enabled: bool) -> JobDefinition:
        return self.update_job(job_id, {"enabled": enabled})

    def delete_job(self, job_id: str) -> None:
        if not self.store.delete_job(job_id):
            raise JobNotFoundError(job_id)
        logger.info(f"Deleted cron job {job_id}")

    def get_executions(self, job_id: str, limit: int = 50) -> list[Execution]:
        self._require(job_id)
        return self.store.get_executions(job_id, limit=limit)

    def upcoming_runs(self, job_id: str, count: int = 5) -> list[datetime]:
        job = self._require(job_id)
        if not job.enabled:
            return []
        return CronExpressionParser.get_next_n_runs(
            job.schedule, count, timezone=job.timezone, after=self._clock()
        )

    def get_job_summary(self, job_id: str) -> dict[str, Any]:
        """Job details for a dashboard view."""
        job = self._require(job_id)
        return {
            "job": job.to_dict(),
            "description": describe_cron_schedule(job.schedule),
            "statistics": self.store.get_statistics(job_id),
            "recent_executions": [
                e.to_dict() for e in self.store.get_executions(job_id, limit=10)
            ],
        }


__all__ = [
    "CronJobCreate",
    "CronJobService",
    "CronJobUpdate",
    "CronValidationResult",
    "JobNotFoundError",
    "JobValidationError",
    "describe_cron_schedule",
    "parse_next_run",
    "validate_cron_expression",
]
