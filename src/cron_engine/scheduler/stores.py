"""SQLite-backed store for job definitions and their executions.

The ``cron_jobs.next_run_at`` column is the only coordination point between
dispatchers: a claim is a single conditional UPDATE that pushes it forward,
committed together with the INSERT of the ``running`` execution.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ..core.logger import get_logger
from .models import UTC, Execution, ExecutionStatus, JobDefinition, utcnow

logger = get_logger("scheduler.stores")

ABANDONED_ERROR = "abandoned: dispatcher stopped before completion"

_JOB_COLUMNS = (
    "id, project_id, name, schedule, path, timezone, enabled, timeout_seconds, "
    "retry_count, next_run_at, last_run_at, last_status, created_at, updated_at"
)
_EXECUTION_COLUMNS = (
    "id, job_id, status, started_at, finished_at, duration_ms, error, response, retry_attempt"
)


def _to_db(value: datetime | None) -> str | None:
    """Serialize an instant as fixed-width UTC text so that string order is time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class JobStore:
    """SQLite store for cron job definitions and execution history."""

    def __init__(self, db_path: str | Path, busy_timeout: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection"):
            # Autocommit mode: transactions are opened explicitly below
            connection = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout,
                check_same_thread=False,
                isolation_level=None,
            )
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute("PRAGMA synchronous=NORMAL")
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)
        return self._local.connection

    @contextmanager
    def _get_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Yield a cursor inside an immediate (write-locked) transaction."""
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            yield cursor
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise
        finally:
            cursor.close()

    def _query(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> list[sqlite3.Row]:
        cursor = self._get_connection().execute(sql, params)
        try:
            return cursor.fetchall()
        finally:
            cursor.close()

    def _init_db(self) -> None:
        with self._get_cursor() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cron_jobs (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    schedule TEXT NOT NULL,
                    path TEXT NOT NULL,
                    timezone TEXT NOT NULL DEFAULT 'UTC',
                    enabled INTEGER NOT NULL DEFAULT 1,
                    timeout_seconds INTEGER NOT NULL DEFAULT 60,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    next_run_at TEXT,
                    last_run_at TEXT,
                    last_status TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_cron_jobs_due ON cron_jobs(enabled, next_run_at)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_cron_jobs_project ON cron_jobs(project_id)"
            )
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cron_executions (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    duration_ms INTEGER,
                    error TEXT,
                    response TEXT,
                    retry_attempt INTEGER NOT NULL DEFAULT 0
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_cron_executions_job "
                "ON cron_executions(job_id, started_at)"
            )

    def close(self) -> None:
        with self._connections_lock:
            for connection in self._connections:
                try:
                    connection.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> JobDefinition:
        return JobDefinition(
            id=row["id"],
            project_id=row["project_id"],
            name=row["name"],
            schedule=row["schedule"],
            path=row["path"],
            timezone=row["timezone"],
            enabled=bool(row["enabled"]),
            timeout_seconds=row["timeout_seconds"],
            retry_count=row["retry_count"],
            next_run_at=_from_db(row["next_run_at"]),
            last_run_at=_from_db(row["last_run_at"]),
            last_status=ExecutionStatus(row["last_status"]) if row["last_status"] else None,
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            job_id=row["job_id"],
            status=ExecutionStatus(row["status"]),
            started_at=_from_db(row["started_at"]),
            finished_at=_from_db(row["finished_at"]),
            duration_ms=row["duration_ms"],
            error=row["error"],
            response=row["response"],
            retry_attempt=row["retry_attempt"],
        )

    @staticmethod
    def _execution_params(execution: Execution) -> tuple[Any, ...]:
        return (
            execution.id,
            execution.job_id,
            execution.status.value,
            _to_db(execution.started_at),
            _to_db(execution.finished_at),
            execution.duration_ms,
            execution.error,
            execution.response,
            execution.retry_attempt,
        )

    # ------------------------------------------------------------------
    # Job definitions
    # ------------------------------------------------------------------

    def create_job(self, job: JobDefinition) -> JobDefinition:
        with self._get_cursor() as cursor:
            cursor.execute(
                f"INSERT INTO cron_jobs ({_JOB_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.project_id,
                    job.name,
                    job.schedule,
                    job.path,
                    job.timezone,
                    int(job.enabled),
                    job.timeout_seconds,
                    job.retry_count,
                    _to_db(job.next_run_at),
                    _to_db(job.last_run_at),
                    job.last_status.value if job.last_status else None,
                    _to_db(job.created_at),
                    _to_db(job.updated_at),
                ),
            )
        logger.debug(f"Job stored: {job.id} ({job.name})")
        return job

    def get_job(self, job_id: str) -> JobDefinition | None:
        rows = self._query(f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE id = ?", (job_id,))
        return self._row_to_job(rows[0]) if rows else None

    def list_jobs(self, project_id: str | None = None) -> list[JobDefinition]:
        query = f"SELECT {_JOB_COLUMNS} FROM cron_jobs"
        params: list[Any] = []
        if project_id:
            query += " WHERE project_id = ?"
            params.append(project_id)
        query += " ORDER BY created_at DESC"
        return [self._row_to_job(r) for r in self._query(query, params)]

    def update_job(self, job: JobDefinition) -> bool:
        """Persist the definition fields of ``job``.

        ``last_run_at`` and ``last_status`` belong to the dispatcher and are
        left untouched.
        """
        with self._get_cursor() as cursor:
            return self._write_job(cursor, job)

    def modify_job(
        self, job_id: str, apply: Callable[[JobDefinition], None]
    ) -> JobDefinition | None:
        """Read, change and write a job under one write lock.

        ``apply`` edits the loaded job in place. No claim can commit between
        the read and the write, so a stale ``next_run_at`` is never written
        back. An exception from ``apply`` rolls the transaction back.

        Returns:
            The written job, or None if it does not exist
        """
        with self._get_cursor() as cursor:
            cursor.execute(f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE id = ?", (job_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            job = self._row_to_job(row)
            apply(job)
            self._write_job(cursor, job)
        return job

    @staticmethod
    def _write_job(cursor: sqlite3.Cursor, job: JobDefinition) -> bool:
        cursor.execute(
            """
            UPDATE cron_jobs SET
                name = ?, schedule = ?, path = ?, timezone = ?, enabled = ?,
                timeout_seconds = ?, retry_count = ?, next_run_at = ?, updated_at = ?
            WHERE id = ?
        """,
            (
                job.name,
                job.schedule,
                job.path,
                job.timezone,
                int(job.enabled),
                job.timeout_seconds,
                job.retry_count,
                _to_db(job.next_run_at),
                _to_db(job.updated_at),
                job.id,
            ),
        )
        return cursor.rowcount == 1

    def delete_job(self, job_id: str) -> bool:
        with self._get_cursor() as cursor:
            cursor.execute("DELETE FROM cron_executions WHERE job_id = ?", (job_id,))
            cursor.execute("DELETE FROM cron_jobs WHERE id = ?", (job_id,))
            deleted = cursor.rowcount == 1
        if deleted:
            logger.debug(f"Job deleted: {job_id}")
        return deleted

    def list_due_jobs(self, now: datetime) -> list[JobDefinition]:
        """Enabled jobs whose ``next_run_at`` is set and not in the future."""
        rows = self._query(
            f"SELECT {_JOB_COLUMNS} FROM cron_jobs "
            "WHERE enabled = 1 AND next_run_at IS NOT NULL AND next_run_at <= ? "
            "ORDER BY next_run_at",
            (_to_db(now),),
        )
        return [self._row_to_job(r) for r in rows]

    # ------------------------------------------------------------------
    # Claiming and executions
    # ------------------------------------------------------------------

    def claim(
        self,
        job: JobDefinition,
        now: datetime,
        next_run_at: datetime | None,
        stale_before: datetime,
    ) -> Execution | None:
        """Atomically claim the occurrence ``job.next_run_at`` for execution.

        The job row is advanced to ``next_run_at`` only if it still holds the
        value observed by the caller, is enabled, is due at ``now`` and has no
        running execution that started after ``stale_before``. The running
        execution is inserted in the same transaction. Returns ``None`` when
        another tick or dispatcher got there first.

        A ``next_run_at`` of ``None`` means the schedule has no further
        occurrence; the job is disabled as part of the claim.
        """
        if job.next_run_at is None:
            return None

        execution = Execution(job_id=job.id, started_at=now, retry_attempt=0)
        new_next = _to_db(next_run_at)
        with self._get_cursor() as cursor:
            cursor.execute(
                """
                UPDATE cron_jobs
                SET next_run_at = ?,
                    enabled = CASE WHEN ? IS NULL THEN 0 ELSE enabled END
                WHERE id = ?
                  AND enabled = 1
                  AND next_run_at = ?
                  AND next_run_at <= ?
                  AND NOT EXISTS (
                      SELECT 1 FROM cron_executions
                      WHERE job_id = cron_jobs.id
                        AND status = 'running'
                        AND started_at > ?
                  )
            """,
                (
                    new_next,
                    new_next,
                    job.id,
                    _to_db(job.next_run_at),
                    _to_db(now),
                    _to_db(stale_before),
                ),
            )
            if cursor.rowcount != 1:
                return None
            cursor.execute(
                f"INSERT INTO cron_executions ({_EXECUTION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._execution_params(execution),
            )
        job.next_run_at = next_run_at
        if next_run_at is None:
            job.enabled = False
        return execution

    def create_execution(
        self,
        job_id: str,
        retry_attempt: int,
        started_at: datetime,
        exclusive_since: datetime | None = None,
    ) -> Execution | None:
        """Insert a running execution without touching ``next_run_at``.

        With ``exclusive_since`` the insert only happens when the job has no
        running execution that started after that instant.
        """
        execution = Execution(job_id=job_id, started_at=started_at, retry_attempt=retry_attempt)
        with self._get_cursor() as cursor:
            if exclusive_since is None:
                cursor.execute(
                    f"INSERT INTO cron_executions ({_EXECUTION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._execution_params(execution),
                )
            else:
                cursor.execute(
                    f"""
                    INSERT INTO cron_executions ({_EXECUTION_COLUMNS})
                    SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM cron_executions
                        WHERE job_id = ? AND status = 'running' AND started_at > ?
                    )
                """,
                    (*self._execution_params(execution), job_id, _to_db(exclusive_since)),
                )
                if cursor.rowcount != 1:
                    return None
        return execution

    def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        finished_at: datetime,
        error: str | None = None,
        response: str | None = None,
    ) -> Execution | None:
        """Move a running execution to its terminal ``status``.

        Returns the updated execution, or ``None`` if it does not exist or is
        already terminal; terminal executions are never modified.
        """
        with self._get_cursor() as cursor:
            if self._finish(cursor, execution_id, status, finished_at, error, response) is None:
                return None
        return self.get_execution(execution_id)

    def finish_and_retry(
        self,
        execution_id: str,
        status: ExecutionStatus,
        finished_at: datetime,
        retry_attempt: int,
        error: str | None = None,
        response: str | None = None,
    ) -> tuple[Execution | None, Execution | None]:
        """Finish a failed attempt and start attempt ``retry_attempt`` in one transaction.

        The job never goes without a running execution between the two, so
        a concurrent claim cannot start the next occurrence alongside the
        retry. No retry is inserted when the job has been deleted.

        Returns:
            The finished execution and the new running one; ``(None, None)``
            if ``execution_id`` was not running
        """
        with self._get_cursor() as cursor:
            job_id = self._finish(cursor, execution_id, status, finished_at, error, response)
            if job_id is None:
                return None, None
            retry: Execution | None = Execution(
                job_id=job_id, started_at=finished_at, retry_attempt=retry_attempt
            )
            cursor.execute(
                f"""
                INSERT INTO cron_executions ({_EXECUTION_COLUMNS})
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?
                WHERE EXISTS (SELECT 1 FROM cron_jobs WHERE id = ?)
            """,
                (*self._execution_params(retry), job_id),
            )
            if cursor.rowcount != 1:
                retry = None
        return self.get_execution(execution_id), retry

    def _finish(
        self,
        cursor: sqlite3.Cursor,
        execution_id: str,
        status: ExecutionStatus,
        finished_at: datetime,
        error: str | None,
        response: str | None,
    ) -> str | None:
        """Terminal transition inside an open transaction; returns the job id."""
        if not status.is_terminal:
            raise ValueError(f"Cannot finish an execution with status {status.value}")

        cursor.execute(
            "SELECT job_id, started_at FROM cron_executions WHERE id = ? AND status = 'running'",
            (execution_id,),
        )
        row = cursor.fetchone()
        if not row:
            return None
        started_at = _from_db(row["started_at"])
        duration_ms = max(0, int((finished_at - started_at).total_seconds() * 1000))
        cursor.execute(
            """
            UPDATE cron_executions
            SET status = ?, finished_at = ?, duration_ms = ?, error = ?, response = ?
            WHERE id = ? AND status = 'running'
        """,
            (
                status.value,
                _to_db(finished_at),
                duration_ms,
                error,
                response,
                execution_id,
            ),
        )
        cursor.execute(
            "UPDATE cron_jobs SET last_run_at = ?, last_status = ? WHERE id = ?",
            (row["started_at"], status.value, row["job_id"]),
        )
        return row["job_id"]

    def get_execution(self, execution_id: str) -> Execution | None:
        rows = self._query(
            f"SELECT {_EXECUTION_COLUMNS} FROM cron_executions WHERE id = ?", (execution_id,)
        )
        return self._row_to_execution(rows[0]) if rows else None

    def get_executions(
        self,
        job_id: str | None = None,
        limit: int = 100,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM cron_executions"
        clauses: list[str] = []
        params: list[Any] = []
        if job_id:
            clauses.append("job_id = ?")
            params.append(job_id)
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at DESC, retry_attempt DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_execution(r) for r in self._query(query, params)]

    def count_executions(self, job_id: str) -> int:
        rows = self._query("SELECT COUNT(*) AS n FROM cron_executions WHERE job_id = ?", (job_id,))
        return rows[0]["n"]

    def get_statistics(self, job_id: str, recent: int = 50) -> dict[str, Any]:
        """Summary of a job's history: totals plus success rate over recent runs."""
        executions = self.get_executions(job_id, limit=recent)
        finished = [e for e in executions if e.is_terminal]
        successes = sum(1 for e in finished if e.status == ExecutionStatus.SUCCESS)
        durations = [e.duration_ms for e in finished if e.duration_ms is not None]
        return {
            "job_id": job_id,
            "total_executions": self.count_executions(job_id),
            "recent_executions": len(executions),
            "success_rate": round(successes / len(finished) * 100) if finished else 0,
            "average_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def recover_abandoned_executions(self, now: datetime, grace_seconds: int) -> int:
        """Fail running executions that outlived their job's timeout plus ``grace_seconds``."""
        rows = self._query("""
            SELECT e.id, e.started_at, j.timeout_seconds
            FROM cron_executions e LEFT JOIN cron_jobs j ON j.id = e.job_id
            WHERE e.status = 'running'
        """)
        recovered = 0
        for row in rows:
            timeout = row["timeout_seconds"] or 0
            deadline = _from_db(row["started_at"]) + timedelta(seconds=timeout + grace_seconds)
            if deadline >= now:
                continue
            if self.finish_execution(row["id"], ExecutionStatus.FAILED, now, error=ABANDONED_ERROR):
                recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} abandoned execution(s)")
        return recovered

    def cleanup_old_records(self, days: int = 30, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=days)
        with self._get_cursor() as cursor:
            cursor.execute(
                "DELETE FROM cron_executions WHERE status != 'running' AND started_at < ?",
                (_to_db(cutoff),),
            )
            return cursor.rowcount


__all__ = ["ABANDONED_ERROR", "JobStore"]
