"""Execution hooks for the dispatcher."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..core.logger import get_logger
from .models import ExecutionStatus

logger = get_logger("scheduler.hooks")


class HookPriority(int, Enum):
    """Priority levels for hook execution order."""

    HIGHEST = 0
    HIGH = 25
    NORMAL = 50
    LOW = 75
    LOWEST = 100


@dataclass
class ExecutionContext:
    """What the dispatcher knows about an execution before it runs."""

    job_id: str
    job_name: str
    project_id: str
    execution_id: str
    path: str
    started_at: datetime
    retry_attempt: int = 0
    trigger: str = "schedule"
    scheduled_for: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "job_name": self.job_name,
            "project_id": self.project_id,
            "execution_id": self.execution_id,
            "path": self.path,
            "started_at": self.started_at.isoformat(),
            "retry_attempt": self.retry_attempt,
            "trigger": self.trigger,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
        }


@dataclass
class ExecutionOutcome:
    """Terminal result of one execution."""

    job_id: str
    execution_id: str
    status: ExecutionStatus
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "execution_id": self.execution_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class ExecutionHook(ABC):
    """Base class for execution hooks."""

    priority: HookPriority = HookPriority.NORMAL

    @abstractmethod
    def before_execution(self, context: ExecutionContext) -> None:
        """Called after the execution is claimed, before the handler is invoked."""

    @abstractmethod
    def after_execution(self, context: ExecutionContext, outcome: ExecutionOutcome) -> None:
        """Called once the execution has been recorded as terminal."""

    def on_timeout(self, context: ExecutionContext, timeout_seconds: int) -> None:
        """Called when the handler exceeds its deadline."""


class LoggingHook(ExecutionHook):
    """Hook that logs execution details."""

    priority = HookPriority.HIGHEST

    def __init__(self, log_level: str = "INFO") -> None:
        self._log = getattr(logger, log_level.lower(), logger.info)

    def before_execution(self, context: ExecutionContext) -> None:
        suffix = f", retry {context.retry_attempt}" if context.retry_attempt else ""
        self._log(
            f"Job starting: {context.job_name} [{context.job_id}] ({context.trigger}{suffix})"
        )

    def after_execution(self, context: ExecutionContext, outcome: ExecutionOutcome) -> None:
        if outcome.success:
            self._log(f"Job completed: {context.job_name} ({outcome.duration_ms}ms)")
        else:
            logger.error(
                f"Job {outcome.status.value}: {context.job_name} "
                f"({outcome.duration_ms}ms, error: {outcome.error})"
            )

    def on_timeout(self, context: ExecutionContext, timeout_seconds: int) -> None:
        logger.warning(f"Job {context.job_name} exceeded its {timeout_seconds}s timeout")


@dataclass
class JobMetrics:
    """In-process counters for a single job."""

    job_id: str
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    timeout_count: int = 0
    total_duration_ms: int = 0
    min_duration_ms: int = 0
    max_duration_ms: int = 0
    last_duration_ms: int = 0
    last_execution: datetime | None = None

    @property
    def finished_count(self) -> int:
        return self.success_count + self.failure_count + self.timeout_count

    @property
    def success_rate(self) -> float:
        return (self.success_count / self.finished_count * 100) if self.finished_count else 0.0

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.finished_count if self.finished_count else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "execution_count": self.execution_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "timeout_count": self.timeout_count,
            "success_rate": round(self.success_rate, 2),
            "average_duration_ms": round(self.average_duration_ms, 1),
            "last_execution": self.last_execution.isoformat() if self.last_execution else None,
        }


class MetricsHook(ExecutionHook):
    """Hook that collects execution metrics."""

    priority = HookPriority.HIGH

    def __init__(self, max_history: int = 1000) -> None:
        self._metrics: dict[str, JobMetrics] = {}
        self._history: list[ExecutionOutcome] = []
        self._max_history = max_history
        self._lock = threading.Lock()

    def before_execution(self, context: ExecutionContext) -> None:
        with self._lock:
            if context.job_id not in self._metrics:
                self._metrics[context.job_id] = JobMetrics(job_id=context.job_id)
            self._metrics[context.job_id].execution_count += 1

    def after_execution(self, context: ExecutionContext, outcome: ExecutionOutcome) -> None:
        with self._lock:
            m = self._metrics.setdefault(context.job_id, JobMetrics(job_id=context.job_id))
            if outcome.status == ExecutionStatus.SUCCESS:
                m.success_count += 1
            elif outcome.status == ExecutionStatus.TIMEOUT:
                m.timeout_count += 1
            else:
                m.failure_count += 1
            m.total_duration_ms += outcome.duration_ms
            m.last_execution = outcome.finished_at
            m.last_duration_ms = outcome.duration_ms
            if m.min_duration_ms == 0 or outcome.duration_ms < m.min_duration_ms:
                m.min_duration_ms = outcome.duration_ms
            if outcome.duration_ms > m.max_duration_ms:
                m.max_duration_ms = outcome.duration_ms
            self._history.append(outcome)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history :]

    def get_metrics(self, job_id: str | None = None) -> dict[str, Any]:
        with self._lock:
            if job_id:
                m = self._metrics.get(job_id)
                return m.to_dict() if m else {}
            return {jid: m.to_dict() for jid, m in self._metrics.items()}

    def get_history(self, job_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            history = [h for h in self._history if job_id is None or h.job_id == job_id]
            return [h.to_dict() for h in history[-limit:]]


class AlertHook(ExecutionHook):
    """Hook that raises an alert after consecutive non-successful executions."""

    priority = HookPriority.LOW

    def __init__(
        self,
        alert_callback: Callable[[str, str, dict[str, Any]], None] | None = None,
        failure_threshold: int = 3,
    ) -> None:
        self._alert_callback = alert_callback
        self._failure_threshold = failure_threshold
        self._consecutive_failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def before_execution(self, context: ExecutionContext) -> None:
        pass

    def after_execution(self, context: ExecutionContext, outcome: ExecutionOutcome) -> None:
        with self._lock:
            if outcome.success:
                self._consecutive_failures[context.job_id] = 0
                return
            failures = self._consecutive_failures.get(context.job_id, 0) + 1
            self._consecutive_failures[context.job_id] = failures
        if failures >= self._failure_threshold:
            title = f"Job Failure: {context.job_name}"
            message = f"Job failed {failures} times in a row. Last error: {outcome.error}"
            if self._alert_callback:
                self._alert_callback(
                    title, message, {"job_id": context.job_id, "failures": failures}
                )
            else:
                logger.warning(f"{title} - {message}")

    def get_consecutive_failures(self, job_id: str) -> int:
        with self._lock:
            return self._consecutive_failures.get(job_id, 0)


class HookRegistry:
    """Priority-ordered collection of execution hooks.

    A failing hook is logged and skipped; it never affects the execution or
    the other hooks.
    """

    def __init__(self) -> None:
        self._hooks: list[ExecutionHook] = []
        self._lock = threading.Lock()

    def register(self, hook: ExecutionHook) -> None:
        with self._lock:
            self._hooks.append(hook)
            self._hooks.sort(key=lambda h: h.priority)
        logger.debug(f"Registered hook: {hook.__class__.__name__}")

    def unregister(self, hook: ExecutionHook) -> bool:
        with self._lock:
            if hook in self._hooks:
                self._hooks.remove(hook)
                return True
            return False

    def get_hooks(self) -> list[ExecutionHook]:
        with self._lock:
            return list(self._hooks)

    def find(self, hook_type: type[ExecutionHook]) -> ExecutionHook | None:
        for hook in self.get_hooks():
            if isinstance(hook, hook_type):
                return hook
        return None

    def clear(self) -> None:
        with self._lock:
            self._hooks.clear()

    def before_execution(self, context: ExecutionContext) -> None:
        for hook in self.get_hooks():
            try:
                hook.before_execution(context)
            except Exception as e:
                logger.error(f"Hook {hook.__class__.__name__} failed: {e}")

    def after_execution(self, context: ExecutionContext, outcome: ExecutionOutcome) -> None:
        for hook in self.get_hooks():
            try:
                hook.after_execution(context, outcome)
            except Exception as e:
                logger.error(f"Hook {hook.__class__.__name__} failed: {e}")

    def on_timeout(self, context: ExecutionContext, timeout_seconds: int) -> None:
        for hook in self.get_hooks():
            try:
                hook.on_timeout(context, timeout_seconds)
            except Exception as e:
                logger.error(f"Hook {hook.__class__.__name__} failed: {e}")


def create_default_hook_registry(
    logging_enabled: bool = True,
    metrics_enabled: bool = True,
    alert_enabled: bool = False,
    failure_threshold: int = 3,
    alert_callback: Callable[[str, str, dict[str, Any]], None] | None = None,
) -> HookRegistry:
    """Create a hook registry with the standard hooks switched on."""
    registry = HookRegistry()
    if logging_enabled:
        registry.register(LoggingHook())
    if metrics_enabled:
        registry.register(MetricsHook())
    if alert_enabled:
        registry.register(
            AlertHook(alert_callback=alert_callback, failure_threshold=failure_threshold)
        )
    return registry


__all__ = [
    "AlertHook",
    "ExecutionContext",
    "ExecutionHook",
    "ExecutionOutcome",
    "HookPriority",
    "HookRegistry",
    "JobMetrics",
    "LoggingHook",
    "MetricsHook",
    "create_default_hook_registry",
]
