"""Handler invocation: how the dispatcher reaches a job's ``path``."""

from __future__ import annotations

import asyncio
import functools
import inspect
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import httpx

from ..core.config import HandlerConfig
from ..core.logger import get_logger
from .models import Execution, JobDefinition

logger = get_logger("scheduler.invoker")

USER_AGENT = "cron-engine"
ERROR_BODY_CHARS = 500


class HandlerInvocationError(Exception):
    """The handler could not be reached or reported a failure."""


class HandlerTimeoutError(HandlerInvocationError):
    """The handler did not finish within the job's timeout."""

    def __init__(self, timeout_seconds: int) -> None:
        super().__init__(f"Execution timed out after {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


@dataclass
class InvocationResult:
    """What a successful handler call returned."""

    status_code: int | None = None
    body: str | None = None
    duration_ms: int = 0


class HandlerInvoker(ABC):
    """Boundary between the dispatcher and whatever runs a job.

    ``invoke`` returns on success; raising any exception marks the execution
    as failed. Deadlines are enforced by the caller, which cancels the
    coroutine.
    """

    @abstractmethod
    async def invoke(self, job: JobDefinition, execution: Execution) -> InvocationResult:
        """Run ``job`` for ``execution``."""


class HttpHandlerInvoker(HandlerInvoker):
    """Invoke handlers by sending an HTTP request to ``base_url + job.path``."""

    def __init__(self, config: HandlerConfig | None = None) -> None:
        self.config = config or HandlerConfig()

    def build_url(self, job: JobDefinition) -> str:
        return f"{self.config.base_url}{job.path}"

    def build_headers(self, job: JobDefinition, execution: Execution) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Cron-Job-Id": job.id,
            "X-Cron-Execution-Id": execution.id,
            "X-Cron-Project-Id": job.project_id,
            "X-Cron-Retry-Attempt": str(execution.retry_attempt),
        }
        headers.update(self.config.headers)
        return headers

    async def invoke(self, job: JobDefinition, execution: Execution) -> InvocationResult:
        url = self.build_url(job)
        payload = {
            "job_id": job.id,
            "job_name": job.name,
            "execution_id": execution.id,
            "retry_attempt": execution.retry_attempt,
            "started_at": execution.started_at.isoformat(),
        }
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=job.timeout_seconds, verify=self.config.verify_ssl
            ) as client:
                response = await client.request(
                    self.config.method,
                    url,
                    json=None if self.config.method == "GET" else payload,
                    headers=self.build_headers(job, execution),
                )
        except httpx.TimeoutException as e:
            raise HandlerTimeoutError(job.timeout_seconds) from e
        except httpx.HTTPError as e:
            raise HandlerInvocationError(f"Request to {url} failed: {e}") from e

        duration_ms = int((time.monotonic() - start) * 1000)
        body = response.text
        if not response.is_success:
            raise HandlerInvocationError(
                f"HTTP {response.status_code}: {body[:ERROR_BODY_CHARS]}"
            )
        logger.debug(f"Handler {url} answered {response.status_code} in {duration_ms}ms")
        return InvocationResult(
            status_code=response.status_code,
            body=body,
            duration_ms=duration_ms,
        )


HandlerFunc = Callable[[JobDefinition, Execution], Any]


class CallableHandlerInvoker(HandlerInvoker):
    """Invoke in-process Python callables registered by path.

    Handlers receive ``(job, execution)``. Coroutine functions are awaited;
    plain functions run on a thread pool owned by the invoker, so a timed-out
    call keeps its thread until it returns but never holds up the caller. A
    non-``None`` return value is stored as the execution's response.
    """

    def __init__(
        self, handlers: dict[str, HandlerFunc] | None = None, max_workers: int = 4
    ) -> None:
        self._handlers: dict[str, HandlerFunc] = dict(handlers or {})
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cron-handler")

    def register(self, path: str, handler: HandlerFunc) -> None:
        if not path.startswith("/"):
            raise ValueError(f"Handler path must start with '/': {path}")
        with self._lock:
            self._handlers[path] = handler
        logger.debug(f"Registered handler for {path}")

    def unregister(self, path: str) -> bool:
        with self._lock:
            return self._handlers.pop(path, None) is not None

    def handler(self, path: str) -> Callable[[HandlerFunc], HandlerFunc]:
        """Decorator form of :meth:`register`."""

        def decorator(func: HandlerFunc) -> HandlerFunc:
            self.register(path, func)
            return func

        return decorator

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    @property
    def paths(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    async def invoke(self, job: JobDefinition, execution: Execution) -> InvocationResult:
        with self._lock:
            func = self._handlers.get(job.path)
        if func is None:
            raise HandlerInvocationError(f"no handler registered for {job.path}")

        start = time.monotonic()
        if inspect.iscoroutinefunction(func):
            result = await func(job, execution)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(self._pool, functools.partial(func, job, execution))
        return InvocationResult(
            body=None if result is None else str(result),
            duration_ms=int((time.monotonic() - start) * 1000),
        )


__all__ = [
    "CallableHandlerInvoker",
    "HandlerFunc",
    "HandlerInvocationError",
    "HandlerInvoker",
    "HandlerTimeoutError",
    "HttpHandlerInvoker",
    "InvocationResult",
]
