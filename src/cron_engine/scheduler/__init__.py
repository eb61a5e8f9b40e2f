"""Scheduled-job engine.

This package provides:
- Cron expression parsing and next-run calculation
- A SQLite job store with an atomic per-occurrence claim
- The dispatcher loop with timeouts and retries
- Handler invokers (HTTP and in-process)
- Execution hooks
- The admin boundary used by the rest of the platform
"""

from .admin import (
    CronJobCreate,
    CronJobService,
    CronJobUpdate,
    CronValidationResult,
    JobNotFoundError,
    JobValidationError,
    describe_cron_schedule,
    parse_next_run,
    validate_cron_expression,
)
from .dispatcher import CronDispatcher
from .expressions import (
    CRON_PRESETS,
    CronExpression,
    CronExpressionParser,
    CronField,
    InvalidCronError,
    NoRunFoundError,
    compute_next_run,
    matches,
    next_run,
    parse_cron_expression,
)
from .hooks import (
    AlertHook,
    ExecutionContext,
    ExecutionHook,
    ExecutionOutcome,
    HookPriority,
    HookRegistry,
    LoggingHook,
    MetricsHook,
    create_default_hook_registry,
)
from .invoker import (
    CallableHandlerInvoker,
    HandlerInvocationError,
    HandlerInvoker,
    HandlerTimeoutError,
    HttpHandlerInvoker,
    InvocationResult,
)
from .models import Execution, ExecutionStatus, JobDefinition
from .stores import JobStore

__all__ = [
    # Expressions
    "CRON_PRESETS",
    "CronExpression",
    "CronExpressionParser",
    "CronField",
    "InvalidCronError",
    "NoRunFoundError",
    "compute_next_run",
    "matches",
    "next_run",
    "parse_cron_expression",
    # Models and store
    "Execution",
    "ExecutionStatus",
    "JobDefinition",
    "JobStore",
    # Dispatcher
    "CronDispatcher",
    # Invokers
    "CallableHandlerInvoker",
    "HandlerInvocationError",
    "HandlerInvoker",
    "HandlerTimeoutError",
    "HttpHandlerInvoker",
    "InvocationResult",
    # Hooks
    "AlertHook",
    "ExecutionContext",
    "ExecutionHook",
    "ExecutionOutcome",
    "HookPriority",
    "HookRegistry",
    "LoggingHook",
    "MetricsHook",
    "create_default_hook_registry",
    # Admin
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
