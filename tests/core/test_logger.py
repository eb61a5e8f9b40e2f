"""Tests for the logging setup and execution tagging."""

from __future__ import annotations

import logging
import threading

import pytest
from rich.logging import RichHandler

from cron_engine.core.config import LoggingConfig
from cron_engine.core.logger import (
    CloseOnEmitFileHandler,
    ExecutionContextFilter,
    execution_scope,
    get_logger,
    log_exception,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Undo setup_logging so other tests keep pytest's own handlers."""
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    logging.getLogger("cron_engine").setLevel(logging.INFO)


def _stamped(msg: str = "tick") -> logging.LogRecord:
    record = logging.makeLogRecord({"name": "cron_engine.test", "msg": msg})
    ExecutionContextFilter().filter(record)
    return record


# ==============================================================================
# Loggers and handlers
# ==============================================================================


class TestSetupLogging:
    """Tests for setup_logging and get_logger."""

    def test_loggers_live_under_package_namespace(self):
        logger = get_logger("scheduler.naming")

        assert logger.name == "cron_engine.scheduler.naming"
        assert get_logger("scheduler.naming") is logger

    def test_console_handler_only_by_default(self):
        setup_logging()

        handlers = logging.getLogger().handlers
        assert [type(h) for h in handlers] == [RichHandler]
        assert isinstance(handlers[0].filters[0], ExecutionContextFilter)

    def test_setup_twice_swaps_handlers(self):
        setup_logging()
        first = logging.getLogger().handlers[0]

        setup_logging()

        assert logging.getLogger().handlers[0] is not first
        assert len(logging.getLogger().handlers) == 1

    def test_level_reaches_existing_loggers(self):
        """Loggers created before setup follow the configured level."""
        early = get_logger("scheduler.early")

        setup_logging(LoggingConfig(level="warning"))

        assert early.level == logging.WARNING
        assert logging.getLogger("cron_engine").level == logging.WARNING

    def test_file_output_includes_execution_ids(self, tmp_path):
        log_file = tmp_path / "logs" / "engine.log"
        setup_logging(LoggingConfig(log_file=str(log_file)))
        logger = get_logger("scheduler.dispatcher_test")

        logger.info("outside any execution")
        with execution_scope("job_1", "exec_1"):
            logger.info("handler finished")

        lines = log_file.read_text(encoding="utf-8").splitlines()
        assert lines[-2].endswith("dispatcher_test - INFO - outside any execution")
        assert lines[-1].endswith("INFO - [job_1/exec_1] handler finished")


# ==============================================================================
# Execution tagging
# ==============================================================================


class TestExecutionScope:
    """Tests for execution_scope and ExecutionContextFilter."""

    def test_untagged_record(self):
        record = _stamped()

        assert record.job_id is None
        assert record.execution_id is None
        assert record.job_context == ""

    def test_tagged_record(self):
        with execution_scope("job_7", "exec_9"):
            record = _stamped()

        assert record.job_id == "job_7"
        assert record.execution_id == "exec_9"
        assert record.job_context == "[job_7/exec_9] "

    def test_scopes_nest_and_unwind(self):
        with execution_scope("job_1", "first"):
            with execution_scope("job_1", "retry"):
                assert _stamped().execution_id == "retry"
            assert _stamped().execution_id == "first"
        assert _stamped().execution_id is None

    def test_scope_is_per_thread(self):
        seen = []
        inside = threading.Event()
        done = threading.Event()

        def worker():
            with execution_scope("job_2", "exec_2"):
                inside.set()
                done.wait(timeout=5)

        thread = threading.Thread(target=worker)
        thread.start()
        inside.wait(timeout=5)
        seen.append(_stamped().job_id)
        done.set()
        thread.join(timeout=5)

        assert seen == [None]


# ==============================================================================
# Helpers
# ==============================================================================


class TestLogException:
    def test_context_prefix_and_traceback(self, caplog):
        try:
            raise RuntimeError("Something failed")
        except RuntimeError as e:
            with caplog.at_level(logging.ERROR):
                log_exception(get_logger("exc_ctx"), e, context="Dispatching job")

        assert "Dispatching job: Something failed" in caplog.text
        assert caplog.records[-1].exc_info is not None

    def test_default_prefix(self, caplog):
        with caplog.at_level(logging.ERROR):
            log_exception(get_logger("exc_plain"), KeyError("missing_key"))

        assert "Exception occurred: 'missing_key'" in caplog.text


class TestCloseOnEmitFileHandler:
    def test_file_is_released_between_records(self, tmp_path):
        log_file = tmp_path / "released.log"
        handler = CloseOnEmitFileHandler(log_file, maxBytes=1024, backupCount=1, delay=True)
        handler.setFormatter(logging.Formatter("%(message)s"))

        for i in range(3):
            handler.emit(logging.makeLogRecord({"msg": f"run {i}"}))
            assert handler.stream is None

        assert log_file.read_text().splitlines() == ["run 0", "run 1", "run 2"]
