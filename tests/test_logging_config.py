"""
Tests for structured JSON logging configuration.

Tests logging_config.py module functionality.
"""

import json
import logging
import sys

import pytest

from ad_refactor.logging_config import JSONFormatter, setup_logging


def make_record(msg="Test message", level=logging.INFO, exc_info=None):
    record = logging.LogRecord(
        name="test_logger",
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    record.module = "test_module"
    record.funcName = "test_function"
    return record


class TestJSONFormatter:
    """Test JSONFormatter class."""

    def test_basic_log_formatting(self):
        """Test that basic log record is formatted as JSON."""
        log_data = json.loads(JSONFormatter().format(make_record()))

        assert log_data["level"] == "INFO"
        assert log_data["logger"] == "test_logger"
        assert log_data["message"] == "Test message"
        assert log_data["module"] == "test_module"
        assert log_data["function"] == "test_function"
        assert log_data["line"] == 42
        assert log_data["timestamp"].endswith("Z")

    def test_task_context_is_included(self):
        """Test that task_id, event and attempt are lifted from extra."""
        record = make_record()
        record.task_id = "9b2c"
        record.event = "task.completed"
        record.attempt = 2

        log_data = json.loads(JSONFormatter().format(record))

        assert log_data["task_id"] == "9b2c"
        assert log_data["event"] == "task.completed"
        assert log_data["attempt"] == 2

    def test_absent_context_is_omitted(self):
        """Test that context keys are not added when missing."""
        log_data = json.loads(JSONFormatter().format(make_record()))

        assert "task_id" not in log_data
        assert "audit" not in log_data

    def test_audit_context_is_serialized(self):
        """Test that non-JSON values in the audit context are stringified."""
        record = make_record()
        record.audit = {"task_id": "9b2c", "when": object()}

        log_data = json.loads(JSONFormatter().format(record))

        assert log_data["audit"]["task_id"] == "9b2c"
        assert isinstance(log_data["audit"]["when"], str)

    def test_log_with_exception(self):
        """Test that exception info is formatted."""
        try:
            raise ValueError("Test exception")
        except ValueError:
            record = make_record("Error occurred", logging.ERROR, sys.exc_info())

        log_data = json.loads(JSONFormatter().format(record))

        assert "ValueError: Test exception" in log_data["exception"]


class TestSetupLogging:
    """Test setup_logging function."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_installs_json_handler(self):
        """Test that the root logger gets exactly one JSON handler."""
        setup_logging(level="DEBUG")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_unknown_level_defaults_to_info(self):
        """Test fallback for an unknown level name."""
        setup_logging(level="chatty")

        assert logging.getLogger().level == logging.INFO

    def test_noisy_libraries_are_quieted(self):
        """Test that library loggers are raised to WARNING."""
        setup_logging()

        for name in ("httpx", "httpcore", "sqlalchemy.engine", "apscheduler"):
            assert logging.getLogger(name).level == logging.WARNING
