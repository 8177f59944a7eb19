"""Unit tests for structured logging utilities.

This module tests the logging configuration and utilities including:
- Logging setup with different levels and formats
- Quieting of chatty third-party loggers
- Cluster context binding
- Error logging with context
"""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest
import structlog

from kubestrap.utils.logging import REDACTED, bind_cluster, get_logger, log_error, redact_secrets, setup_logging


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration around each test."""
    logging.root.handlers = []
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    yield
    logging.root.handlers = []
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestSetupLogging:
    """Test setup_logging function."""

    def test_setup_logging_warning_level(self):
        """Test setup_logging sets the root level."""
        setup_logging(level="WARNING")
        assert logging.root.level == logging.WARNING

    def test_setup_logging_lowercase_and_invalid_levels(self):
        """Test level names are case-insensitive and unknown names fall back to INFO."""
        setup_logging(level="debug")
        assert logging.root.level == logging.DEBUG

        logging.root.handlers = []
        setup_logging(level="INVALID")
        assert logging.root.level == logging.INFO

    def test_third_party_loggers_quieted(self):
        """Test paramiko and botocore stay at WARNING even in debug mode."""
        setup_logging(level="DEBUG")
        assert logging.getLogger("paramiko").level == logging.WARNING
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_setup_logging_json_format(self):
        """Test JSON format ends with the JSON renderer."""
        setup_logging(format="json")

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer), "JSONRenderer should be last processor"

    def test_setup_logging_console_format(self):
        """Test console format ends with the console renderer."""
        setup_logging(format="console")

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer), "ConsoleRenderer should be last processor"

    def test_setup_logging_includes_context_processor(self):
        """Test context vars are merged into every line."""
        setup_logging()

        processors = structlog.get_config()["processors"]
        assert "merge_contextvars" in str(processors), "merge_contextvars processor not found"

    def test_setup_logging_caches_logger(self):
        """Test setup_logging configures logger caching."""
        setup_logging()
        assert structlog.get_config()["cache_logger_on_first_use"] is True


def test_redact_secrets():
    """Test credential values are masked and other keys left alone."""
    event = redact_secrets(None, "info", {"event": "joining", "token": "abcdef.0123456789abcdef", "node": "w1"})
    assert event == {"event": "joining", "token": REDACTED, "node": "w1"}


def test_token_never_rendered(capsys):
    """Test a token passed to a logger never reaches the output."""
    setup_logging(format="json", output="stdout")
    get_logger("test_module").info("worker_joining", token="abcdef.0123456789abcdef")

    out = capsys.readouterr().out
    assert "0123456789abcdef" not in out
    assert REDACTED in out


def test_bind_cluster():
    """Test the cluster name is bound to the logging context."""
    bind_cluster("lab", command="provision")
    assert structlog.contextvars.get_contextvars() == {"cluster": "lab", "command": "provision"}


def test_get_logger_can_log(capsys):
    """Test loggers write structured events."""
    setup_logging(level="DEBUG", format="json", output="stdout")
    get_logger("test_module").info("resource_created", name="vpc")

    assert '"event": "resource_created"' in capsys.readouterr().out


class TestLogError:
    """Test log_error function."""

    def test_log_error_with_operation(self):
        """Test log_error includes type, message and operation."""
        logger = MagicMock()
        log_error(logger, ValueError("boom"), operation="provision", cluster="lab")

        logger.error.assert_called_once_with(
            "error_occurred",
            error_type="ValueError",
            error_message="boom",
            cluster="lab",
            operation="provision",
        )

    def test_log_error_without_operation(self):
        """Test operation is omitted when not given."""
        logger = MagicMock()
        log_error(logger, RuntimeError("x"))

        assert "operation" not in logger.error.call_args.kwargs
