"""Tests for structured logging and operation_type propagation."""

import json
import logging

from optrack.core.logging import (
    NOISY_LOGGERS,
    configure_logging,
    current_operation_type,
    operation_context,
)


class TestConfigureLogging:
    """Test structured logging configuration."""

    def test_configure_logging_sets_root_level(self):
        """configure_logging sets root logger level."""
        configure_logging(log_level="DEBUG", log_format="json")
        root = logging.getLogger()
        assert root.level == logging.DEBUG

        # Restore
        configure_logging(log_level="INFO", log_format="json")

    def test_configure_logging_console_format(self):
        """Console format configures without error."""
        configure_logging(log_level="INFO", log_format="console")
        root = logging.getLogger()
        assert len(root.handlers) == 1

        # Restore to JSON for other tests
        configure_logging(log_level="INFO", log_format="json")

    def test_noisy_loggers_suppressed(self):
        """Third-party loggers set to WARNING."""
        configure_logging(log_level="DEBUG", log_format="json")
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

        configure_logging(log_level="INFO", log_format="json")


class TestOperationContext:
    """Test operation_type binding."""

    def test_default_none(self):
        assert current_operation_type() is None

    def test_context_sets_and_resets(self):
        with operation_context("log-import"):
            assert current_operation_type() == "log-import"
            with operation_context("depot-scan"):
                assert current_operation_type() == "depot-scan"
            assert current_operation_type() == "log-import"
        assert current_operation_type() is None

    def test_stdlib_records_carry_operation_type(self, capsys):
        configure_logging(log_level="INFO", log_format="json")
        with operation_context("depot-scan", mode="poll_active"):
            logging.getLogger("optrack.services.poll_fallback").info("Poll fallback started")
        logging.getLogger("optrack.services.poll_fallback").info("idle")

        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]
        tagged, untagged = lines[-2], lines[-1]
        assert tagged["event"] == "Poll fallback started"
        assert tagged["operation_type"] == "depot-scan"
        assert tagged["mode"] == "poll_active"
        assert "operation_type" not in untagged
