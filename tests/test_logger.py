"""Tests for logger.py: setup_logging() and JsonFormatter.

Covers:
- stderr handler always present
- optional file handler
- Debug level override
- Config level and LOG_LEVEL env var handling
- JSON formatter output
- Third-party logger silencing

Strategy: Mock logging.basicConfig to verify setup_logging passes correct args,
since pytest's log capture plugin interferes with actual basicConfig calls.
"""

import json
import logging
import sys
from unittest.mock import patch

from n8n_backup.logger import JsonFormatter, setup_logging

# ---------------------------------------------------------------------------
# setup_logging tests
# ---------------------------------------------------------------------------


class TestSetupLogging:
    """Tests for setup_logging()."""

    @patch("n8n_backup.logger.logging.basicConfig")
    def test_logs_to_stderr(self, mock_basic):
        """Default setup passes StreamHandler(stderr) to basicConfig."""
        setup_logging()

        mock_basic.assert_called_once()
        handlers = mock_basic.call_args[1]["handlers"]
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.StreamHandler)
        assert handlers[0].stream is sys.stderr

    @patch("n8n_backup.logger.logging.basicConfig")
    def test_debug_overrides_level(self, mock_basic):
        """debug=True passes DEBUG level to basicConfig."""
        setup_logging(debug=True, level="ERROR")

        assert mock_basic.call_args[1]["level"] == logging.DEBUG

    @patch("n8n_backup.logger.logging.basicConfig")
    def test_config_level_used(self, mock_basic):
        setup_logging(level="warning")
        assert mock_basic.call_args[1]["level"] == logging.WARNING

    @patch("n8n_backup.logger.logging.basicConfig")
    def test_env_log_level_honored(self, mock_basic, monkeypatch):
        """LOG_LEVEL env var is used when no level is passed."""
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        setup_logging()

        assert mock_basic.call_args[1]["level"] == logging.ERROR

    @patch("n8n_backup.logger.logging.basicConfig")
    def test_default_level_is_info(self, mock_basic, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        setup_logging()

        assert mock_basic.call_args[1]["level"] == logging.INFO

    @patch("n8n_backup.logger.logging.basicConfig")
    def test_unknown_level_falls_back_to_info(self, mock_basic):
        setup_logging(level="chatty")
        assert mock_basic.call_args[1]["level"] == logging.INFO

    @patch("n8n_backup.logger.logging.basicConfig")
    def test_log_file_adds_file_handler(self, mock_basic, tmp_path):
        """log_file creates both stderr and file handlers."""
        log_file = str(tmp_path / "n8n-backup.log")
        setup_logging(log_file=log_file)

        handlers = mock_basic.call_args[1]["handlers"]
        file_handlers = [
            h for h in handlers if isinstance(h, logging.FileHandler)
        ]
        assert len(handlers) == 2
        assert len(file_handlers) == 1
        assert "%(name)s" in file_handlers[0].formatter._fmt
        # Clean up file handler
        for h in file_handlers:
            h.close()

    @patch("n8n_backup.logger.logging.basicConfig")
    def test_json_format_uses_json_formatter(self, mock_basic):
        """debug_format='json' sets JsonFormatter on handlers."""
        setup_logging(debug_format="json")

        handlers = mock_basic.call_args[1]["handlers"]
        assert all(isinstance(h.formatter, JsonFormatter) for h in handlers)

    @patch("n8n_backup.logger.logging.basicConfig")
    def test_third_party_silenced(self, _mock_basic):
        """Non-DEBUG mode silences urllib3."""
        setup_logging()

        assert logging.getLogger("urllib3").level == logging.WARNING


# ---------------------------------------------------------------------------
# JsonFormatter tests
# ---------------------------------------------------------------------------


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_basic_output(self):
        """Formatted output is valid JSON with required keys."""
        formatter = JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S")
        record = logging.LogRecord(
            name="n8n_backup.engine.orchestrator",
            level=logging.INFO,
            pathname="orchestrator.py",
            lineno=1,
            msg="Backup %s",
            args=("success",),
            exc_info=None,
        )

        data = json.loads(formatter.format(record))

        assert "ts" in data
        assert data["level"] == "INFO"
        assert data["logger"] == "n8n_backup.engine.orchestrator"
        assert data["msg"] == "Backup success"
        assert "exc" not in data

    def test_includes_exception(self):
        """Exception info is included in 'exc' key."""
        formatter = JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S")

        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        record = logging.LogRecord(
            name="test",
            level=logging.ERROR,
            pathname="test.py",
            lineno=1,
            msg="An error occurred",
            args=(),
            exc_info=exc_info,
        )

        data = json.loads(formatter.format(record))
        assert "ValueError: test error" in data["exc"]
