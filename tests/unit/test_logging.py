"""Tests for logging module."""

import logging
from unittest.mock import Mock

import pytest

from qbt_automations.logging import DATE_FORMAT, LOG_FORMAT_DETAILED, LOG_FORMAT_SIMPLE, get_logger, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Put back the root logger handlers after each test."""
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(level)


def make_config(log_file, level="INFO"):
    config = Mock()
    config.get_log_level.return_value = level
    config.get_log_file.return_value = log_file
    return config


def handlers_of(kind):
    return [h for h in logging.getLogger().handlers if type(h) is kind]


class TestSetupLogging:
    """Test logging setup functionality."""

    def test_file_and_console_handlers(self, tmp_path):
        """Setup adds one file and one console handler."""
        log_file = tmp_path / "logs" / "test.log"

        setup_logging(make_config(log_file))

        assert log_file.exists()
        assert logging.getLogger().level == logging.DEBUG
        assert len(handlers_of(logging.FileHandler)) == 1
        assert len(handlers_of(logging.StreamHandler)) == 1

    def test_levels(self, tmp_path):
        """File captures DEBUG; console follows the configured level."""
        setup_logging(make_config(tmp_path / "test.log", level="warning"))

        assert handlers_of(logging.FileHandler)[0].level == logging.DEBUG
        assert handlers_of(logging.StreamHandler)[0].level == logging.WARNING

    def test_unknown_level_defaults_to_info(self, tmp_path):
        """An unknown level name falls back to INFO."""
        setup_logging(make_config(tmp_path / "test.log", level="chatty"))
        assert handlers_of(logging.StreamHandler)[0].level == logging.INFO

    def test_trace_mode_format(self, tmp_path):
        """Trace mode uses the detailed format."""
        setup_logging(make_config(tmp_path / "test.log"), trace_mode=True)

        formatter = handlers_of(logging.FileHandler)[0].formatter
        assert formatter._fmt == LOG_FORMAT_DETAILED
        assert formatter.datefmt == DATE_FORMAT

    def test_simple_format(self, tmp_path):
        """Default mode uses the simple format."""
        setup_logging(make_config(tmp_path / "test.log"))
        assert handlers_of(logging.StreamHandler)[0].formatter._fmt == LOG_FORMAT_SIMPLE

    def test_repeated_setup_replaces_handlers(self, tmp_path):
        """Calling setup twice does not duplicate handlers."""
        config = make_config(tmp_path / "test.log")

        setup_logging(config)
        setup_logging(config)

        assert len(logging.getLogger().handlers) == 2

    def test_unwritable_log_file(self, tmp_path, capsys):
        """File logging failures fall back to console only."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        setup_logging(make_config(blocker / "test.log"))

        assert handlers_of(logging.FileHandler) == []
        assert len(handlers_of(logging.StreamHandler)) == 1
        assert "Failed to setup file logging" in capsys.readouterr().err

    def test_records_reach_file(self, tmp_path):
        """Debug records are written to the log file."""
        log_file = tmp_path / "test.log"
        setup_logging(make_config(log_file, level="ERROR"))

        get_logger("qbt_automations.test").debug("scan complete")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "qbt_automations.test: scan complete" in log_file.read_text()

    def test_third_party_loggers_quietened(self, tmp_path):
        """werkzeug and urllib3 only log warnings."""
        setup_logging(make_config(tmp_path / "test.log"))

        assert logging.getLogger("werkzeug").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING


class TestGetLogger:
    """Test get_logger."""

    def test_returns_named_logger(self):
        """get_logger returns the standard named logger."""
        assert get_logger("qbt_automations.engine") is logging.getLogger("qbt_automations.engine")
