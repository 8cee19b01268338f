"""Unit tests for logging_config module."""

import logging
import sys

from relaycat.logging_config import (
    ErrorTracker,
    configure_logging,
    get_error_stats,
    reset_error_stats,
    setup_logging,
    track_error,
)


class TestSetupLogging:
    """Test suite for setup_logging."""

    def test_console_on_stderr(self):
        """Test console output never goes to stdout."""
        logger = setup_logging(level="INFO")

        assert logger.name == "relaycat"
        assert logger.level == logging.INFO
        assert logger.propagate is False
        assert len(logger.handlers) == 1
        assert logger.handlers[0].stream is sys.stderr

    def test_repeat_calls_replace_handlers(self):
        """Test handlers do not accumulate across calls."""
        setup_logging()
        logger = setup_logging()

        assert len(logger.handlers) == 1

    def test_file_handler(self, tmp_path):
        """Test a rotating file handler is added when a path is given."""
        log_file = tmp_path / "logs" / "relaycat.log"

        logger = setup_logging(level="DEBUG", log_file=str(log_file), enable_console=False)
        logging.getLogger("relaycat.netcat.core").debug("dialing")
        for handler in logger.handlers:
            handler.flush()

        assert len(logger.handlers) == 1
        content = log_file.read_text(encoding="utf-8")
        assert "dialing" in content
        assert "relaycat.netcat.core" in content


class TestConfigureLogging:
    """Test suite for configure_logging."""

    def test_default_level(self):
        configure_logging()
        assert logging.getLogger("relaycat").level == logging.WARNING

    def test_verbose_level(self):
        configure_logging(verbose=True)
        assert logging.getLogger("relaycat").level == logging.INFO

    def test_debug_wins(self):
        """Test --debug overrides --verbose."""
        configure_logging(verbose=True, debug=True)
        assert logging.getLogger("relaycat").level == logging.DEBUG


class TestErrorTracking:
    """Test suite for error tracking."""

    def test_counts_by_kind(self):
        """Test absorbed faults are counted per kind."""
        track_error("handshake", "bad record")
        track_error("handshake", "timeout")
        track_error("transfer", "reset", exception=ConnectionResetError())

        assert get_error_stats() == {"handshake": 2, "transfer": 1}

    def test_reset(self):
        track_error("shell", "exit 1")
        reset_error_stats()

        assert get_error_stats() == {}

    def test_counts_are_copies(self):
        """Test callers cannot mutate the tracker's counts."""
        tracker = ErrorTracker()
        tracker.log_error("accept", "fd limit")

        counts = tracker.get_error_counts()
        counts["accept"] = 99

        assert tracker.get_error_counts() == {"accept": 1}
