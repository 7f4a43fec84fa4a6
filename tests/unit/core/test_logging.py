"""Tests for structlog setup."""

import io
import json

import pytest
import structlog

from credpool.core.logging import setup_logging


@pytest.mark.unit
class TestSetupLogging:
    def test_writes_to_current_stderr(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a stream swapped in after setup receives the log lines."""
        setup_logging("INFO", json_logs=True)
        first = io.StringIO()
        monkeypatch.setattr("sys.stderr", first)
        structlog.get_logger("credpool.test").info("first_event")
        first.close()

        second = io.StringIO()
        monkeypatch.setattr("sys.stderr", second)
        structlog.get_logger("credpool.test").info("second_event", count=2)

        record = json.loads(second.getvalue().strip())
        assert record["event"] == "second_event"
        assert record["count"] == 2
        assert record["level"] == "info"

    def test_level_filtering(self, monkeypatch: pytest.MonkeyPatch) -> None:
        setup_logging("warning", json_logs=True)
        stream = io.StringIO()
        monkeypatch.setattr("sys.stderr", stream)

        logger = structlog.get_logger("credpool.test")
        logger.info("hidden_event")
        logger.warning("shown_event")

        assert "hidden_event" not in stream.getvalue()
        assert "shown_event" in stream.getvalue()
