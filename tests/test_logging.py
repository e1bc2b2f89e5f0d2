"""
Tests for structured logging setup
"""
import json
import logging

import pytest
import structlog

from stablehub.logging import setup_logging


@pytest.fixture
def restore_logging(monkeypatch):
    yield
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    setup_logging()


def _log_failure(name):
    try:
        raise ValueError("feed store offline")
    except ValueError:
        structlog.get_logger(name).exception("history_write_failed", step_id="s1")


class TestExceptionLogging:
    def test_console_renderer_formats_traceback(self, caplog, monkeypatch, restore_logging):
        monkeypatch.delenv("LOG_FORMAT", raising=False)
        setup_logging()
        caplog.set_level(logging.INFO)

        _log_failure("stablehub.tests.console")

        text = caplog.records[-1].getMessage()
        assert "history_write_failed" in text
        assert "ValueError" in text

    def test_json_renderer_structures_traceback(self, caplog, monkeypatch, restore_logging):
        monkeypatch.setenv("LOG_FORMAT", "json")
        setup_logging()
        caplog.set_level(logging.INFO)

        _log_failure("stablehub.tests.json")

        event = json.loads(caplog.records[-1].getMessage())
        assert event["event"] == "history_write_failed"
        assert event["step_id"] == "s1"
        assert event["exception"][0]["exc_type"] == "ValueError"
