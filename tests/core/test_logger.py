"""
Tests for the structured JSON logger.
"""

import json
import logging

import pytest

from app.core.logger import ComponentLogger, correlation_id_context, log_json

def _last_entry(caplog):
    return json.loads(caplog.records[-1].getMessage())

@pytest.fixture
def debug_caplog(caplog):
    caplog.set_level(logging.DEBUG)
    return caplog

@pytest.mark.core
class TestLogJson:
    """Shape and masking of emitted entries."""

    def test_entry_fields(self, debug_caplog, monkeypatch):
        monkeypatch.setenv("PRODUCTION", "False")

        log_json("sessions", "info", "voice_join", guild_id=1001, minutes=12)

        entry = _last_entry(debug_caplog)
        assert entry["event"] == "voice_join"
        assert entry["component"] == "sessions"
        assert entry["level"] == "INFO"
        assert entry["guild_id"] == 1001
        assert entry["minutes"] == 12
        assert entry["timestamp"].endswith("Z")

    def test_secrets_always_redacted(self, debug_caplog, monkeypatch):
        monkeypatch.setenv("PRODUCTION", "False")

        log_json("config", "info", "loaded", db_password="hunter2", discord_token="abc")

        entry = _last_entry(debug_caplog)
        assert entry["db_password"] == "REDACTED"
        assert entry["discord_token"] == "REDACTED"

    def test_ids_redacted_in_production(self, debug_caplog, monkeypatch):
        monkeypatch.setenv("PRODUCTION", "True")

        log_json("tiers", "info", "tier_role_updated", user_id=7, tier="Regular")

        entry = _last_entry(debug_caplog)
        assert entry["user_id"] == "REDACTED"
        assert entry["tier"] == "Regular"

    def test_correlation_id_truncated(self, debug_caplog):
        token = correlation_id_context.set("0123456789abcdef")
        try:
            log_json("bot", "debug", "command")
        finally:
            correlation_id_context.reset(token)

        assert _last_entry(debug_caplog)["correlation_id"] == "01234567"

    def test_exception_summary_in_production(self, debug_caplog, monkeypatch):
        monkeypatch.setenv("PRODUCTION", "True")
        error = ValueError("boom")

        log_json("bot", "error", "failed", exc_info=(ValueError, error, None))

        entry = _last_entry(debug_caplog)
        assert entry["exception_type"] == "ValueError"
        assert entry["exception_message"] == "boom"
        assert "exc_info" not in entry

@pytest.mark.core
class TestComponentLogger:
    """Level routing of the component wrapper."""

    @pytest.mark.parametrize("level", ["debug", "info", "warning", "error", "critical"])
    def test_levels(self, debug_caplog, level):
        logger = ComponentLogger("movie_night")

        getattr(logger, level)("event_name")

        record = debug_caplog.records[-1]
        assert record.levelname == level.upper()
        assert json.loads(record.getMessage())["component"] == "movie_night"
