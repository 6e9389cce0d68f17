"""
Tests for consent_engine.monitoring.logging module.
"""

from __future__ import annotations

import structlog

from consent_engine import __version__
from consent_engine.monitoring.logging import (
    add_service_info,
    add_timestamp,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    sanitize_sensitive_data,
    unbind_context,
)


class TestProcessors:
    """Tests for custom structlog processors."""

    def test_add_timestamp(self):
        event = add_timestamp(None, "info", {"event": "x"})
        assert "timestamp" in event

    def test_add_service_info(self):
        event = add_service_info(None, "info", {"event": "x"})

        assert event["service"] == "consent-engine"
        assert event["version"] == __version__

    def test_requester_metadata_is_redacted(self):
        event = sanitize_sensitive_data(
            None,
            "info",
            {
                "event": "consent_updated",
                "ip_address": "203.0.113.7",
                "nested": {"user_agent": "Mozilla/5.0", "version": "3.0-1"},
                "items": [{"api_key": "k"}],
            },
        )

        assert event["ip_address"] == "[REDACTED]"
        assert event["nested"] == {"user_agent": "[REDACTED]", "version": "3.0-1"}
        assert event["items"] == [{"api_key": "[REDACTED]"}]
        assert event["event"] == "consent_updated"


class TestConfiguration:
    """Tests for configure_logging and context helpers."""

    def test_configure_json_logging(self):
        configure_logging(level="INFO", json_output=True)
        try:
            processors = structlog.get_config()["processors"]
        finally:
            structlog.reset_defaults()

        assert sanitize_sensitive_data in processors
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_configure_console_logging_without_sanitizer(self):
        configure_logging(level="DEBUG", json_output=False, sanitize_logs=False)
        try:
            processors = structlog.get_config()["processors"]
        finally:
            structlog.reset_defaults()

        assert sanitize_sensitive_data not in processors
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert get_logger("consent_engine.test") is not None

    def test_context_binding(self):
        clear_context()
        bind_context(identity="user-1", consent_version="3.0-2")
        assert structlog.contextvars.get_contextvars() == {"identity": "user-1", "consent_version": "3.0-2"}

        unbind_context("identity")
        assert structlog.contextvars.get_contextvars() == {"consent_version": "3.0-2"}

        clear_context()
        assert structlog.contextvars.get_contextvars() == {}
