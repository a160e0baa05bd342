"""
Tests for structured logging

Tests cover:
- JSON formatter fields and request context
- Structured helpers for transitions and rejections
"""

import json
import logging

from app.utils.logging_config import (
    JSONFormatter,
    clear_request_context,
    get_logger,
    set_request_context,
)


class CaptureHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def capture(name):
    handler = CaptureHandler()
    base = logging.getLogger(name)
    base.addHandler(handler)
    base.setLevel(logging.DEBUG)
    return get_logger(name), handler


class TestJSONFormatter:
    def test_includes_request_context(self):
        logger, handler = capture("tests.logging.context")
        set_request_context("req-1", "client-1")
        try:
            logger.info("hello")
        finally:
            clear_request_context()

        data = json.loads(JSONFormatter().format(handler.records[0]))
        assert data["message"] == "hello"
        assert data["request_id"] == "req-1"
        assert data["user_id"] == "client-1"
        assert data["level"] == "INFO"

    def test_context_cleared(self):
        logger, handler = capture("tests.logging.cleared")
        logger.info("no context")

        data = json.loads(JSONFormatter().format(handler.records[0]))
        assert "request_id" not in data


class TestStructuredHelpers:
    def test_transition_applied(self):
        logger, handler = capture("tests.logging.transition")
        logger.transition_applied("B1", "PAID", "CANCELLED", 4, event_id="cal-9")

        data = json.loads(JSONFormatter().format(handler.records[0]))
        assert data["entity_type"] == "booking"
        assert data["entity_id"] == "B1"
        assert data["data"]["new_state"] == "CANCELLED"
        assert data["data"]["version"] == 4

    def test_security_rejection_is_a_warning(self):
        logger, handler = capture("tests.logging.security")
        logger.security_rejection("stripe", "invalid_signature", "10.0.0.1")

        record = handler.records[0]
        assert record.levelno == logging.WARNING
        assert record.extra_data["client_ip"] == "10.0.0.1"

    def test_event_rejected_details(self):
        logger, handler = capture("tests.logging.rejected")
        logger.event_rejected("stripe", "evt_1", "invalid_transition", booking_id="B1", state="FAILED")

        record = handler.records[0]
        assert "evt_1" in record.getMessage()
        assert record.extra_data["state"] == "FAILED"
