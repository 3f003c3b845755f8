"""
Unit tests for structured logging configuration.

Tests verify:
- JSON output carries service, level, timestamp and the event fields
- Context variables (trace_id, request_id, user_id) are set and retrieved
- The request-context processor enriches entries without clobbering fields
"""
import json
import logging
from io import StringIO

import pytest

from tiergate.core import logging as tiergate_logging
from tiergate.core.logging import (
    add_request_context,
    configure_logging,
    generate_request_id,
    generate_trace_id,
    get_logger,
    get_request_id,
    get_trace_id,
    get_user_id,
    set_request_id,
    set_trace_id,
    set_user_id,
)


@pytest.fixture
def clean_context():
    yield
    set_trace_id(None)
    set_request_id(None)
    set_user_id(None)


@pytest.fixture
def captured_root():
    output = StringIO()
    root_logger = logging.getLogger()
    saved_handlers = root_logger.handlers[:]
    saved_level = root_logger.level
    root_logger.handlers.clear()
    handler = logging.StreamHandler(output)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)
    yield output
    root_logger.removeHandler(handler)
    root_logger.handlers[:] = saved_handlers
    root_logger.setLevel(saved_level)


class TestLoggingConfiguration:
    def test_json_output_is_parseable(self, captured_root, clean_context):
        configure_logging(log_level="INFO", json_output=True)
        set_trace_id("trace-abc")

        get_logger("tiergate.test").info("tier_routing_completed", tier_used=2, cost=0.004)

        entry = json.loads(captured_root.getvalue().strip().splitlines()[-1])
        assert entry["event"] == "tier_routing_completed"
        assert entry["tier_used"] == 2
        assert entry["level"] == "info"
        assert entry["service"] == "tiergate"
        assert entry["trace_id"] == "trace-abc"
        assert "timestamp" in entry

    def test_console_output_does_not_raise(self):
        configure_logging(log_level="DEBUG", json_output=False)

        get_logger(__name__).debug("console_event", field="value")

    def test_service_name_override(self):
        configure_logging(service_name="tiergate-worker")
        try:
            assert tiergate_logging.SERVICE_NAME == "tiergate-worker"
        finally:
            configure_logging(service_name="tiergate")


class TestContextVariables:
    def test_set_and_get(self, clean_context):
        set_trace_id("trace-1")
        set_request_id("request-1")
        set_user_id("user-1")

        assert get_trace_id() == "trace-1"
        assert get_request_id() == "request-1"
        assert get_user_id() == "user-1"

    def test_generated_ids_are_unique_uuids(self):
        trace_id, other = generate_trace_id(), generate_trace_id()

        assert len(trace_id) == 36
        assert trace_id.count("-") == 4
        assert trace_id != other
        assert generate_request_id() != generate_request_id()


class TestRequestContextProcessor:
    def test_adds_context_fields(self, clean_context):
        set_trace_id("trace-9")
        set_request_id("request-9")
        set_user_id("user-9")

        event = add_request_context(None, "info", {"event": "x"})

        assert event["trace_id"] == "trace-9"
        assert event["request_id"] == "request-9"
        assert event["user_id"] == "user-9"
        assert event["service"] == tiergate_logging.SERVICE_NAME
        assert "timestamp" in event

    def test_explicit_user_id_wins(self, clean_context):
        set_user_id("from-context")

        event = add_request_context(None, "info", {"event": "x", "user_id": "explicit"})

        assert event["user_id"] == "explicit"

    def test_no_context_no_ids(self, clean_context):
        event = add_request_context(None, "info", {"event": "x"})

        assert "trace_id" not in event
        assert "request_id" not in event
        assert "user_id" not in event
