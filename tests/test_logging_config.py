"""Tests for logging setup and trace context."""

import json
import logging

import pytest
from rich.logging import RichHandler

from nodeflow.logging_config import (
    StructuredFormatter,
    configure_logging,
    get_trace_context,
    set_trace_context,
    trace_context,
    trace_scope,
)


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("nodeflow.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_rich_handler(self):
        """Test the default console handler."""
        configure_logging("debug")

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0], RichHandler)
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_json_handler(self):
        """Test the structured handler."""
        configure_logging("WARNING", "json")

        assert isinstance(logging.getLogger().handlers[0].formatter, StructuredFormatter)

    def test_unknown_format(self):
        """Test that unknown formats are rejected."""
        with pytest.raises(ValueError, match="Unknown log format: xml"):
            configure_logging("INFO", "xml")


class TestStructuredFormatter:
    """Tests for JSON log lines."""

    def test_fields(self):
        """Test the base fields."""
        entry = json.loads(StructuredFormatter().format(_record("hello")))

        assert entry["level"] == "info"
        assert entry["logger"] == "nodeflow.test"
        assert entry["message"] == "hello"

    def test_trace_context_merged(self):
        """Test that run/node ids from the context appear in the line."""
        with trace_scope(run_id="r1", node_id="n1"):
            entry = json.loads(StructuredFormatter().format(_record("x")))

        assert entry["run_id"] == "r1"
        assert entry["node_id"] == "n1"

    def test_record_node_id(self):
        """Test node_id passed via extra."""
        entry = json.loads(StructuredFormatter().format(_record("x", node_id="n9")))

        assert entry["node_id"] == "n9"


class TestTraceContext:
    """Tests for trace context helpers."""

    def test_scope_restores(self):
        """Test that trace_scope resets on exit."""
        with trace_scope(run_id="outer"):
            with trace_scope(node_id="inner"):
                assert get_trace_context() == {"run_id": "outer", "node_id": "inner"}
            assert get_trace_context() == {"run_id": "outer"}
        assert get_trace_context() == {}

    def test_set_merges(self):
        """Test that set_trace_context extends the current context."""
        token = trace_context.set(None)
        try:
            set_trace_context(run_id="r")
            set_trace_context(node_id="n")
            assert get_trace_context() == {"run_id": "r", "node_id": "n"}
        finally:
            trace_context.reset(token)
