"""Logging setup with run/node trace context.

The engine sets run_id and node_id in a ContextVar; the JSON formatter adds
them to every record so concurrent runs can be told apart.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("nodeflow_trace", default=None)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with the current trace context merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(trace_context.get() or {})

        node_id = getattr(record, "node_id", None)
        if node_id is not None:
            entry["node_id"] = node_id

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "rich", console: Console | None = None) -> None:
    """
    Configure the root logger once at startup.

    Args:
        level: Log level name
        fmt: "rich" for a console handler, "json" for structured output
        console: Console for the rich handler (defaults to stderr)
    """
    if fmt == "json":
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(StructuredFormatter())
    elif fmt == "rich":
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        raise ValueError(f"Unknown log format: {fmt}")

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def set_trace_context(**kwargs: Any) -> None:
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict[str, Any]:
    return dict(trace_context.get() or {})


@contextmanager
def trace_scope(**kwargs: Any) -> Iterator[None]:
    """Extend the trace context for the duration of a block."""
    token = trace_context.set({**(trace_context.get() or {}), **kwargs})
    try:
        yield
    finally:
        trace_context.reset(token)
