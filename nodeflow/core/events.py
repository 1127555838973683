"""Engine event sink.

All callbacks are optional and may be plain functions or coroutines. A
failing callback is logged and ignored; it never affects the run.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class EngineEvents:
    on_node_start: Callable[[str], Any] | None = None
    # (node_id, input, output, duration_ms, logs)
    on_node_end: Callable[[str, Any, Any, float, list], Any] | None = None
    # (edge_id, execution_time_ms, item_count)
    on_edge_traverse: Callable[[str, float, int], Any] | None = None
    on_workflow_end: Callable[[], Any] | None = None
    on_execution_update: Callable[[dict[str, Any]], Any] | None = None
    on_error: Callable[[str, Any], Any] | None = None

    async def emit(self, name: str, *args: Any) -> None:
        """Invoke callback `name` if set; exceptions are logged and swallowed."""
        callback = getattr(self, name, None)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Event callback {name} failed: {e}")
