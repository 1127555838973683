"""Per-run debug recorder for node code (helpers.debug).

Timers, metrics, breadcrumbs and a context map. One DebugRecorder is shared
by every node of a run and discarded with it.
"""

from __future__ import annotations

import inspect
import json
import logging
import time
import tracemalloc
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

BreadcrumbLevel = Literal["debug", "info", "warn", "error"]

MAX_BREADCRUMBS = 100


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class Timer:
    name: str
    start_time: float
    end_time: float | None = None
    duration: float | None = None  # ms


@dataclass
class Metric:
    name: str
    value: float
    timestamp: float
    tags: dict[str, str] | None = None


@dataclass
class Breadcrumb:
    message: str
    timestamp: float
    level: BreadcrumbLevel = "info"
    data: Any = None


@dataclass
class DebugRecorder:
    """Debug state for one run."""

    max_breadcrumbs: int = MAX_BREADCRUMBS
    _timers: dict[str, Timer] = field(default_factory=dict)
    _metrics: list[Metric] = field(default_factory=list)
    _breadcrumbs: deque = field(default_factory=deque)
    _context: dict[str, Any] = field(default_factory=dict)
    _marks: dict[str, float] = field(default_factory=dict)

    # ========== Timers ==========

    def start_timer(self, name: str) -> None:
        self._timers[name] = Timer(name=name, start_time=_now_ms())
        logger.debug(f"Timer started: {name}")

    def end_timer(self, name: str) -> float:
        """Stop a timer and return its duration in ms (0 if unknown)."""
        timer = self._timers.get(name)
        if timer is None:
            logger.warning(f"No timer found with name: {name}")
            return 0
        timer.end_time = _now_ms()
        timer.duration = timer.end_time - timer.start_time
        logger.debug(f"Timer ended: {name} ({timer.duration:.1f}ms)")
        return timer.duration

    def get_timer_duration(self, name: str) -> float:
        timer = self._timers.get(name)
        if timer is None:
            return 0
        if timer.duration is not None:
            return timer.duration
        return _now_ms() - timer.start_time

    def get_all_timers(self) -> list[dict[str, Any]]:
        return [asdict(t) for t in self._timers.values()]

    def clear_timer(self, name: str) -> None:
        self._timers.pop(name, None)

    def clear_all_timers(self) -> None:
        self._timers.clear()

    async def measure_time(self, name: str, fn: Callable[[], Any]) -> dict[str, Any]:
        """Run fn (sync or async) under a timer: {"result", "duration"}."""
        self.start_timer(name)
        result = fn()
        if inspect.isawaitable(result):
            result = await result
        return {"result": result, "duration": self.end_timer(name)}

    # ========== Metrics ==========

    def record_metric(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        self._metrics.append(Metric(name=name, value=value, timestamp=_now_ms(), tags=tags))
        logger.debug(f"Metric {name}: {value} {tags or ''}")

    def increment_metric(self, name: str, tags: dict[str, str] | None = None) -> None:
        self.record_metric(name, 1, tags)

    def get_all_metrics(self) -> list[dict[str, Any]]:
        return [asdict(m) for m in self._metrics]

    def get_metrics_by_name(self, name: str) -> list[dict[str, Any]]:
        return [asdict(m) for m in self._metrics if m.name == name]

    def get_metric_average(self, name: str) -> float:
        values = [m.value for m in self._metrics if m.name == name]
        return sum(values) / len(values) if values else 0

    def clear_metrics(self) -> None:
        self._metrics.clear()

    # ========== Breadcrumbs ==========

    def add_breadcrumb(
        self, message: str, level: BreadcrumbLevel = "info", data: Any = None
    ) -> None:
        """Record a breadcrumb; only the newest max_breadcrumbs are kept."""
        self._breadcrumbs.append(
            Breadcrumb(message=message, timestamp=_now_ms(), level=level, data=data)
        )
        while len(self._breadcrumbs) > self.max_breadcrumbs:
            self._breadcrumbs.popleft()
        logger.debug(f"Breadcrumb [{level.upper()}] {message}")

    def get_breadcrumbs(self) -> list[dict[str, Any]]:
        return [asdict(b) for b in self._breadcrumbs]

    def get_breadcrumbs_by_level(self, level: BreadcrumbLevel) -> list[dict[str, Any]]:
        return [asdict(b) for b in self._breadcrumbs if b.level == level]

    def clear_breadcrumbs(self) -> None:
        self._breadcrumbs.clear()

    # ========== Context ==========

    def set_context(self, key: str, value: Any) -> None:
        self._context[key] = value

    def get_context(self, key: str) -> Any:
        return self._context.get(key)

    def get_all_context(self) -> dict[str, Any]:
        return dict(self._context)

    def clear_context(self, key: str) -> None:
        self._context.pop(key, None)

    def clear_all_context(self) -> None:
        self._context.clear()

    # ========== Reports ==========

    @staticmethod
    def get_memory_usage() -> dict[str, float] | None:
        """Traced allocation sizes in MB, or None when tracemalloc is off."""
        if not tracemalloc.is_tracing():
            return None
        current, peak = tracemalloc.get_traced_memory()
        return {"current": round(current / 1024 / 1024, 2), "peak": round(peak / 1024 / 1024, 2)}

    def generate_debug_report(self) -> dict[str, Any]:
        return {
            "timers": self.get_all_timers(),
            "metrics": self.get_all_metrics(),
            "breadcrumbs": self.get_breadcrumbs(),
            "context": self.get_all_context(),
            "memory": self.get_memory_usage(),
            "timestamp": _now_ms(),
        }

    def clear_all(self) -> None:
        self.clear_all_timers()
        self.clear_metrics()
        self.clear_breadcrumbs()
        self.clear_all_context()
        self._marks.clear()

    def mark(self, name: str) -> None:
        self._marks[name] = _now_ms()
        self.add_breadcrumb(f"Performance mark: {name}", "debug")

    def measure(self, name: str, start_mark: str, end_mark: str) -> float:
        """Milliseconds between two marks, 0 if either is missing."""
        if start_mark not in self._marks or end_mark not in self._marks:
            logger.warning(f"Cannot measure {name}: unknown mark")
            return 0
        duration = self._marks[end_mark] - self._marks[start_mark]
        logger.debug(f"Measure {name}: {duration:.2f}ms")
        return duration

    def assert_(self, condition: Any, message: str) -> None:
        if not condition:
            self.add_breadcrumb(f"Assertion failed: {message}", "error")
            raise AssertionError(f"Assertion failed: {message}")

    def inspect(self, obj: Any, label: str | None = None) -> str:
        output = json.dumps(obj, indent=2, default=str)
        logger.debug(f"{label}:\n{output}" if label else output)
        return output

    def table(self, rows: list[Any], label: str | None = None) -> str:
        return self.inspect(rows, label)
