"""Helper library injected into node code as `helpers`.

Stateless namespaces (data, strings, dates, validation, router, items, retry)
are shared; stateful services (secrets, debug, http) live in a RuntimeServices
object that is created once per run.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from types import ModuleType, SimpleNamespace
from typing import Any

import httpx

from nodeflow.core.items import ItemProcessor
from nodeflow.core.retry import RetryHandler
from nodeflow.core.routing import ConditionalRouter
from nodeflow.helpers import data, dates, strings
from nodeflow.helpers.debug import DebugRecorder
from nodeflow.helpers.http import HttpHelper
from nodeflow.helpers.secrets import SecretsManager
from nodeflow.helpers.validation import SchemaValidator

node_logger = logging.getLogger("nodeflow.node")

# log(level, message, args)
LogSink = Callable[[str, str, tuple], None]
ExecuteFromNode = Callable[[str, Any], Awaitable[Any]]


def _namespace(module: ModuleType) -> SimpleNamespace:
    """Expose only a module's public functions."""
    return SimpleNamespace(**{name: getattr(module, name) for name in module.__all__})


DATA = _namespace(data)
STRINGS = _namespace(strings)
DATES = _namespace(dates)
JSON = SimpleNamespace(
    dumps=lambda value, indent=None: json.dumps(value, indent=indent, default=str),
    loads=json.loads,
)


@dataclass
class RuntimeServices:
    """Stateful helper services owned by one run."""

    secrets: SecretsManager = field(default_factory=SecretsManager)
    debug: DebugRecorder = field(default_factory=DebugRecorder)
    http: HttpHelper = field(default_factory=HttpHelper)

    @classmethod
    def create(
        cls,
        env: dict[str, str] | None = None,
        secrets: dict[str, str] | None = None,
        inherit_environment: bool = False,
        encryption_key: str | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> RuntimeServices:
        manager = SecretsManager(
            encryption_key=encryption_key, env=env, inherit_environment=inherit_environment
        )
        manager.set_secrets(secrets or {})
        return cls(secrets=manager, http=HttpHelper(transport=http_transport))

    async def aclose(self) -> None:
        await self.http.aclose()


def format_log_args(args: tuple) -> str:
    """Strings as-is, everything else as JSON, joined by spaces."""
    parts = []
    for arg in args:
        if isinstance(arg, str):
            parts.append(arg)
        else:
            try:
                parts.append(json.dumps(arg, default=str))
            except (TypeError, ValueError):
                parts.append(repr(arg))
    return " ".join(parts)


# Breadcrumb level per log helper
BREADCRUMB_LEVELS = {"log": "info", "info": "info", "warn": "warn", "error": "error", "debug": "debug"}


def quick_helpers(runtime: RuntimeServices) -> dict[str, Any]:
    """Flat shortcuts to the most used namespace functions."""
    return {
        "map": data.map,
        "filter": data.filter,
        "reduce": data.reduce,
        "group_by": data.group_by,
        "sort_by": data.sort_by,
        "unique": data.unique,
        "chunk": data.chunk,
        "flatten": data.flatten,
        "pick": data.pick,
        "omit": data.omit,
        "merge": data.merge,
        "get": data.get,
        "set": data.set,
        "slugify": strings.slugify,
        "capitalize": strings.capitalize,
        "camel_case": strings.camel_case,
        "snake_case": strings.snake_case,
        "kebab_case": strings.kebab_case,
        "template": strings.template,
        "format_date": dates.format_date,
        "parse_date": dates.parse_date,
        "add_days": dates.add_days,
        "time_ago": dates.time_ago,
        "http_get": runtime.http.get,
        "http_post": runtime.http.post,
        "http_put": runtime.http.put,
        "http_delete": runtime.http.delete,
        "http_request": runtime.http.request,
        "parse": json.loads,
        "validate": SchemaValidator.validate,
        "route": ConditionalRouter.route,
    }


def build_node_helpers(
    runtime: RuntimeServices,
    log: LogSink | None = None,
    execute_from_node: ExecuteFromNode | None = None,
) -> SimpleNamespace:
    """Build the `helpers` binding for one node execution."""

    def emit(level: str) -> Callable[..., None]:
        def _log(*args: Any) -> None:
            message = format_log_args(args)
            node_logger.debug(f"[{level}] {message}")
            crumb: dict[str, Any] = {"source": level}
            extra = [arg for arg in args if not isinstance(arg, str)]
            if extra:
                crumb["args"] = extra
            runtime.debug.add_breadcrumb(message, BREADCRUMB_LEVELS[level], crumb)
            if log is not None:
                log(level, message, args)

        return _log

    async def _execute_from_node(node_id: str, input_data: Any = None) -> Any:
        if execute_from_node is None:
            raise RuntimeError("execute_from_node is not available in this context")
        return await execute_from_node(node_id, input_data)

    return SimpleNamespace(
        log=emit("log"),
        info=emit("info"),
        warn=emit("warn"),
        error=emit("error"),
        debug_log=emit("debug"),
        sleep=asyncio.sleep,
        json=JSON,
        data=DATA,
        strings=STRINGS,
        dates=DATES,
        http=runtime.http,
        secrets=runtime.secrets,
        debug=runtime.debug,
        validation=SchemaValidator,
        router=ConditionalRouter,
        items=ItemProcessor,
        retry=RetryHandler,
        get_env=runtime.secrets.get_env,
        get_secret=runtime.secrets.get_secret,
        resolve_secrets=runtime.secrets.resolve_object,
        execute_from_node=_execute_from_node,
        **quick_helpers(runtime),
    )


def build_client_helpers(
    runtime: RuntimeServices,
    log: LogSink | None = None,
    alert: Callable[[str], Any] | None = None,
    toast: Callable[..., Any] | None = None,
    execute_from_node: ExecuteFromNode | None = None,
) -> SimpleNamespace:
    """Node helpers plus the user-facing alert/toast callbacks."""
    helpers = build_node_helpers(runtime, log, execute_from_node)
    helpers.alert = alert or (lambda message: node_logger.info(f"[alert] {message}"))
    helpers.toast = toast or (
        lambda title, description="", variant="default": node_logger.info(
            f"[toast:{variant}] {title} {description}".rstrip()
        )
    )
    return helpers


__all__ = [
    "RuntimeServices",
    "build_node_helpers",
    "build_client_helpers",
    "quick_helpers",
    "format_log_args",
    "DebugRecorder",
    "HttpHelper",
    "SecretsManager",
    "SchemaValidator",
]
