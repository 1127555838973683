"""Template expression resolution.

"{{ expr }}" occupying a whole string evaluates to the expression's native
value; expressions embedded in text are interpolated as strings. Expressions
are Jinja expressions evaluated in a SandboxedEnvironment with these bindings:

    data, $json, $node   first input item (or {})
    execution, $         execution-by-name map
    $input               first() / last() / all() / item(i)
    items                full input list
    json                 dumps / loads
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from jinja2 import StrictUndefined, Undefined
from jinja2.sandbox import SandboxedEnvironment

from nodeflow.core.context import InputAccessor, normalize_items
from nodeflow.helpers import JSON
from nodeflow.sandbox.executor import AttrDict, python_name, rewrite_dollar_names, wrap_value

logger = logging.getLogger(__name__)

ERROR_MARKER = "EXPRESSION_ERROR: "

MAX_CACHED_EXPRESSIONS = 512

EXPRESSION_GLOBALS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "list": list,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "round": round,
    "sorted": sorted,
}


@dataclass
class ExpressionError:
    expression: str
    message: str


def render_inline(value: Any) -> str:
    """String form of an inline expression result."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


def _find_close(text: str, pos: int) -> int:
    """Index of the "}}" closing a block opened before pos, or -1.

    Braces, brackets and parentheses must balance and quoted strings are
    skipped, so "}}" inside a dict literal does not end the block.
    """
    depth = 0
    quote = None
    i = pos
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 1
            elif ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch in "([{":
            depth += 1
        elif ch in ")]":
            depth = max(depth - 1, 0)
        elif ch == "}":
            if depth == 0 and text.startswith("}}", i):
                return i
            depth = max(depth - 1, 0)
        i += 1
    return -1


def split_template(text: str) -> list[tuple[bool, str]]:
    """Split text into (is_expression, source) segments.

    An unterminated "{{" and everything after it is literal text.
    """
    segments: list[tuple[bool, str]] = []
    pos = 0
    while True:
        start = text.find("{{", pos)
        if start < 0:
            break
        end = _find_close(text, start + 2)
        if end < 0:
            break
        if start > pos:
            segments.append((False, text[pos:start]))
        segments.append((True, text[start + 2:end]))
        pos = end + 2
    if pos < len(text):
        segments.append((False, text[pos:]))
    return segments


def contains_expression(value: Any) -> bool:
    return isinstance(value, str) and any(is_expression for is_expression, _ in split_template(value))


def build_environment() -> SandboxedEnvironment:
    environment = SandboxedEnvironment(
        undefined=StrictUndefined,
        autoescape=False,
        keep_trailing_newline=True,
        finalize=render_inline,
    )
    environment.globals.update(EXPRESSION_GLOBALS)
    return environment


class ExpressionResolver:
    """Resolve {{ }} templates; failures degrade to None / "" and never raise."""

    def __init__(self, environment: SandboxedEnvironment | None = None):
        self.environment = environment or build_environment()
        self.errors: list[ExpressionError] = []
        self._expressions: dict[str, Any] = {}
        self._templates: dict[str, Any] = {}

    def build_bindings(
        self,
        data: Any = None,
        items: list[Any] | None = None,
        execution: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        items = normalize_items(data) if items is None else items
        wrapped_items = wrap_value(items)
        if data is None:
            data = items[0] if items else {}
        current = wrap_value(data)
        if current is None:
            current = AttrDict()
        context = wrap_value(execution or {})
        return {
            "data": current,
            python_name("$json"): current,
            python_name("$node"): current,
            "execution": context,
            python_name("$"): context,
            python_name("$input"): InputAccessor(wrapped_items),
            "items": wrapped_items,
            "json": JSON,
        }

    @staticmethod
    def _remember(cache: dict[str, Any], key: str, value: Any) -> Any:
        if len(cache) >= MAX_CACHED_EXPRESSIONS:
            cache.pop(next(iter(cache)))
        cache[key] = value
        return value

    def evaluate(self, expression: str, bindings: dict[str, Any]) -> Any:
        """Evaluate one expression body to its native value; raises on failure."""
        compiled = self._expressions.get(expression)
        if compiled is None:
            compiled = self._remember(
                self._expressions,
                expression,
                self.environment.compile_expression(
                    rewrite_dollar_names(expression.strip()), undefined_to_none=False
                ),
            )
        result = compiled(**bindings)
        if isinstance(result, Undefined):
            result._fail_with_undefined_error()
        return result

    def render(self, expression: str, bindings: dict[str, Any]) -> str:
        """Render one expression body as inline text; raises on failure."""
        template = self._templates.get(expression)
        if template is None:
            source = "{{ " + rewrite_dollar_names(expression.strip()) + " }}"
            template = self._remember(self._templates, expression, self.environment.from_string(source))
        return template.render(**bindings)

    def _record_error(self, expression: str, error: Exception) -> None:
        message = f"{type(error).__name__}: {error}"
        logger.warning(f"{ERROR_MARKER}{message} in '{{{{{expression}}}}}'")
        self.errors.append(ExpressionError(expression=expression.strip(), message=message))

    def resolve(
        self,
        value: Any,
        data: Any = None,
        items: list[Any] | None = None,
        execution: dict[str, Any] | None = None,
    ) -> Any:
        """
        Resolve templates in value.

        Non-string values pass through unchanged.
        """
        if not isinstance(value, str) or "{{" not in value:
            return value

        segments = split_template(value)
        expressions = [source for is_expression, source in segments if is_expression]
        if not expressions:
            return value

        bindings = self.build_bindings(data, items, execution)

        standalone = len(expressions) == 1 and all(
            is_expression or not source.strip() for is_expression, source in segments
        )
        if standalone:
            try:
                return self.evaluate(expressions[0], bindings)
            except Exception as e:
                self._record_error(expressions[0], e)
                return None

        parts = []
        for is_expression, source in segments:
            if not is_expression:
                parts.append(source)
                continue
            try:
                parts.append(self.render(source, bindings))
            except Exception as e:
                self._record_error(source, e)
        return "".join(parts)

    def resolve_all(
        self,
        values: dict[str, Any],
        data: Any = None,
        items: list[Any] | None = None,
        execution: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {k: self.resolve(v, data, items, execution) for k, v in values.items()}
