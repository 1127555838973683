"""Sandboxed execution for node-authored scripts and remote node dispatch.

Two execution paths:
1. ScriptSandbox - Runs node code in-process as the body of an async function
   with a fixed parameter list, compiled by RestrictedPython with guarded
   attribute/item access and a wall-clock timeout
2. RemoteNodeClient - POSTs the node context to a server-side execution endpoint

SECURITY: The in-process sandbox blocks imports, underscore names, frame and
code object attributes and ambient builtins such as open/eval. It is not a
boundary against hostile code that is able to exhaust CPU without awaiting;
use the server environment for that.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import json
import operator
import re
from collections.abc import Callable
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel
from RestrictedPython import compile_restricted_exec, safe_builtins
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
)
from RestrictedPython.transformer import RestrictingNodeTransformer

# Fixed parameter lists, in call order
NODE_PARAMETERS = (
    "node",
    "data",
    "items",
    "execution",
    "$",
    "$input",
    "$json",
    "$node",
    "helpers",
    "services",
    "env",
)
CLIENT_PARAMETERS = ("node", "data", "items", "$input", "$json", "$node", "helpers")
HOOK_PARAMETERS = (
    "node",
    "workflow",
    "old_properties",
    "new_properties",
    "source_node",
    "target_node",
    "connection",
    "original_node",
    "new_node",
    "context",
    "helpers",
)

# "$"-prefixed names are not Python identifiers; scripts may use either form
DOLLAR_ALIASES = {
    "$": "dollar",
    "$input": "dollar_input",
    "$json": "dollar_json",
    "$node": "dollar_node",
}

SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float",
    "frozenset", "int", "isinstance", "len", "list", "map", "max", "min", "next",
    "range", "repr", "reversed", "round", "set", "slice", "sorted", "str",
    "sum", "tuple", "zip", "True", "False", "None",
    "Exception", "ValueError", "TypeError", "KeyError", "IndexError", "RuntimeError",
    "ZeroDivisionError", "StopIteration", "AttributeError", "ArithmeticError",
)

# Frame, code, traceback and generator internals reach the interpreter's globals
BLOCKED_ATTRIBUTES = frozenset({
    "format", "format_map", "mro",
    "gi_frame", "gi_code", "gi_yieldfrom", "gi_running", "gi_suspended",
    "cr_frame", "cr_code", "cr_await", "cr_origin", "cr_running", "cr_suspended",
    "ag_frame", "ag_code", "ag_await", "ag_running",
    "f_back", "f_builtins", "f_code", "f_globals", "f_locals", "f_trace", "f_lasti",
    "tb_frame", "tb_next", "tb_lasti",
    "co_code", "co_consts", "co_names",
})

SCRIPT_FILENAME = "<node-script>"

_STRING_LITERAL = re.compile(
    r"""('''[\s\S]*?'''|\"\"\"[\s\S]*?\"\"\"|'(?:\\.|[^'\\\n])*'|"(?:\\.|[^"\\\n])*")"""
)
_DOLLAR_NAME = re.compile(r"\$(input|json|node)\b|\$(?![A-Za-z0-9_{])")
_ERROR_LINE = re.compile(r"^Line (\d+):")

_INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
    "@=": operator.imatmul,
}

# Destination of print() for the script currently running in this context
print_sink: ContextVar[Callable[[str], None] | None] = ContextVar("nodeflow_print_sink", default=None)


class SandboxError(Exception):
    """Error in sandbox execution."""

    pass


class UnsafeCodeError(SandboxError):
    """Script uses a construct the sandbox does not allow."""

    pass


class ScriptTimeoutError(SandboxError):
    """Script exceeded its wall-clock budget."""

    pass


class RemoteExecutionError(Exception):
    """Server-side execution endpoint reported a failure."""

    def __init__(self, message: str, logs: list[dict] | None = None):
        super().__init__(message)
        self.logs = logs or []


class AttrDict(dict):
    """Dict with attribute-style read access.

    data.name reads data["name"]; a missing key reads as None. Keys that
    collide with dict methods (items, keys, values, get, ...) must be read with
    subscription.
    """

    # Lets the restricted write guard hand the dict to scripts unwrapped
    _guarded_writes = True

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)
        return self.get(name)

    def __setattr__(self, name: str, value: Any) -> None:
        self[name] = value


def wrap_value(value: Any) -> Any:
    """Deep-copy JSON-like data into AttrDict/list form for script access."""
    if isinstance(value, dict):
        return AttrDict({k: wrap_value(v) for k, v in value.items()})
    if isinstance(value, list | tuple):
        return [wrap_value(v) for v in value]
    return value


def unwrap_value(value: Any) -> Any:
    """Convert script results back to plain dicts and lists."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {k: unwrap_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [unwrap_value(v) for v in value]
    return value


def rewrite_dollar_names(source: str) -> str:
    """Replace $, $input, $json and $node outside string literals."""
    parts = _STRING_LITERAL.split(source)
    for i in range(0, len(parts), 2):
        parts[i] = _DOLLAR_NAME.sub(
            lambda m: DOLLAR_ALIASES["$" + (m.group(1) or "")], parts[i]
        )
    return "".join(parts)


def python_name(parameter: str) -> str:
    return DOLLAR_ALIASES.get(parameter, parameter)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, bytes):
            return obj.decode("utf-8", errors="replace")
        return super().default(obj)


def safe_json_dumps(obj: Any, **kwargs: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder, **kwargs)


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


# ========== Runtime guards ==========


def guarded_getattr(obj: Any, name: str, *default: Any) -> Any:
    """Attribute read guard; compiled scripts call this for every obj.name."""
    if name.startswith("_") or name in BLOCKED_ATTRIBUTES:
        raise UnsafeCodeError(f"access to attribute '{name}' is not allowed")
    return getattr(obj, name, *default)


def guarded_getitem(obj: Any, key: Any) -> Any:
    """Subscript guard; dunder string keys are refused."""
    if isinstance(key, str) and key.startswith("__"):
        raise UnsafeCodeError(f"access to key '{key}' is not allowed")
    return obj[key]


def inplace_operation(op: str, target: Any, value: Any) -> Any:
    return _INPLACE_OPERATORS[op](target, value)


def apply_call(function: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return function(*args, **kwargs)


class LogPrinter:
    """print() target for compiled scripts.

    Each line goes to the sink bound for the running script (the node's log);
    `printed` returns everything printed so far in the current function.
    """

    def __init__(self, _getattr_: Any = None):
        self.lines: list[str] = []

    def _call_print(self, *objects: Any, sep: str | None = " ", **kwargs: Any) -> None:
        message = (" " if sep is None else sep).join(str(o) for o in objects)
        self.lines.append(message)
        sink = print_sink.get()
        if sink is not None:
            sink(message)

    def __call__(self) -> str:
        return "".join(line + "\n" for line in self.lines)


class NodeScriptPolicy(RestrictingNodeTransformer):
    """RestrictedPython policy for node code.

    Adds async def and await on top of the default policy and refuses imports,
    scope declarations and interpreter-internal attributes at compile time.
    """

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> ast.AST:
        return self.visit_FunctionDef(node)

    def visit_Await(self, node: ast.Await) -> ast.AST:
        return self.node_contents_visit(node)

    def visit_Import(self, node: ast.Import) -> ast.AST:
        self.error(node, "import statements are not allowed")
        return node

    def visit_ImportFrom(self, node: ast.ImportFrom) -> ast.AST:
        self.error(node, "import statements are not allowed")
        return node

    def visit_Global(self, node: ast.Global) -> ast.AST:
        self.error(node, "global declarations are not allowed")
        return node

    def visit_Nonlocal(self, node: ast.Nonlocal) -> ast.AST:
        self.error(node, "nonlocal declarations are not allowed")
        return node

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        if node.attr in BLOCKED_ATTRIBUTES:
            self.error(node, f"access to attribute '{node.attr}' is not allowed")
        return super().visit_Attribute(node)


def _body_line(error: str) -> str:
    # Line 1 of the compiled source is the wrapping async def
    return _ERROR_LINE.sub(lambda m: f"line {int(m.group(1)) - 1}:", error)


@dataclass
class SandboxConfig:
    """Configuration for the in-process script sandbox."""

    # Wall-clock limit per script invocation (seconds, None = unbounded)
    timeout: float | None = 30.0

    # Compiled function cache size
    max_cached_scripts: int = 256

    # Log message limit (prevents unbounded log growth from node code)
    max_log_message_bytes: int = 64 * 1024


class ScriptSandbox:
    """
    Compile and run node-authored Python code.

    Node code is the body of an async function: authors write statements and
    use `return`, `await` is available. The fixed parameters are bound by
    name; "$"-prefixed parameter names are rewritten to their aliases.
    """

    FUNCTION_NAME = "nodeflow_script"

    def __init__(self, config: SandboxConfig | None = None):
        self.config = config or SandboxConfig()
        self._cache: dict[tuple[str, tuple[str, ...]], Any] = {}
        self._builtins = dict(safe_builtins)
        for name in ("setattr", "delattr"):
            self._builtins.pop(name, None)
        self._builtins.update({name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES})

    def _globals(self) -> dict[str, Any]:
        return {
            "__builtins__": dict(self._builtins),
            "_getattr_": guarded_getattr,
            "_getitem_": guarded_getitem,
            "_getiter_": iter,
            "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
            "_unpack_sequence_": guarded_unpack_sequence,
            "_write_": full_write_guard,
            "_inplacevar_": inplace_operation,
            "_apply_": apply_call,
            "_print_": LogPrinter,
        }

    def compile_function(self, code: str, parameters: tuple[str, ...] = NODE_PARAMETERS):
        """
        Build the async function for a script body.

        Raises:
            SandboxError: On syntax errors
            UnsafeCodeError: If the body uses blocked constructs
        """
        key = (code, parameters)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        body = rewrite_dollar_names(code).strip("\n")
        if not body.strip():
            body = "pass"
        indented = "\n".join("    " + line for line in body.splitlines())
        signature = ", ".join(python_name(p) for p in parameters)
        source = f"async def {self.FUNCTION_NAME}({signature}):\n{indented}\n"

        try:
            ast.parse(source, filename=SCRIPT_FILENAME)
        except SyntaxError as e:
            line = (e.lineno or 1) - 1
            raise SandboxError(f"Syntax error in node code (line {line}): {e.msg}") from e

        result = compile_restricted_exec(source, filename=SCRIPT_FILENAME, policy=NodeScriptPolicy)
        if result.errors:
            raise UnsafeCodeError("; ".join(_body_line(error) for error in result.errors))

        namespace = self._globals()
        exec(result.code, namespace)
        function = namespace[self.FUNCTION_NAME]

        if len(self._cache) >= self.config.max_cached_scripts:
            self._cache.pop(next(iter(self._cache)))
        self._cache[key] = function
        return function

    async def run(
        self,
        code: str,
        bindings: dict[str, Any],
        parameters: tuple[str, ...] = NODE_PARAMETERS,
        timeout: float | None = None,
        log: Callable[[str], None] | None = None,
    ) -> Any:
        """
        Run a script body with the given bindings.

        Args:
            code: Statements forming the function body
            bindings: Values keyed by parameter name ("$json" or "dollar_json")
            parameters: Parameter list, in order
            timeout: Override for the configured wall-clock limit
            log: Receives each line the script prints

        Returns:
            The script's return value as plain dicts/lists

        Raises:
            SandboxError: Syntax error or blocked construct
            ScriptTimeoutError: Time limit exceeded
            Exception: Anything the script itself raises
        """
        function = self.compile_function(code, parameters)
        args = [
            bindings.get(p, bindings.get(python_name(p))) for p in parameters
        ]
        limit = self.config.timeout if timeout is None else timeout
        token = print_sink.set(log)
        try:
            result = await asyncio.wait_for(function(*args), timeout=limit)
        except TimeoutError as e:
            raise ScriptTimeoutError(f"Node execution timed out after {limit}s") from e
        finally:
            print_sink.reset(token)
        return unwrap_value(result)

    def truncate(self, message: str) -> str:
        return _truncate_output(message, self.config.max_log_message_bytes)


async def run_client_code(
    code: str | None,
    node_context: dict[str, Any],
    input_data: Any,
    helpers: Any,
    sandbox: ScriptSandbox | None = None,
) -> Any:
    """Run a definition's client code with the client parameter list.

    Without code the input is passed through.
    """
    if not code:
        return input_data

    from nodeflow.core.context import InputAccessor, normalize_items

    sandbox = sandbox or ScriptSandbox()
    items = wrap_value(normalize_items(input_data))
    first = items[0] if items else AttrDict()
    bindings = {
        "node": wrap_value(node_context),
        "data": items[0] if items else wrap_value(input_data),
        "items": items,
        "$input": InputAccessor(items),
        "$json": first,
        "$node": first,
        "helpers": helpers,
    }
    return await sandbox.run(code, bindings, CLIENT_PARAMETERS)


class RemoteNodeClient:
    """
    Dispatch node execution to a server-side endpoint over HTTP.

    Request body: {node, inputData, executionContext}
    Response body: {output, logs?} on success, {error, details?, logs?} on failure
    """

    EXECUTE_PATH = "/api/workflow/execute-node"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> RemoteNodeClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def execute(
        self,
        node_context: dict[str, Any],
        input_data: Any,
        execution_context: dict[str, Any],
    ) -> tuple[Any, list[dict]]:
        """
        Execute a node remotely.

        Returns:
            (output, logs) from the endpoint

        Raises:
            RemoteExecutionError: Transport failure or non-2xx response
        """
        payload = safe_json_dumps(
            {"node": node_context, "inputData": input_data, "executionContext": execution_context}
        )
        try:
            response = await self._client.post(
                self.EXECUTE_PATH,
                content=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise RemoteExecutionError(f"Server execution request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"output": body}

        logs = body.get("logs") or []
        if not response.is_success:
            message = (
                body.get("details")
                or body.get("error")
                or f"HTTP {response.status_code}: {response.reason_phrase}"
            )
            raise RemoteExecutionError(str(message), logs)

        return body.get("output"), logs
