"""Single-node execution with environment dispatch.

Order of operations for one node:
1. on_execute lifecycle hook (failures swallowed)
2. "Starting execution of <name>" log entry
3. Property resolution through the expression resolver
4. Dispatch by execution environment: server, client or local (sandbox)
5. Output normalization (body/files backfill) and status bookkeeping

Node-level failures never raise out of execute(); they become
{error, stack, nodeId, nodeType} outputs on a failed record.
"""

from __future__ import annotations

import logging
import traceback
from collections.abc import Awaitable, Callable
from typing import Any

from nodeflow.core.config import EngineConfig
from nodeflow.core.context import InputAccessor, normalize_items
from nodeflow.core.events import EngineEvents
from nodeflow.core.expressions import ERROR_MARKER, ExpressionResolver
from nodeflow.core.graph_schema import (
    ExecutionEnvironment,
    ExecutionRecord,
    LogEntry,
    NodeDefinition,
    NodeInstance,
    NodeStatus,
    _utc_now,
)
from nodeflow.core.hooks import NodeHooksExecutor
from nodeflow.core.retry import RetryHandler
from nodeflow.helpers import RuntimeServices, build_node_helpers
from nodeflow.sandbox.executor import (
    NODE_PARAMETERS,
    AttrDict,
    RemoteExecutionError,
    RemoteNodeClient,
    SandboxConfig,
    ScriptSandbox,
    wrap_value,
)

logger = logging.getLogger(__name__)

# (node_id, definition, node_context, input_data) -> output
ClientExecutor = Callable[[str, NodeDefinition, dict[str, Any], Any], Awaitable[Any]]
ExecuteFromNode = Callable[[str, Any], Awaitable[Any]]

LOG_TYPES = {"log", "info", "warn", "error", "debug"}

# Property values of this type are scripts, never template-resolved
CODE_PROPERTY_TYPE = "code"


def backfill_output(output: Any, input_data: Any) -> Any:
    """Give dict outputs body/files, taken from the input when missing or empty."""
    source = input_data if isinstance(input_data, dict) else {}
    if output is None:
        return {"body": source.get("body") or {}, "files": source.get("files") or {}}
    if isinstance(output, dict):
        output = dict(output)
        if not output.get("body"):
            output["body"] = source.get("body") or {}
        if not output.get("files"):
            output["files"] = source.get("files") or {}
    return output


def script_for(node: NodeInstance, definition: NodeDefinition) -> str | None:
    """
    Code to run for a node.

    The definition's execution_code wins; otherwise a property of type "code"
    (as on code_node) supplies the script from the node's config.
    """
    if definition.execution_code:
        return definition.execution_code
    for prop in definition.properties:
        if prop.type == CODE_PROPERTY_TYPE:
            value = node.config.get(prop.name, prop.default)
            if isinstance(value, str) and value.strip():
                return value
    return None


def is_error_output(output: Any) -> bool:
    return isinstance(output, dict) and bool(output.get("error"))


def _remote_log_entries(logs: list[Any]) -> list[LogEntry]:
    entries = []
    for item in logs:
        if isinstance(item, dict):
            log_type = item.get("type", "log")
            entries.append(
                LogEntry(
                    type=log_type if log_type in LOG_TYPES else "log",
                    message=str(item.get("message", "")),
                )
            )
        else:
            entries.append(LogEntry(type="log", message=str(item)))
    return entries


class NodeExecutor:
    """Execute one node of a workflow and record the outcome."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        events: EngineEvents | None = None,
        client_executor: ClientExecutor | None = None,
        remote_client: RemoteNodeClient | None = None,
        services: Any = None,
        runtime: RuntimeServices | None = None,
        sandbox: ScriptSandbox | None = None,
        hooks: NodeHooksExecutor | None = None,
        execute_from_node: ExecuteFromNode | None = None,
    ):
        self.config = config or EngineConfig()
        self.events = events or EngineEvents()
        self.client_executor = client_executor
        self.remote_client = remote_client
        self.services = services
        self.runtime = runtime or RuntimeServices()
        self.sandbox = sandbox or ScriptSandbox(SandboxConfig(timeout=self.config.node_timeout))
        self.hooks = hooks or NodeHooksExecutor(self.sandbox)
        self.resolver = ExpressionResolver()
        self.execute_from_node = execute_from_node

    async def execute(
        self,
        node: NodeInstance,
        definition: NodeDefinition,
        input_data: Any,
        execution_by_name: dict[str, Any],
        record: ExecutionRecord,
    ) -> Any:
        """
        Execute a node.

        Returns:
            The normalized output, or an error dict for failed nodes
        """
        items = normalize_items(input_data)

        if definition.lifecycle_hooks:
            await self.hooks.on_execute(
                definition,
                {
                    "node": node.model_dump(mode="json"),
                    "context": {"input": input_data, "execution": execution_by_name},
                },
            )

        record.add_log("info", f"Starting execution of {definition.name}")

        try:
            node_context = self.build_node_context(node, definition, items, execution_by_name, record)

            environment = definition.execution_environment
            if environment == ExecutionEnvironment.SERVER:
                output = await self._execute_server(node_context, input_data, execution_by_name, record)
            elif environment == ExecutionEnvironment.CLIENT:
                output = await self._execute_client(node, definition, node_context, input_data, record)
            else:
                output = await self.run_local(
                    definition, script_for(node, definition), node_context, input_data, execution_by_name, record
                )
        except Exception as e:
            return await self._fail(node, record, e)

        return await self._finalize(node, output, input_data, record)

    # ========== Property resolution ==========

    def build_node_context(
        self,
        node: NodeInstance,
        definition: NodeDefinition,
        items: list[Any],
        execution_by_name: dict[str, Any],
        record: ExecutionRecord | None = None,
    ) -> dict[str, Any]:
        """
        Resolve configured properties into {name: {"value": v}}.

        Declared properties fall back to their default; undeclared config keys
        are resolved and passed through as well.
        """
        first = items[0] if items else {}
        errors_before = len(self.resolver.errors)

        properties: dict[str, dict[str, Any]] = {}
        for prop in definition.properties:
            raw = node.config.get(prop.name, prop.default)
            if prop.type == CODE_PROPERTY_TYPE:
                properties[prop.name] = {"value": raw}
                continue
            properties[prop.name] = {
                "value": self.resolver.resolve(raw, first, items, execution_by_name)
            }
        for key, raw in node.config.items():
            if key not in properties:
                properties[key] = {"value": self.resolver.resolve(raw, first, items, execution_by_name)}

        if record is not None:
            for error in self.resolver.errors[errors_before:]:
                record.add_log("debug", f"{ERROR_MARKER}{error.message} in '{error.expression}'")

        return {
            "id": node.id,
            "name": definition.name,
            "type": node.type,
            "label": node.display_label,
            "properties": properties,
        }

    # ========== Environments ==========

    async def _execute_server(
        self,
        node_context: dict[str, Any],
        input_data: Any,
        execution_by_name: dict[str, Any],
        record: ExecutionRecord,
    ) -> Any:
        if self.remote_client is None:
            raise RemoteExecutionError(
                f"No server endpoint configured for server-side node '{node_context['id']}'"
            )
        try:
            output, logs = await self.remote_client.execute(node_context, input_data, execution_by_name)
        except RemoteExecutionError as e:
            record.logs.extend(_remote_log_entries(e.logs))
            raise
        record.logs.extend(_remote_log_entries(logs))
        return output

    async def _execute_client(
        self,
        node: NodeInstance,
        definition: NodeDefinition,
        node_context: dict[str, Any],
        input_data: Any,
        record: ExecutionRecord,
    ) -> Any:
        if self.client_executor is None:
            record.add_log("warn", "No client executor configured; node skipped")
            return {
                "skipped": True,
                "reason": "Client-side execution not supported in this environment",
            }
        return await self.client_executor(node.id, definition, node_context, input_data)

    async def run_local(
        self,
        definition: NodeDefinition,
        code: str | None,
        node_context: dict[str, Any],
        input_data: Any,
        execution_by_name: dict[str, Any],
        record: ExecutionRecord,
    ) -> Any:
        """
        Run node code in-process, or pass the input through when there is none.

        Raises whatever the script raises; the caller converts it.
        """
        items = normalize_items(input_data)
        if not code:
            record.add_log("info", "Pass-through node (no execution code)")
            return backfill_output(input_data, input_data) if isinstance(input_data, dict) else input_data

        def log(level: str, message: str, args: tuple) -> None:
            record.add_log(level, self.sandbox.truncate(message))

        helpers = build_node_helpers(self.runtime, log, self.execute_from_node)

        if definition.processing_mode == "all":
            data = items
        else:
            data = items[0] if items else input_data

        async def attempt() -> Any:
            wrapped_items = wrap_value(items)
            first = wrapped_items[0] if wrapped_items else AttrDict()
            execution = wrap_value(execution_by_name)
            bindings = {
                "node": wrap_value(node_context),
                "data": wrap_value(data),
                "items": wrapped_items,
                "execution": execution,
                "$": execution,
                "$input": InputAccessor(wrapped_items),
                "$json": first,
                "$node": first,
                "helpers": helpers,
                "services": self.services,
                "env": wrap_value(self.runtime.secrets.get_all_env()),
            }
            return await self.sandbox.run(
                code,
                bindings,
                NODE_PARAMETERS,
                timeout=self.config.node_timeout,
                log=lambda message: log("log", message, ()),
            )

        if not definition.retry_on_fail:
            return await attempt()

        retry_config = RetryHandler.parse_retry_config(definition)

        def on_retry(attempt_number: int, error: BaseException) -> None:
            record.add_log(
                "warn", f"Attempt {attempt_number} failed, retrying ({retry_config.max_retries} max): {error}"
            )

        result = await RetryHandler.execute_with_retry(attempt, retry_config, on_retry)
        if not result.success:
            raise result.error
        if result.attempts > 1:
            record.add_log("info", f"Succeeded after {result.attempts} attempts")
        return result.result

    # ========== Post-processing ==========

    async def _finalize(
        self, node: NodeInstance, output: Any, input_data: Any, record: ExecutionRecord
    ) -> Any:
        output = backfill_output(output, input_data)
        record.output = output
        record.finished_at = _utc_now()

        if is_error_output(output):
            error = output["error"]
            record.status = NodeStatus.FAILED
            record.error = error if isinstance(error, str) else str(error)
            record.add_log("error", f"Node returned an error: {record.error}")
            await self.events.emit("on_error", node.id, output)
        else:
            record.status = NodeStatus.SUCCESS
        return output

    async def _fail(self, node: NodeInstance, record: ExecutionRecord, error: Exception) -> dict:
        message = str(error) or type(error).__name__
        stack = "".join(traceback.format_exception(error))
        logger.debug(f"Node '{node.id}' failed: {message}")

        record.add_log("error", f"Execution failed: {message}")
        record.add_log("error", stack)
        output = {"error": message, "stack": stack, "nodeId": node.id, "nodeType": node.type}
        record.output = output
        record.status = NodeStatus.FAILED
        record.error = message
        record.stack = stack
        record.finished_at = _utc_now()

        await self.events.emit("on_error", node.id, output)
        return output
