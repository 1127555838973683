"""Queue-driven workflow graph execution engine.

This module walks a workflow graph breadth-first from a start node:
- FIFO queue of (node, input, handle) entries in enqueue order
- A processed set keeps ordinary nodes to one execution per run
- Conditional nodes pick their outgoing handle from output["path"]
- Merge nodes wait until every declared input handle has a value
- Error outputs follow the "error" handle, or halt the run (fail closed)

A run never raises for node failures: the record map is always returned,
possibly partial, and consumers check per-node status.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any

from nodeflow.core.catalog import NodeCatalog
from nodeflow.core.config import EngineConfig
from nodeflow.core.context import build_context_by_name
from nodeflow.core.events import EngineEvents
from nodeflow.core.graph_schema import (
    DEFAULT_HANDLE,
    ERROR_HANDLE,
    Connection,
    ExecutionRecord,
    NodeDefinition,
    NodeInstance,
    NodeStatus,
    WorkflowGraph,
    _utc_now,
)
from nodeflow.core.node_executor import ClientExecutor, NodeExecutor, is_error_output
from nodeflow.helpers import RuntimeServices
from nodeflow.logging_config import trace_scope
from nodeflow.sandbox.executor import RemoteNodeClient

logger = logging.getLogger(__name__)


@dataclass
class QueueItem:
    node_id: str
    input_data: Any = None
    source_handle: str = DEFAULT_HANDLE


def item_count(output: Any) -> int:
    """Items carried along an edge: list length, 0 for None, otherwise 1."""
    if isinstance(output, list):
        return len(output)
    return 0 if output is None else 1


def summarize_records(records: dict[str, ExecutionRecord]) -> dict[str, Any]:
    """Aggregate counts, duration and overall status for a run."""
    statuses = [r.status for r in records.values()]
    failed = [r for r in records.values() if r.status == NodeStatus.FAILED]

    duration_ms = 0.0
    if records:
        started = min(r.started_at for r in records.values())
        finished = max(r.finished_at or r.started_at for r in records.values())
        duration_ms = (finished - started).total_seconds() * 1000

    return {
        "total": len(records),
        "successful": statuses.count(NodeStatus.SUCCESS),
        "failed": len(failed),
        "running": statuses.count(NodeStatus.RUNNING),
        "duration_ms": duration_ms,
        "error_node_id": failed[-1].node_id if failed else None,
        "error": failed[-1].error if failed else None,
        "status": "error" if failed else "success",
    }


class WorkflowEngine:
    """
    Execute a workflow graph from a start node.

    Key Features:
    - Per-run state only: records, pending merges, execution counter
    - One RuntimeServices per run, shared by every node and sub-workflow
    - Bounded by config.max_node_executions so cycles always terminate
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        catalog: NodeCatalog,
        events: EngineEvents | None = None,
        config: EngineConfig | None = None,
        client_executor: ClientExecutor | None = None,
        remote_client: RemoteNodeClient | None = None,
        services: Any = None,
        runtime: RuntimeServices | None = None,
        depth: int = 0,
    ):
        self.graph = graph
        self.catalog = catalog
        self.events = events or EngineEvents()
        self.config = config or EngineConfig()
        self.client_executor = client_executor
        self.remote_client = remote_client
        self.services = services
        self.runtime = runtime
        self.depth = depth

        self.records: dict[str, ExecutionRecord] = {}
        self._pending_merges: dict[str, dict[str, Any]] = {}
        self._execution_count = 0
        self._active_runtime: RuntimeServices | None = None

    # ========== Public API ==========

    async def execute(
        self,
        start_node_id: str,
        initial_input: Any = None,
        target_node_id: str | None = None,
    ) -> dict[str, ExecutionRecord]:
        """
        Run the workflow.

        Args:
            start_node_id: Node to start from
            initial_input: Input for the start node (defaults to {})
            target_node_id: Stop as soon as this node completes

        Returns:
            Map of node id to ExecutionRecord (partial if the run halted)
        """
        run_id = uuid.uuid4().hex[:12]
        self.records = {}
        self._pending_merges = {}
        self._execution_count = 0

        owns_runtime = self.runtime is None
        runtime = self.runtime or RuntimeServices.create(
            inherit_environment=self.config.inherit_environment
        )
        self._active_runtime = runtime

        executor = NodeExecutor(
            config=self.config,
            events=self.events,
            client_executor=self.client_executor,
            remote_client=self.remote_client,
            services=self.services,
            runtime=runtime,
            execute_from_node=self.execute_from_node,
        )

        logger.info(
            f"Starting workflow '{self.graph.name}' from node '{start_node_id}' (run {run_id})"
        )
        with trace_scope(run_id=run_id, workflow_id=self.graph.id):
            try:
                await self._run(
                    executor,
                    start_node_id,
                    {} if initial_input is None else initial_input,
                    target_node_id,
                )
            finally:
                self._active_runtime = None
                if owns_runtime:
                    await runtime.aclose()

        summary = summarize_records(self.records)
        logger.info(
            f"Workflow '{self.graph.name}' finished: {summary['successful']} succeeded, "
            f"{summary['failed']} failed"
        )
        await self.events.emit("on_workflow_end")
        return self.records

    async def execute_from_node(self, node_id: str, input_data: Any = None) -> dict[str, Any]:
        """
        Run a sub-workflow on the same graph starting at node_id.

        The child shares this run's catalog, config, services and runtime.

        Returns:
            The child's records as plain dicts keyed by node id

        Raises:
            ValueError: If node_id is not in the graph
            RuntimeError: If the nesting limit is exceeded
        """
        if self.depth >= self.config.max_subflow_depth:
            raise RuntimeError(
                f"Maximum sub-workflow depth ({self.config.max_subflow_depth}) exceeded"
            )
        if self.graph.get_node(node_id) is None:
            raise ValueError(f"Target node with ID '{node_id}' not found in workflow")

        logger.info(f"Starting sub-workflow from node '{node_id}' (depth {self.depth + 1})")
        child = WorkflowEngine(
            self.graph,
            self.catalog,
            events=dataclasses.replace(
                self.events, on_workflow_end=None, on_execution_update=None
            ),
            config=self.config,
            client_executor=self.client_executor,
            remote_client=self.remote_client,
            services=self.services,
            runtime=self._active_runtime or self.runtime,
            depth=self.depth + 1,
        )
        records = await child.execute(node_id, {} if input_data is None else input_data)
        return {nid: record.model_dump(mode="json") for nid, record in records.items()}

    # ========== Scheduling ==========

    async def _run(
        self,
        executor: NodeExecutor,
        start_node_id: str,
        initial_input: Any,
        target_node_id: str | None,
    ) -> None:
        queue: deque[QueueItem] = deque([QueueItem(start_node_id, initial_input)])
        processed: set[str] = set()

        while queue:
            item = queue.popleft()
            node = self.graph.get_node(item.node_id)
            definition = self.catalog.get(node.type) if node else None
            can_reprocess = definition is not None and definition.can_reprocess

            if item.node_id in processed and not can_reprocess:
                logger.debug(f"Node '{item.node_id}' already processed, skipping")
                continue

            if self._execution_count >= self.config.max_node_executions:
                message = (
                    f"Maximum node executions ({self.config.max_node_executions}) "
                    f"exceeded at node '{item.node_id}'"
                )
                logger.error(message)
                await self.events.emit("on_error", item.node_id, {"error": message, "nodeId": item.node_id})
                return
            self._execution_count += 1

            output = await self._execute_node(executor, item, node, definition)
            if not can_reprocess:
                processed.add(item.node_id)
            record = self.records[item.node_id]

            if is_error_output(output):
                error_connections = self.graph.connections_from(item.node_id, ERROR_HANDLE)
                if not error_connections:
                    logger.error(f"Execution halted. No error path for node '{item.node_id}'")
                    return
                logger.warning(f"Node '{item.node_id}' failed, following error path")
                for connection in error_connections:
                    await self._follow(connection, output, record, queue)
                continue

            if target_node_id and item.node_id == target_node_id:
                logger.info(f"Reached target node '{target_node_id}'")
                return

            handle = self._next_handle(definition, output)
            for connection in self.graph.connections_from(item.node_id, handle):
                await self._follow(connection, output, record, queue)

    def _next_handle(self, definition: NodeDefinition | None, output: Any) -> str:
        if (
            definition is not None
            and definition.is_conditional_node
            and isinstance(output, dict)
            and output.get("path")
        ):
            return str(output["path"])
        return DEFAULT_HANDLE

    async def _execute_node(
        self,
        executor: NodeExecutor,
        item: QueueItem,
        node: NodeInstance | None,
        definition: NodeDefinition | None,
    ) -> Any:
        record = ExecutionRecord(
            node_id=item.node_id,
            node_type=node.type if node else None,
            input=item.input_data,
        )
        self.records[item.node_id] = record
        await self.events.emit("on_node_start", item.node_id)

        with trace_scope(node_id=item.node_id):
            if node is None or definition is None:
                output = await self._missing_node(item, node, record)
            else:
                execution_by_name = build_context_by_name(self.records, self.graph)
                output = await executor.execute(
                    node, definition, item.input_data, execution_by_name, record
                )

        await self.events.emit(
            "on_node_end", item.node_id, item.input_data, output, record.duration_ms, list(record.logs)
        )
        await self.events.emit("on_execution_update", build_context_by_name(self.records, self.graph))
        return output

    async def _missing_node(
        self, item: QueueItem, node: NodeInstance | None, record: ExecutionRecord
    ) -> dict[str, Any]:
        if node is None:
            message = f"Node with ID '{item.node_id}' not found"
        else:
            message = f"No definition found for node type '{node.type}'"
        logger.error(message)

        output = {"error": message, "nodeId": item.node_id, "nodeType": record.node_type}
        record.add_log("error", message)
        record.output = output
        record.status = NodeStatus.FAILED
        record.error = message
        record.finished_at = _utc_now()
        await self.events.emit("on_error", item.node_id, output)
        return output

    # ========== Edges and merges ==========

    async def _follow(
        self,
        connection: Connection,
        output: Any,
        source_record: ExecutionRecord,
        queue: deque[QueueItem],
    ) -> None:
        await self.events.emit(
            "on_edge_traverse", connection.id, source_record.duration_ms, item_count(output)
        )
        if self.config.edge_delay_enabled and self.config.edge_delay > 0:
            await asyncio.sleep(self.config.edge_delay)

        target = self.graph.get_node(connection.target_node_id)
        if target is None:
            logger.warning(
                f"Connection '{connection.id}' targets unknown node '{connection.target_node_id}'"
            )
            return

        definition = self.catalog.get(target.type)
        if definition is not None and definition.is_merge:
            slots = self._pending_merges.setdefault(target.id, {})
            slots[connection.target_handle] = output
            if self._merge_ready(target.id):
                merged = {handle: slots[handle] for handle in self._merge_handles(target.id)}
                del self._pending_merges[target.id]
                logger.debug(f"Merge node '{target.id}' ready with handles {list(merged)}")
                queue.append(QueueItem(target.id, merged, connection.source_handle))
            return

        queue.append(QueueItem(target.id, output, connection.source_handle))

    def _merge_handles(self, node_id: str) -> list[str]:
        """Required input handles for a merge node, from its definition."""
        node = self.graph.get_node(node_id)
        definition = self.catalog.get(node.type) if node else None
        handles = definition.input_handles() if definition else []
        return handles or list(self._pending_merges.get(node_id, {}))

    def _merge_ready(self, node_id: str) -> bool:
        slots = self._pending_merges.get(node_id, {})
        return all(handle in slots for handle in self._merge_handles(node_id))
