"""Workflow graph schema definitions using Pydantic models.

Workflows are directed graphs of node instances joined by handle-addressed
connections. Node behaviour comes from a NodeDefinition supplied by the
catalog; the graph itself only stores per-instance configuration.

Design:
- Connections address named output/input handles ("main", "true", "error", ...)
- Definitions are read-only for the duration of a run
- validate_graph() reports problems as a list of strings and never raises
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

import networkx as nx
from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from nodeflow.core.catalog import NodeCatalog

# Plain JSON-compatible values flow between nodes
JsonValue = dict[str, Any] | list[Any] | str | int | float | bool | None

DEFAULT_HANDLE = "main"
ERROR_HANDLE = "error"

# Reserved definition ids with engine-level semantics
MERGE_NODE_TYPE = "merge_node"
CONDITIONAL_NODE_TYPES = frozenset({"if_node", "switch_node", "router_node"})


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ExecutionEnvironment(str, Enum):
    """Where a node's logic runs"""

    LOCAL = "local"  # In-process sandbox (default)
    SERVER = "server"  # Remote execution endpoint
    CLIENT = "client"  # Caller-supplied callback


class NodeStatus(str, Enum):
    """Execution status for a node within one run"""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class LifecycleHook(str, Enum):
    """Lifecycle hook names a definition may carry code for"""

    ON_CREATE = "on_create"
    ON_DELETE = "on_delete"
    ON_UPDATE = "on_update"
    ON_CONNECT = "on_connect"
    ON_DISCONNECT = "on_disconnect"
    ON_DUPLICATE = "on_duplicate"
    ON_EXECUTE = "on_execute"


class NodePort(BaseModel):
    """Named input or output handle on a node definition"""

    id: str
    label: str | None = None
    type: str = "any"


class NodeProperty(BaseModel):
    """Configurable property declared by a node definition"""

    model_config = {"populate_by_name": True}

    name: str
    display_name: str | None = Field(default=None, alias="displayName")
    type: str = "string"
    default: Any = None
    required: bool = False
    options: list[dict[str, Any]] | None = None


def _default_ports() -> list[NodePort]:
    return [NodePort(id=DEFAULT_HANDLE, label="Main")]


class NodeDefinition(BaseModel):
    """
    Static metadata for a node type, owned by the catalog.

    A definition without execution_code is a pass-through node.
    """

    model_config = {"populate_by_name": True}

    id: str
    name: str
    version: int | str = 1
    description: str = ""
    category: str = "other"
    group: str = "Other"

    properties: list[NodeProperty] = Field(default_factory=list)
    inputs: list[NodePort] = Field(default_factory=_default_ports)
    outputs: list[NodePort] = Field(default_factory=_default_ports)

    execution_code: str | None = Field(default=None, alias="executionCode")
    client_execution_code: str | None = Field(default=None, alias="clientExecutionCode")
    execution_environment: ExecutionEnvironment = Field(
        default=ExecutionEnvironment.LOCAL, alias="executionEnvironment"
    )

    is_conditional: bool = Field(default=False, alias="isConditional")
    allow_multiple_executions: bool = Field(default=False, alias="allowMultipleExecutions")

    # Item handling
    processing_mode: Literal["each", "batch", "first", "all"] | None = Field(
        default=None, alias="processingMode"
    )
    batch_size: int = Field(default=100, alias="batchSize", gt=0)
    continue_on_error: bool = Field(default=True, alias="continueOnError")

    # Retry behaviour for in-process execution
    retry_on_fail: bool = Field(default=False, alias="retryOnFail")
    max_retries: int = Field(default=3, alias="maxRetries", ge=0)
    retry_delay: float = Field(default=1.0, alias="retryDelay", ge=0)
    retry_strategy: Literal["linear", "exponential", "fibonacci"] = Field(
        default="exponential", alias="retryStrategy"
    )
    retry_on_errors: list[str] | None = Field(default=None, alias="retryOnErrors")

    lifecycle_hooks: dict[LifecycleHook, str] = Field(
        default_factory=dict, alias="lifecycleHooks"
    )

    @field_validator("execution_environment", mode="before")
    @classmethod
    def normalize_environment(cls, v):
        """Accept legacy environment names ("backend", "both")."""
        if v is None:
            return ExecutionEnvironment.LOCAL
        legacy = {"backend": "server", "both": "local"}
        if isinstance(v, str):
            return legacy.get(v, v)
        return v

    @field_validator("lifecycle_hooks", mode="before")
    @classmethod
    def normalize_hook_names(cls, v):
        """Accept camelCase hook names (onExecute -> on_execute)."""
        if not isinstance(v, dict):
            return v
        normalized = {}
        for key, code in v.items():
            if isinstance(key, str) and key.startswith("on") and not key.startswith("on_"):
                key = "on_" + key[2:].lower()
            normalized[key] = code
        return normalized

    @property
    def is_merge(self) -> bool:
        return self.id == MERGE_NODE_TYPE

    @property
    def is_conditional_node(self) -> bool:
        return self.id in CONDITIONAL_NODE_TYPES or self.is_conditional

    @property
    def can_reprocess(self) -> bool:
        """Whether the scheduler may execute this node more than once per run."""
        return self.is_merge or self.allow_multiple_executions

    def input_handles(self) -> list[str]:
        return [port.id for port in self.inputs]


class Position(BaseModel):
    x: float = 0
    y: float = 0


class NodeInstance(BaseModel):
    """A configured node placed in a workflow graph"""

    id: str
    type: str
    label: str | None = None
    description: str | None = None
    position: Position = Field(default_factory=Position)
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        """Node ids are used as dictionary keys and merge slot names."""
        if not v or not v.strip():
            raise ValueError("Node id must be a non-empty string")
        return v

    @property
    def display_label(self) -> str:
        return self.label or self.id


class Connection(BaseModel):
    """Directed connection from an output handle to an input handle"""

    model_config = {"populate_by_name": True}

    id: str
    source_node_id: str = Field(alias="sourceNodeId")
    source_handle: str = Field(default=DEFAULT_HANDLE, alias="sourceHandle")
    target_node_id: str = Field(alias="targetNodeId")
    target_handle: str = Field(default=DEFAULT_HANDLE, alias="targetHandle")


class LogEntry(BaseModel):
    """Single log line emitted while a node executes"""

    timestamp: datetime = Field(default_factory=_utc_now)
    type: Literal["log", "info", "warn", "error", "debug"] = "log"
    message: str
    args: list[Any] = Field(default_factory=list)


class ExecutionRecord(BaseModel):
    """Per-node, per-run bookkeeping. Created on dequeue, never deleted during a run."""

    node_id: str
    node_type: str | None = None
    input: Any = None
    output: Any = None
    started_at: datetime = Field(default_factory=_utc_now)
    finished_at: datetime | None = None
    status: NodeStatus = NodeStatus.RUNNING
    error: str | None = None
    stack: str | None = None
    logs: list[LogEntry] = Field(default_factory=list)

    @property
    def duration_ms(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def add_log(self, type: str, message: str, *args: Any) -> LogEntry:
        entry = LogEntry(type=type, message=message, args=list(args))
        self.logs.append(entry)
        return entry


class WorkflowGraph(BaseModel):
    """Complete workflow definition"""

    id: str
    name: str
    description: str | None = None

    nodes: list[NodeInstance] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)

    def get_node(self, node_id: str) -> NodeInstance | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def connections_from(self, node_id: str, handle: str = DEFAULT_HANDLE) -> list[Connection]:
        """Outgoing connections for one handle, in declaration order."""
        return [
            c
            for c in self.connections
            if c.source_node_id == node_id and c.source_handle == handle
        ]

    def connections_to(self, node_id: str) -> list[Connection]:
        return [c for c in self.connections if c.target_node_id == node_id]

    def entry_nodes(self) -> list[str]:
        """Nodes with no incoming connections, in declaration order."""
        targets = {c.target_node_id for c in self.connections}
        return [n.id for n in self.nodes if n.id not in targets]

    def validate_graph(self, catalog: NodeCatalog | None = None) -> list[str]:
        """
        Validate graph structure using NetworkX.

        Structural checks always run. When a catalog is given, node types,
        merge inputs and unbounded cycles are checked as well.
        Returns list of validation errors.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids

        seen_connection_ids = set()
        for conn in self.connections:
            if conn.id in seen_connection_ids:
                errors.append(f"Duplicate connection ID: '{conn.id}'")
            seen_connection_ids.add(conn.id)

        for conn in self.connections:
            if conn.source_node_id not in node_ids:
                errors.append(f"Connection {conn.id}: source '{conn.source_node_id}' not found")
            if conn.target_node_id not in node_ids:
                errors.append(f"Connection {conn.id}: target '{conn.target_node_id}' not found")

        if catalog is None:
            return errors

        definitions = {}
        for node in self.nodes:
            definition = catalog.get(node.type)
            if definition is None:
                errors.append(f"Unknown node type '{node.type}' for node '{node.id}'")
            else:
                definitions[node.id] = definition

        # Merge nodes only fire once every declared input handle has a value
        for node_id, definition in definitions.items():
            if not definition.is_merge:
                continue
            wired = {c.target_handle for c in self.connections_to(node_id)}
            for handle in definition.input_handles():
                if handle not in wired:
                    errors.append(
                        f"Merge node '{node_id}': input handle '{handle}' has no incoming connection"
                    )

        # Cycles through single-execution nodes stop at the processed-node guard.
        # Cycles through re-executable nodes have no natural bound.
        MAX_CYCLES_TO_CHECK = 100
        G = self._to_networkx()
        try:
            for cycle_count, cycle in enumerate(nx.simple_cycles(G), start=1):
                if cycle_count > MAX_CYCLES_TO_CHECK:
                    errors.append(
                        f"Too many cycles to validate (>{MAX_CYCLES_TO_CHECK}). "
                        f"Simplify graph structure."
                    )
                    break
                reexecutable = [
                    n for n in cycle if n in definitions and definitions[n].can_reprocess
                ]
                if reexecutable:
                    errors.append(
                        f"Unbounded cycle through re-executable node(s) "
                        f"{', '.join(reexecutable)}: {' -> '.join(cycle)}"
                    )
        except nx.NetworkXError as e:
            errors.append(f"Could not perform cycle detection: {e}")

        return errors

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for conn in self.connections:
            G.add_edge(conn.source_node_id, conn.target_node_id)
        return G

    def get_terminal_nodes(self) -> set[str]:
        """Find nodes with no outgoing connections"""
        G = self._to_networkx()
        return {n for n in G.nodes() if G.out_degree(n) == 0}
