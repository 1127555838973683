"""Core modules for the nodeflow engine."""

from nodeflow.core.graph_schema import (
    Connection,
    ExecutionEnvironment,
    ExecutionRecord,
    NodeDefinition,
    NodeInstance,
    NodeStatus,
    WorkflowGraph,
)

__all__ = [
    "Connection",
    "ExecutionEnvironment",
    "ExecutionRecord",
    "NodeDefinition",
    "NodeInstance",
    "NodeStatus",
    "WorkflowGraph",
]
