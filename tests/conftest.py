# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the nodeflow test suite.

This module provides foundational fixtures used across all test modules:
- Node catalogs (built-in definitions plus small test definitions)
- Workflow graph builders
- Engine configuration without edge delays
- Event recorders

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pytest
import yaml

from nodeflow.core.catalog import NodeCatalog
from nodeflow.core.config import EngineConfig
from nodeflow.core.events import EngineEvents
from nodeflow.core.graph_schema import (
    Connection,
    NodeDefinition,
    NodeInstance,
    WorkflowGraph,
)


# =============================================================================
# Logging Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """CLI commands reconfigure the root logger; put it back after each test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep user config files and NODEFLOW_* variables out of tests."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in EngineConfig.model_fields:
        monkeypatch.delenv(f"NODEFLOW_{name.upper()}", raising=False)


# =============================================================================
# Catalog Fixtures
# =============================================================================


TEST_DEFINITIONS = [
    {
        "id": "fail_node",
        "name": "Fail",
        "outputs": [{"id": "main"}, {"id": "error"}],
        "execution_code": 'raise ValueError("boom")',
    },
    {
        "id": "error_output_node",
        "name": "Error Output",
        "execution_code": 'return {"error": "bad input"}',
    },
    {
        "id": "tag_node",
        "name": "Tag",
        "properties": [{"name": "tag", "type": "string", "default": "tagged"}],
        "execution_code": 'return {**data, "tag": node.properties.tag.value}',
    },
    {
        "id": "echo_node",
        "name": "Echo",
        "execution_code": "return data",
    },
    {
        "id": "loop_node",
        "name": "Loop",
        "allow_multiple_executions": True,
        "execution_code": 'return {"count": (data.count or 0) + 1}',
    },
    {
        "id": "passthrough_node",
        "name": "Pass Through",
    },
]


@pytest.fixture
def builtin_catalog() -> NodeCatalog:
    """Catalog with only the packaged built-in definitions."""
    return NodeCatalog.builtin()


@pytest.fixture
def catalog(builtin_catalog: NodeCatalog) -> NodeCatalog:
    """Built-in definitions plus small test definitions."""
    for entry in TEST_DEFINITIONS:
        builtin_catalog.register(NodeDefinition.model_validate(entry))
    return builtin_catalog


@pytest.fixture
def definitions_file(tmp_path: Path) -> Path:
    """YAML file with two custom node definitions."""
    path = tmp_path / "custom_nodes.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "nodes": [
                    {
                        "id": "upper_node",
                        "name": "Upper",
                        "version": 1,
                        "execution_code": 'return {"text": data.text.upper()}',
                    },
                    {
                        "id": "shout_node",
                        "name": "Shout",
                        "version": "2",
                        "category": "data",
                    },
                ]
            }
        )
    )
    return path


# =============================================================================
# Graph Fixtures
# =============================================================================


def make_graph(
    nodes: list[tuple[str, str] | tuple[str, str, dict[str, Any]]],
    connections: list[tuple[str, str] | tuple[str, str, str] | tuple[str, str, str, str]],
    graph_id: str = "wf-test",
) -> WorkflowGraph:
    """
    Build a WorkflowGraph from compact tuples.

    nodes: (id, type) or (id, type, config)
    connections: (source, target[, source_handle[, target_handle]])
    """
    node_models = []
    for entry in nodes:
        node_id, node_type = entry[0], entry[1]
        config = entry[2] if len(entry) > 2 else {}
        node_models.append(NodeInstance(id=node_id, type=node_type, label=node_id, config=config))

    connection_models = []
    for index, entry in enumerate(connections):
        source, target = entry[0], entry[1]
        source_handle = entry[2] if len(entry) > 2 else "main"
        target_handle = entry[3] if len(entry) > 3 else "main"
        connection_models.append(
            Connection(
                id=f"e{index}-{source}-{target}",
                source_node_id=source,
                target_node_id=target,
                source_handle=source_handle,
                target_handle=target_handle,
            )
        )

    return WorkflowGraph(id=graph_id, name="Test Workflow", nodes=node_models, connections=connection_models)


@pytest.fixture
def graph_builder():
    """Expose make_graph to tests."""
    return make_graph


@pytest.fixture
def adult_check_graph() -> WorkflowGraph:
    """Trigger -> If(age >= 18) -> Adult on "true", Minor on "false"."""
    return make_graph(
        nodes=[
            ("trigger", "manual_trigger"),
            (
                "check",
                "if_node",
                {"field": "age", "operator": "greaterOrEqual", "value": "18", "value_type": "number"},
            ),
            ("adult", "tag_node", {"tag": "adult"}),
            ("minor", "tag_node", {"tag": "minor"}),
        ],
        connections=[
            ("trigger", "check"),
            ("check", "adult", "true"),
            ("check", "minor", "false"),
        ],
    )


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def fast_config() -> EngineConfig:
    """Engine config without the edge traversal pause."""
    return EngineConfig(edge_delay_enabled=False, node_timeout=5.0)


class EventRecorder:
    """Collects engine events in order."""

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def of(self, name: str) -> list[tuple]:
        return [args for n, args in self.calls if n == name]

    def events(self) -> EngineEvents:
        def record(name: str):
            return lambda *args: self.calls.append((name, args))

        return EngineEvents(
            on_node_start=record("on_node_start"),
            on_node_end=record("on_node_end"),
            on_edge_traverse=record("on_edge_traverse"),
            on_workflow_end=record("on_workflow_end"),
            on_execution_update=record("on_execution_update"),
            on_error=record("on_error"),
        )


@pytest.fixture
def event_recorder() -> EventRecorder:
    return EventRecorder()
