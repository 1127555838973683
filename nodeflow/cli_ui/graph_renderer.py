"""Terminal rendering of workflow graphs and execution records using Rich."""

from __future__ import annotations

import json
from typing import Any

import networkx as nx
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from nodeflow.core.catalog import NodeCatalog
from nodeflow.core.graph_schema import (
    DEFAULT_HANDLE,
    ERROR_HANDLE,
    Connection,
    ExecutionRecord,
    NodeInstance,
    NodeStatus,
    WorkflowGraph,
)


class TerminalGraphRenderer:
    """
    Renders workflow graphs in the terminal.

    Features:
    - Tree view from the entry nodes, with non-default handles labelled
    - Level view from networkx topological generations
    - Status indicators from execution records

    SECURITY: Labels, ids and handle names are escaped to prevent Rich markup
    injection.
    """

    # Category symbols and colors
    CATEGORY_STYLES = {
        "trigger": ("[>]", "green"),
        "logic": ("[?]", "magenta"),
        "data": ("[ ]", "cyan"),
        "action": ("[*]", "yellow"),
    }
    MERGE_STYLE = ("[M]", "blue")

    STATUS_COLORS = {
        "running": "blue bold",
        "success": "green",
        "failed": "red bold",
    }
    STATUS_MARKS = {"running": " ⟳", "success": " ✓", "failed": " ✗"}

    def __init__(self, console: Console | None = None, catalog: NodeCatalog | None = None):
        self.console = console or Console()
        self.catalog = catalog

    @staticmethod
    def _normalize_status(status: NodeStatus | str | None) -> str | None:
        if isinstance(status, NodeStatus):
            return status.value
        return str(status) if status else None

    def _style_for(self, node: NodeInstance) -> tuple[str, str]:
        definition = self.catalog.get(node.type) if self.catalog else None
        if definition is None:
            return ("[ ]", "white")
        if definition.is_merge:
            return self.MERGE_STYLE
        return self.CATEGORY_STYLES.get(definition.category, ("[ ]", "white"))

    def _node_text(self, node: NodeInstance, statuses: dict[str, Any] | None) -> str:
        symbol, color = self._style_for(node)
        safe_label = escape(node.display_label)
        safe_type = escape(node.type)
        status = self._normalize_status(statuses.get(node.id)) if statuses else None
        if status:
            status_color = self.STATUS_COLORS.get(status, "white")
            mark = self.STATUS_MARKS.get(status, "")
            return f"[{status_color}]{symbol} {safe_label}{mark}[/] [dim]{safe_type}[/]"
        return f"[{color}]{symbol} {safe_label}[/] [dim]{safe_type}[/]"

    def _build_edge_map(self, workflow: WorkflowGraph) -> dict[str, list[Connection]]:
        edge_map: dict[str, list[Connection]] = {n.id: [] for n in workflow.nodes}
        for connection in workflow.connections:
            if connection.source_node_id in edge_map:
                edge_map[connection.source_node_id].append(connection)
        return edge_map

    def render_levels(
        self,
        workflow: WorkflowGraph,
        statuses: dict[str, Any] | None = None,
    ) -> str:
        """Render one line per topological level; cyclic graphs render as a single level."""
        node_map = {n.id: n for n in workflow.nodes}
        try:
            levels = list(nx.topological_generations(workflow._to_networkx()))
        except nx.NetworkXUnfeasible:
            levels = [[n.id for n in workflow.nodes]]

        lines = []
        for index, level in enumerate(levels):
            parts = [self._node_text(node_map[nid], statuses) for nid in level if nid in node_map]
            lines.append("  |  ".join(parts))
            if index < len(levels) - 1:
                lines.append("  v")
        return "\n".join(lines)

    def render_as_tree(
        self,
        workflow: WorkflowGraph,
        statuses: dict[str, Any] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """Render workflow as a Rich Tree rooted at its entry nodes."""
        tree = Tree(f"[bold]{escape(workflow.name)}[/] [dim]({escape(workflow.id)})[/]")
        node_map = {n.id: n for n in workflow.nodes}
        edge_map = self._build_edge_map(workflow)

        entries = workflow.entry_nodes()
        if not entries:
            if not workflow.nodes:
                tree.add("[dim]No nodes[/]")
                return tree
            entries = [workflow.nodes[0].id]

        for node_id in entries:
            self._add_node_to_tree(
                tree, node_map[node_id], statuses, node_map, edge_map, set(), 0, max_depth
            )
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: NodeInstance,
        statuses: dict[str, Any] | None,
        node_map: dict[str, NodeInstance],
        edge_map: dict[str, list[Connection]],
        visited: set,
        depth: int,
        max_depth: int,
    ) -> None:
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (loop)[/]")
            return
        visited.add(node.id)

        branch = parent.add(self._node_text(node, statuses))
        for connection in edge_map.get(node.id, []):
            child = node_map.get(connection.target_node_id)
            if child is None:
                branch.add(f"[red]missing node {escape(connection.target_node_id)}[/]")
                continue

            target = branch
            if connection.source_handle != DEFAULT_HANDLE:
                color = "red" if connection.source_handle == ERROR_HANDLE else "magenta"
                target = branch.add(f"[{color}]({escape(connection.source_handle)})[/]")
            self._add_node_to_tree(
                target, child, statuses, node_map, edge_map, visited.copy(), depth + 1, max_depth
            )


class StatusTableRenderer:
    """Renders execution records as a Rich table.

    SECURITY: All user-controlled strings are escaped.
    """

    OUTPUT_WIDTH = 60

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    @staticmethod
    def _preview(value: Any, width: int) -> str:
        try:
            text = json.dumps(value, default=str)
        except (TypeError, ValueError):
            text = repr(value)
        if len(text) > width:
            text = text[: width - 3] + "..."
        return escape(text)

    def render_status_table(
        self,
        workflow: WorkflowGraph,
        records: dict[str, ExecutionRecord],
        title: str | None = None,
    ) -> Table:
        """One row per executed node, in execution order."""
        table = Table(title=escape(title or f"Run: {workflow.name}"))
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Duration", justify="right")
        table.add_column("Output", max_width=self.OUTPUT_WIDTH)

        for node_id, record in records.items():
            node = workflow.get_node(node_id)
            label = node.display_label if node else node_id

            if record.status == NodeStatus.SUCCESS:
                status_text = "[green]✓ Success[/]"
            elif record.status == NodeStatus.FAILED:
                status_text = "[red]✗ Failed[/]"
            else:
                status_text = "[blue]⟳ Running[/]"

            output = record.error if record.status == NodeStatus.FAILED else record.output
            table.add_row(
                escape(label),
                escape(record.node_type or "?"),
                status_text,
                f"{record.duration_ms:.0f} ms",
                self._preview(output, self.OUTPUT_WIDTH),
            )
        return table
