"""Evaluation context shared by the expression resolver and node code.

Both build the same view of a node's input: the normalized item list, the
first item, an $input accessor and the label-keyed execution map.
"""

from __future__ import annotations

from typing import Any

from nodeflow.core.graph_schema import ExecutionRecord, WorkflowGraph


def normalize_items(input_data: Any) -> list[Any]:
    """A list stays a list, None becomes [], anything else becomes [value]."""
    if input_data is None:
        return []
    if isinstance(input_data, list):
        return input_data
    return [input_data]


class InputAccessor:
    """The $input binding: first(), last(), all() and item(i) over the items."""

    def __init__(self, items: list[Any]):
        self._items = items

    def first(self) -> Any:
        return self._items[0] if self._items else None

    def last(self) -> Any:
        return self._items[-1] if self._items else None

    def all(self) -> list[Any]:
        return self._items

    def item(self, index: int) -> Any:
        if -len(self._items) <= index < len(self._items):
            return self._items[index]
        return None

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"InputAccessor({len(self._items)} items)"


def build_context_by_name(
    records: dict[str, ExecutionRecord], graph: WorkflowGraph
) -> dict[str, dict[str, Any]]:
    """
    Project execution records onto node labels for expression lookup.

    Returns:
        {label: {"input": ..., "output": ..., "files": ...}}; later records win
        when two nodes share a label
    """
    by_name: dict[str, dict[str, Any]] = {}
    for node_id, record in records.items():
        node = graph.get_node(node_id)
        label = node.display_label if node else node_id
        output = record.output
        files = output.get("files", {}) if isinstance(output, dict) else {}
        by_name[label] = {"input": record.input, "output": output, "files": files}
    return by_name
