"""CLI UI components for terminal-based workflow visualization."""

from nodeflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer

__all__ = ["StatusTableRenderer", "TerminalGraphRenderer"]
