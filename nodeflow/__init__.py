"""nodeflow - workflow graph execution engine.

Runs directed graphs of typed nodes: template resolution, sandboxed node
scripts, conditional branching, merges and retries.
"""

__version__ = "0.1.0"
