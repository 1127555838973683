"""Node lifecycle hooks.

Definitions may carry hook code for on_create, on_delete, on_update,
on_connect, on_disconnect, on_duplicate and on_execute. Hook code runs in the
script sandbox; failures are logged and swallowed so they never block the
editor action or the node execution that triggered them.
"""

from __future__ import annotations

import logging
from types import SimpleNamespace
from typing import Any

from nodeflow.core.graph_schema import LifecycleHook, NodeDefinition
from nodeflow.sandbox.executor import HOOK_PARAMETERS, ScriptSandbox, wrap_value

logger = logging.getLogger(__name__)


class NodeHooksExecutor:
    """Run lifecycle hook code from node definitions."""

    def __init__(self, sandbox: ScriptSandbox | None = None, timeout: float | None = 5.0):
        self.sandbox = sandbox or ScriptSandbox()
        self.timeout = timeout

    def _hook_helpers(self, definition: NodeDefinition):
        prefix = f"[{definition.id} hook]"
        return SimpleNamespace(
            log=lambda *args: logger.info(f"{prefix} {' '.join(str(a) for a in args)}"),
            warn=lambda *args: logger.warning(f"{prefix} {' '.join(str(a) for a in args)}"),
            error=lambda *args: logger.error(f"{prefix} {' '.join(str(a) for a in args)}"),
        )

    async def execute_hook(
        self,
        hook: LifecycleHook | str,
        definition: NodeDefinition,
        context: dict[str, Any] | None = None,
    ) -> Any:
        """
        Run one hook if the definition has code for it.

        Returns:
            The hook's return value, or None when absent or failed
        """
        hook = LifecycleHook(hook)
        code = definition.lifecycle_hooks.get(hook)
        if not code:
            return None

        bindings = {name: wrap_value((context or {}).get(name)) for name in HOOK_PARAMETERS}
        helpers = self._hook_helpers(definition)
        bindings["helpers"] = helpers
        try:
            return await self.sandbox.run(
                code, bindings, HOOK_PARAMETERS, timeout=self.timeout, log=helpers.log
            )
        except Exception as e:
            logger.warning(f"Hook {hook.value} failed for '{definition.id}': {e}")
            return None

    async def on_create(self, definition: NodeDefinition, node: Any, workflow: Any = None) -> Any:
        return await self.execute_hook(
            LifecycleHook.ON_CREATE, definition, {"node": node, "workflow": workflow}
        )

    async def on_delete(self, definition: NodeDefinition, node: Any, workflow: Any = None) -> Any:
        return await self.execute_hook(
            LifecycleHook.ON_DELETE, definition, {"node": node, "workflow": workflow}
        )

    async def on_update(
        self,
        definition: NodeDefinition,
        node: Any,
        old_properties: dict[str, Any],
        new_properties: dict[str, Any],
        workflow: Any = None,
    ) -> Any:
        return await self.execute_hook(
            LifecycleHook.ON_UPDATE,
            definition,
            {
                "node": node,
                "workflow": workflow,
                "old_properties": old_properties,
                "new_properties": new_properties,
            },
        )

    async def on_connect(
        self,
        definition: NodeDefinition,
        source_node: Any,
        target_node: Any,
        connection: Any,
        workflow: Any = None,
    ) -> Any:
        return await self.execute_hook(
            LifecycleHook.ON_CONNECT,
            definition,
            {
                "source_node": source_node,
                "target_node": target_node,
                "connection": connection,
                "workflow": workflow,
            },
        )

    async def on_disconnect(
        self,
        definition: NodeDefinition,
        source_node: Any,
        target_node: Any,
        connection: Any,
        workflow: Any = None,
    ) -> Any:
        return await self.execute_hook(
            LifecycleHook.ON_DISCONNECT,
            definition,
            {
                "source_node": source_node,
                "target_node": target_node,
                "connection": connection,
                "workflow": workflow,
            },
        )

    async def on_duplicate(
        self, definition: NodeDefinition, original_node: Any, new_node: Any, workflow: Any = None
    ) -> Any:
        return await self.execute_hook(
            LifecycleHook.ON_DUPLICATE,
            definition,
            {"original_node": original_node, "new_node": new_node, "workflow": workflow},
        )

    async def on_execute(self, definition: NodeDefinition, context: dict[str, Any]) -> Any:
        """Called by the node executor before each execution."""
        return await self.execute_hook(LifecycleHook.ON_EXECUTE, definition, context)
