"""FastAPI service for server-side node execution.

Routes:
- POST /api/workflow/execute-node: run one node's code ({node, inputData, executionContext})
- POST /api/workflow/execute: run a whole workflow and return its records
- GET  /api/node-definitions: list the catalog

The execute-node contract is the one RemoteNodeClient speaks: {output, logs} on
success, {error, details?, logs?} with a non-2xx status on failure. Workflows
run through /api/workflow/execute dispatch their server-side nodes back to this
same app in-process.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from nodeflow import __version__
from nodeflow.core.catalog import NodeCatalog
from nodeflow.core.config import EngineConfig
from nodeflow.core.graph_engine import WorkflowEngine, summarize_records
from nodeflow.core.graph_schema import ExecutionRecord, NodeInstance, WorkflowGraph
from nodeflow.core.node_executor import NodeExecutor, backfill_output, script_for
from nodeflow.helpers import RuntimeServices
from nodeflow.sandbox.executor import RemoteNodeClient

logger = logging.getLogger(__name__)

INTERNAL_BASE_URL = "http://nodeflow.internal"


class ExecuteNodeRequest(BaseModel):
    model_config = {"populate_by_name": True}

    node: dict[str, Any] | None = None
    input_data: Any = Field(default=None, alias="inputData")
    execution_context: dict[str, Any] = Field(default_factory=dict, alias="executionContext")


class ExecuteWorkflowRequest(BaseModel):
    model_config = {"populate_by_name": True}

    workflow: WorkflowGraph
    start_node_id: str | None = Field(default=None, alias="startNodeId")
    input: Any = None
    target_node_id: str | None = Field(default=None, alias="targetNodeId")


def _dump_logs(record: ExecutionRecord) -> list[dict[str, Any]]:
    return [entry.model_dump(mode="json") for entry in record.logs]


def _node_instance(node: dict[str, Any]) -> NodeInstance:
    """Rebuild a NodeInstance from a resolved node context."""
    properties = node.get("properties") or {}
    config = {
        name: prop.get("value") if isinstance(prop, dict) else prop
        for name, prop in properties.items()
    }
    return NodeInstance(
        id=str(node.get("id") or "remote"),
        type=str(node["type"]),
        label=node.get("label"),
        config=config,
    )


def create_app(catalog: NodeCatalog | None = None, config: EngineConfig | None = None) -> FastAPI:
    """Build the API application around a catalog and engine config."""
    catalog = catalog or NodeCatalog.builtin()
    config = config or EngineConfig()

    app = FastAPI(
        title="nodeflow",
        description="Server-side node execution for nodeflow workflows",
        version=__version__,
    )

    @app.post("/api/workflow/execute-node")
    async def execute_node(request: ExecuteNodeRequest):
        """Run one node's code with an already-resolved node context."""
        node = request.node
        if not node:
            return JSONResponse(status_code=400, content={"error": "Node data is required"})

        node_type = node.get("type")
        definition = catalog.get(node_type) if node_type else None
        if definition is None:
            return JSONResponse(
                status_code=404, content={"error": f"No definition for node type '{node_type}'"}
            )

        instance = _node_instance(node)
        record = ExecutionRecord(node_id=instance.id, node_type=instance.type, input=request.input_data)
        runtime = RuntimeServices.create(inherit_environment=config.inherit_environment)
        executor = NodeExecutor(config=config, runtime=runtime)
        try:
            output = await executor.run_local(
                definition,
                script_for(instance, definition),
                node,
                request.input_data,
                request.execution_context,
                record,
            )
        except Exception as e:
            logger.error(f"Server execution of '{instance.id}' ({node_type}) failed: {e}")
            record.add_log("error", str(e))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Node execution failed",
                    "details": str(e) or type(e).__name__,
                    "logs": _dump_logs(record),
                },
            )
        finally:
            await runtime.aclose()

        return {
            "output": backfill_output(output, request.input_data),
            "logs": _dump_logs(record),
        }

    @app.post("/api/workflow/execute")
    async def execute_workflow(request: ExecuteWorkflowRequest):
        """Run a workflow to completion (edge delay disabled)."""
        workflow = request.workflow
        errors = [e for e in workflow.validate_graph(catalog) if not e.startswith("Unknown node type")]
        if errors:
            return JSONResponse(
                status_code=400, content={"error": "Invalid workflow", "details": errors}
            )

        start = request.start_node_id or next(iter(workflow.entry_nodes()), None)
        if start is None or workflow.get_node(start) is None:
            return JSONResponse(
                status_code=400, content={"error": f"Start node '{start}' not found in workflow"}
            )

        run_config = config.model_copy(update={"edge_delay_enabled": False})
        async with RemoteNodeClient(
            INTERNAL_BASE_URL,
            timeout=config.server_timeout,
            transport=httpx.ASGITransport(app=app),
        ) as remote:
            engine = WorkflowEngine(workflow, catalog, config=run_config, remote_client=remote)
            records = await engine.execute(start, request.input, request.target_node_id)

        return {
            "records": {nid: r.model_dump(mode="json") for nid, r in records.items()},
            "summary": summarize_records(records),
        }

    @app.get("/api/node-definitions")
    async def list_node_definitions():
        return {"definitions": [d.model_dump(mode="json") for d in catalog.all()]}

    return app
