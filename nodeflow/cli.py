"""CLI entry point for nodeflow.

Commands:
- nodeflow run: Execute a workflow file
- nodeflow validate: Validate a workflow against the node catalog
- nodeflow visualize: Show a workflow as a tree
- nodeflow nodes: List node definitions
- nodeflow serve: Run the server-side execution endpoint
- nodeflow version: Show version information
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from nodeflow import __version__
from nodeflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from nodeflow.core.catalog import CatalogError, NodeCatalog, load_catalog
from nodeflow.core.config import ConfigError, load_config
from nodeflow.core.graph_engine import WorkflowEngine, summarize_records
from nodeflow.core.graph_schema import NodeDefinition, WorkflowGraph
from nodeflow.helpers import RuntimeServices, build_client_helpers
from nodeflow.logging_config import configure_logging
from nodeflow.sandbox.executor import RemoteNodeClient, run_client_code

console = Console()


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    sys.exit(1)


def _load_workflow(workflow_file: str) -> WorkflowGraph:
    """Load a workflow from YAML or JSON, exiting with a message on errors."""
    try:
        with open(workflow_file, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing workflow file '{escape(workflow_file)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)

    if not isinstance(data, dict):
        _fail(
            f"Error: Invalid content in '{escape(workflow_file)}'. "
            f"Expected a mapping, got {type(data).__name__}."
        )

    try:
        return WorkflowGraph.model_validate(data)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)


def _load_catalog(paths: tuple[str, ...]) -> NodeCatalog:
    try:
        catalog = load_catalog(paths)
    except CatalogError as e:
        _fail(f"Error loading node catalog: {escape(str(e))}")
    for source, message in catalog.load_errors:
        console.print(f"[yellow]Skipped definition in {escape(source)}: {escape(message)}[/yellow]")
    return catalog


def _parse_input(value: str | None) -> Any:
    """JSON text, or @path to a JSON/YAML file."""
    if value is None:
        return None
    if value.startswith("@"):
        path = Path(value[1:])
        if not path.is_file():
            _fail(f"Input file not found: {escape(str(path))}")
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f)
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON input: {escape(str(e))}")


def _console_client_executor(runtime: RuntimeServices):
    """Client-side nodes run in-process; alert/toast print to the console."""

    async def execute(
        node_id: str, definition: NodeDefinition, node_context: dict[str, Any], input_data: Any
    ) -> Any:
        helpers = build_client_helpers(
            runtime,
            alert=lambda message: console.print(
                Panel(escape(str(message)), title=f"Alert: {escape(node_id)}")
            ),
            toast=lambda title, description="", variant="default": console.print(
                f"[bold]{escape(str(title))}[/bold] {escape(str(description))}"
            ),
        )
        return await run_client_code(
            definition.client_execution_code, node_context, input_data, helpers
        )

    return execute


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """nodeflow - workflow graph execution engine."""
    pass


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--catalog", "-c", "catalogs", multiple=True, type=click.Path(exists=True),
              help="Node definition file or directory (repeatable)")
@click.option("--input", "-i", "input_value", help="Initial input as JSON, or @file")
@click.option("--start", "start_node", help="Start node ID (defaults to the first entry node)")
@click.option("--target", "target_node", help="Stop after this node completes")
@click.option("--config", "config_path", type=click.Path(), help="Engine config file")
@click.option("--server-url", help="Server-side execution endpoint")
@click.option("--no-delay", is_flag=True, help="Disable the pause between edges")
@click.option("--json", "as_json", is_flag=True, help="Print records as JSON")
def run(
    workflow_file: str,
    catalogs: tuple[str, ...],
    input_value: str | None,
    start_node: str | None,
    target_node: str | None,
    config_path: str | None,
    server_url: str | None,
    no_delay: bool,
    as_json: bool,
) -> None:
    """Execute a workflow file."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        _fail(escape(str(e)))

    updates: dict[str, Any] = {}
    if no_delay:
        updates["edge_delay_enabled"] = False
    if server_url:
        updates["server_url"] = server_url
    config = config.model_copy(update=updates)
    configure_logging(config.log_level, config.log_format, console=Console(stderr=True))

    workflow = _load_workflow(workflow_file)
    catalog = _load_catalog(catalogs)
    initial_input = _parse_input(input_value)

    start = start_node or next(iter(workflow.entry_nodes()), None)
    if start is None or workflow.get_node(start) is None:
        _fail(f"Start node '{escape(str(start))}' not found in workflow")

    async def execute():
        runtime = RuntimeServices.create(inherit_environment=config.inherit_environment)
        remote = (
            RemoteNodeClient(config.server_url, timeout=config.server_timeout)
            if config.server_url
            else None
        )
        engine = WorkflowEngine(
            workflow,
            catalog,
            config=config,
            client_executor=_console_client_executor(runtime),
            remote_client=remote,
            runtime=runtime,
        )
        try:
            return await engine.execute(start, initial_input, target_node)
        finally:
            await runtime.aclose()
            if remote is not None:
                await remote.aclose()

    records = asyncio.run(execute())
    summary = summarize_records(records)

    if as_json:
        click.echo(
            json.dumps(
                {
                    "records": {nid: r.model_dump(mode="json") for nid, r in records.items()},
                    "summary": summary,
                },
                indent=2,
            )
        )
    else:
        console.print(StatusTableRenderer(console).render_status_table(workflow, records))
        color = "red" if summary["failed"] else "green"
        console.print(
            f"[{color}]{summary['status'].upper()}[/{color}]: "
            f"{summary['successful']} succeeded, {summary['failed']} failed "
            f"in {summary['duration_ms']:.0f} ms"
        )
        if summary["error_node_id"]:
            console.print(
                f"[red]Failed at '{escape(summary['error_node_id'])}': "
                f"{escape(str(summary['error']))}[/red]"
            )

    if summary["failed"]:
        sys.exit(1)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--catalog", "-c", "catalogs", multiple=True, type=click.Path(exists=True),
              help="Node definition file or directory (repeatable)")
def validate(workflow_file: str, catalogs: tuple[str, ...]) -> None:
    """Validate a workflow against the node catalog."""
    workflow = _load_workflow(workflow_file)
    catalog = _load_catalog(catalogs)

    errors = workflow.validate_graph(catalog)
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(workflow.nodes)}")
    console.print(f"  Connections: {len(workflow.connections)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--catalog", "-c", "catalogs", multiple=True, type=click.Path(exists=True),
              help="Node definition file or directory (repeatable)")
def visualize(workflow_file: str, catalogs: tuple[str, ...]) -> None:
    """Visualize a workflow graph in the terminal."""
    workflow = _load_workflow(workflow_file)
    catalog = _load_catalog(catalogs)

    renderer = TerminalGraphRenderer(console, catalog)
    console.print(renderer.render_as_tree(workflow))

    console.print()
    console.print(f"[bold]Nodes:[/] {len(workflow.nodes)}")
    console.print(f"[bold]Connections:[/] {len(workflow.connections)}")
    entries = ", ".join(escape(n) for n in workflow.entry_nodes()) or "(none)"
    console.print(f"[bold]Entry:[/] {entries}")
    terminals = ", ".join(escape(n) for n in sorted(workflow.get_terminal_nodes())) or "(none)"
    console.print(f"[bold]Terminal:[/] {terminals}")

    errors = workflow.validate_graph(catalog)
    if errors:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in errors:
            console.print(f"  [red]• {escape(error)}[/]")
    else:
        console.print("\n[green]✓ Graph is valid[/]")


@main.command()
@click.option("--catalog", "-c", "catalogs", multiple=True, type=click.Path(exists=True),
              help="Node definition file or directory (repeatable)")
def nodes(catalogs: tuple[str, ...]) -> None:
    """List available node definitions."""
    catalog = _load_catalog(catalogs)

    table = Table(title="Node Definitions")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Category", style="magenta")
    table.add_column("Environment")
    table.add_column("Outputs")

    for definition in sorted(catalog.all(), key=lambda d: (d.category, d.id)):
        outputs = ", ".join(port.id for port in definition.outputs) or "-"
        table.add_row(
            escape(definition.id),
            escape(definition.name),
            escape(definition.category),
            definition.execution_environment.value,
            escape(outputs),
        )

    console.print(table)


@main.command()
@click.option("--catalog", "-c", "catalogs", multiple=True, type=click.Path(exists=True),
              help="Node definition file or directory (repeatable)")
@click.option("--config", "config_path", type=click.Path(), help="Engine config file")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8000, type=int, help="Port to bind to")
def serve(catalogs: tuple[str, ...], config_path: str | None, host: str, port: int) -> None:
    """Run the server-side node execution endpoint."""
    import uvicorn

    from nodeflow.server.app import create_app

    try:
        config = load_config(config_path)
    except ConfigError as e:
        _fail(escape(str(e)))
    configure_logging(config.log_level, config.log_format)

    catalog = _load_catalog(catalogs)
    console.print(f"[blue]Serving {len(catalog)} node definitions on http://{host}:{port}[/blue]")
    uvicorn.run(create_app(catalog, config), host=host, port=port)


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"nodeflow v{__version__}")
    console.print("Workflow graph execution engine")


if __name__ == "__main__":
    main()
