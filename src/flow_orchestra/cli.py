"""CLI interface for flow-orchestra (``flow-orchestra`` command).

Provides commands for running and validating workflow files and for reading
run event logs.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from flow_orchestra import __version__
from flow_orchestra.config import load_settings
from flow_orchestra.engine import WorkflowEngine
from flow_orchestra.errors import ValidationError
from flow_orchestra.events import EventEmitter, EventType, JSONLSink, read_events_from_jsonl
from flow_orchestra.logging import init_logging
from flow_orchestra.workflow_loader import load_workflow


class ClickEchoHandler(logging.Handler):
    """Write log records to the current stderr through click."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record), err=True)
        except Exception:
            self.handleError(record)


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """flow-orchestra CLI - run integration workflows as node/edge graphs."""
    pass


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, path_type=Path))
@click.option("--input", "-i", "input_json", help="Initial input as JSON string")
@click.option("--start-from", "-s", multiple=True, help="Start node id (repeatable); defaults to trigger nodes")
@click.option("--retries", type=click.IntRange(min=0), help="Default retry bound for nodes without one")
@click.option("--retry-delay", type=click.FloatRange(min=0), help="Base backoff delay in seconds")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Per-attempt timeout in seconds")
@click.option("--events", "events_path", type=click.Path(path_type=Path), help="Write run events to this JSONL file")
@click.option("--join-threshold", type=click.Choice(["distinct_sources", "in_degree"]),
              default="distinct_sources", show_default=True, help="When join nodes release")
@click.option("--allow-cycles", is_flag=True, help="Run cyclic graphs instead of rejecting them")
@click.option("--max-steps", type=click.IntRange(min=1), help="Stop after this many work items")
@click.option("--no-remote", is_flag=True, help="Never use the remote execution service")
@click.option("--log-level", default=None, help="Log level (defaults to FLOW_LOG_LEVEL or INFO)")
def run(
    workflow_file: Path,
    input_json: str | None,
    start_from: tuple[str, ...],
    retries: int | None,
    retry_delay: float | None,
    timeout: float | None,
    events_path: Path | None,
    join_threshold: str,
    allow_cycles: bool,
    max_steps: int | None,
    no_remote: bool,
    log_level: str | None,
) -> None:
    """Run a workflow file and print the results map as JSON.

    Exits with status 1 when the workflow is invalid and 2 when any node
    ended in an error.
    """
    settings = load_settings()
    init_logging(log_level or settings.log_level, ClickEchoHandler())

    initial_input = {}
    if input_json:
        try:
            initial_input = json.loads(input_json)
        except json.JSONDecodeError:
            click.echo(f"Error: Invalid JSON in input: {input_json}", err=True)
            sys.exit(1)

    try:
        workflow = load_workflow(workflow_file)
    except ValidationError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    emitter = EventEmitter()
    if events_path:
        emitter.add_sink(JSONLSink(events_path))

    async def _run() -> dict:
        engine = WorkflowEngine(emitter=emitter, settings=settings)
        try:
            return await engine.run(workflow.nodes, workflow.edges, {
                "initial_input": initial_input,
                "start_from": list(start_from),
                "retries": retries,
                "retry_delay": retry_delay,
                "timeout": timeout,
                "join_threshold": join_threshold,
                "allow_cycles": allow_cycles,
                "max_steps": max_steps,
                "use_remote": not no_remote,
            })
        finally:
            await engine.close()

    try:
        results = asyncio.run(_run())
    except ValidationError as e:
        click.echo(f"❌ Invalid workflow: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(results, indent=2, default=str))
    failed = [node_id for node_id, r in results.items() if isinstance(r, dict) and r.get("error") is True]
    if failed:
        click.echo(f"⚠️  {len(failed)} node(s) failed: {', '.join(failed)}", err=True)
        sys.exit(2)


@main.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path))
def validate(files: tuple[Path, ...]) -> None:
    """Validate workflow files: node ids, edge references and acyclicity."""
    exit_code = 0

    for file_path in files:
        try:
            workflow = load_workflow(file_path)
            graph = workflow.build()
            order = graph.topological_order()
        except ValidationError as e:
            click.echo(f"❌ {file_path}: {e}", err=True)
            exit_code = 1
            continue

        triggers = [n.id for n in workflow.nodes if n.is_trigger]
        joins = [n.id for n in workflow.nodes if n.is_join]
        click.echo(f"✅ {file_path}: Valid workflow")
        click.echo(f"   Nodes: {len(workflow.nodes)}, Edges: {len(workflow.edges)}")
        click.echo(f"   Triggers: {', '.join(triggers) or '(none)'}")
        if joins:
            click.echo(f"   Joins: {', '.join(joins)}")
        click.echo(f"   Order: {' -> '.join(order)}")
        if not triggers:
            click.echo("⚠️  WARNING: No trigger nodes; runs need --start-from")

    sys.exit(exit_code)


@main.command("show-events")
@click.argument("events_file", type=click.Path(exists=True, path_type=Path))
@click.option("--type", "event_filter", help="Only show events of this type (e.g. node.error)")
@click.option("--node", "node_filter", help="Only show events of this node")
def show_events(events_file: Path, event_filter: str | None, node_filter: str | None) -> None:
    """Print events from a JSONL event log."""
    if event_filter:
        try:
            EventType(event_filter)
        except ValueError:
            valid = ", ".join(t.value for t in EventType)
            click.echo(f"Error: Unknown event type {event_filter}. Valid types: {valid}", err=True)
            sys.exit(1)

    async def _show() -> None:
        async for event in read_events_from_jsonl(events_file):
            if event_filter and event.type.value != event_filter:
                continue
            if node_filter and event.node_id != node_filter:
                continue
            node_info = f" [{event.node_id}]" if event.node_id else ""
            click.echo(f"{event.seq:>4} {event.type.value}{node_info} {json.dumps(event.payload, default=str)}")

    asyncio.run(_show())


@main.command()
def runners() -> None:
    """List the node subtypes with a registered runner."""
    engine = WorkflowEngine(settings=load_settings())
    for subtype in engine.registry.subtypes():
        click.echo(subtype)


if __name__ == "__main__":
    main()
