"""CLI entry point for piflow.

Commands:
- piflow init: Initialize a project directory
- piflow validate: Check a flow file's structure
- piflow run: Run a flow file directly (nothing saved except device status)
- piflow flow add/list/run/status/delete: Manage saved flows
- piflow device add/list/test/exec/delete: Manage remote devices
- piflow serve: Start the HTTP API
"""

from __future__ import annotations

import asyncio
import logging
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

from piflow import __version__
from piflow.cli_ui.result_renderer import ResultTableRenderer
from piflow.core.config import CONFIG_DIR, CONFIG_FILE, DEFAULT_CONFIG_YAML, ConfigError, load_config
from piflow.core.engine import FlowOrchestrator
from piflow.core.errors import FlowError
from piflow.core.graph_schema import FlowGraph, FlowStatus, parse_graph
from piflow.core.state import Database
from piflow.remote.session import ConnectionDescriptor, RemoteSession, SessionError

console = Console()

owner_option = click.option(
    "--owner",
    envvar="PIFLOW_OWNER",
    default="local",
    show_default=True,
    help="Owner ID flows and devices belong to (env: PIFLOW_OWNER)",
)


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _load_flow_file(flow_file: str) -> tuple[dict[str, Any], FlowGraph]:
    """Load a YAML/JSON flow file, exiting with a readable error on failure.

    Returns:
        Tuple of (raw mapping, parsed graph)
    """
    try:
        with open(flow_file) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing flow file '{escape(flow_file)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)

    if not isinstance(data, dict):
        console.print(
            f"[red]Error: Invalid flow file '{escape(flow_file)}'. "
            f"Expected a mapping, got {type(data).__name__}.[/red]"
        )
        sys.exit(1)

    try:
        graph = parse_graph({"nodes": data.get("nodes", []), "edges": data.get("edges", [])})
    except FlowError as e:
        console.print("[red]Error validating flow schema:[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    return data, graph


def _validate_or_exit(graph: FlowGraph) -> None:
    errors = graph.validate_graph()
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        sys.exit(1)


def _open_db(required: bool = True) -> Database | None:
    """Open the project database configured in .piflow/config.yaml."""
    try:
        config = load_config(get_repo_path())
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)
    if not config.db_path.exists():
        if not required:
            return None
        console.print("[yellow]No piflow database found. Run 'piflow init' first.[/yellow]")
        sys.exit(1)
    return Database(config.db_path)


def _build_orchestrator(db: Database | None) -> FlowOrchestrator:
    config = load_config(get_repo_path())
    return FlowOrchestrator(db, db, config, session_factory=RemoteSession)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity",
)
def main(log_level: str) -> None:
    """piflow - run node/edge automation flows on remote devices over SSH."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
def init() -> None:
    """Initialize a project for piflow."""
    repo_path = get_repo_path()
    piflow_dir = repo_path / CONFIG_DIR

    if (piflow_dir / CONFIG_FILE).exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    piflow_dir.mkdir(parents=True, exist_ok=True)
    (piflow_dir / CONFIG_FILE).write_text(DEFAULT_CONFIG_YAML)

    config = load_config(repo_path)
    Database(config.db_path)

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {piflow_dir}\n"
            "- config.yaml: Engine configuration\n"
            "- state.db: Flows, devices and run results",
            title="piflow Initialized",
        )
    )


@main.command()
@click.argument("flow_file", type=click.Path(exists=True))
def validate(flow_file: str) -> None:
    """Validate a flow file without running it."""
    _, graph = _load_flow_file(flow_file)
    _validate_or_exit(graph)

    console.print("[green]✓ Flow is valid[/green]")
    console.print(f"  Nodes: {len(graph.nodes)}")
    console.print(f"  Edges: {len(graph.edges)}")
    dangling = graph.dangling_edges()
    if dangling:
        console.print("[yellow]Warning: edges pointing to missing nodes (treated as dead ends):[/]")
        for edge in dangling:
            console.print(f"  - {escape(edge.id)} -> {escape(edge.target_node_id)}")


@main.command()
@click.argument("flow_file", type=click.Path(exists=True))
@owner_option
def run(flow_file: str, owner: str) -> None:
    """Run a flow file directly.

    Results are shown but not saved. Connect nodes may reference devices
    registered with 'piflow device add'.

    Example:
        piflow run blink.yaml
    """
    data, graph = _load_flow_file(flow_file)
    _validate_or_exit(graph)

    orchestrator = _build_orchestrator(_open_db(required=False))
    summary = asyncio.run(orchestrator.run_direct(graph, owner))

    ResultTableRenderer(console).print_run(
        graph,
        summary.status,
        summary.results,
        error=summary.error,
        title=data.get("name") or Path(flow_file).stem,
    )
    if summary.status != FlowStatus.SUCCESS:
        sys.exit(1)


# --- Saved flows ---


@main.group()
def flow() -> None:
    """Manage saved flows."""
    pass


@flow.command("add")
@click.argument("flow_file", type=click.Path(exists=True))
@click.option("--name", help="Flow name (default: 'name' from the file, or the file name)")
@click.option("--description", help="Flow description")
@click.option("--device", "device_id", help="Default device for this flow")
@owner_option
def flow_add(
    flow_file: str, name: str | None, description: str | None, device_id: str | None, owner: str
) -> None:
    """Save a flow file to the project database."""
    data, graph = _load_flow_file(flow_file)
    _validate_or_exit(graph)
    db = _open_db()
    try:
        record = db.create_flow(
            owner,
            name or data.get("name") or Path(flow_file).stem,
            graph,
            description=description or data.get("description"),
            device_id=device_id,
        )
    except FlowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print(f"[green]Flow saved:[/green] {escape(record.name)} ({record.id})")


@flow.command("list")
@owner_option
def flow_list(owner: str) -> None:
    """List saved flows."""
    db = _open_db()
    renderer = ResultTableRenderer(console)

    table = Table(title="Flows")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Nodes", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Last run", style="dim")

    for record in db.list_flows(owner):
        table.add_row(
            record.id,
            escape(record.name),
            str(len(record.graph.nodes)),
            renderer.format_status(record.execution_status),
            record.last_executed.strftime("%Y-%m-%d %H:%M:%S") if record.last_executed else "-",
        )
    console.print(table)


@flow.command("run")
@click.argument("flow_id")
@owner_option
def flow_run(flow_id: str, owner: str) -> None:
    """Run a saved flow and wait for it to finish."""
    db = _open_db()
    orchestrator = _build_orchestrator(db)
    try:
        record = db.get_flow(flow_id, owner)
        run_status = asyncio.run(orchestrator.run_flow(flow_id, owner))
    except FlowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    ResultTableRenderer(console).print_run(
        record.graph, run_status.status, run_status.results, error=run_status.error, title=record.name
    )
    if run_status.status != FlowStatus.SUCCESS:
        sys.exit(1)


@flow.command("status")
@click.argument("flow_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw result map as JSON")
@owner_option
def flow_status(flow_id: str, as_json: bool, owner: str) -> None:
    """Show the last run results of a saved flow."""
    db = _open_db()
    try:
        record = db.get_flow(flow_id, owner)
        run_status = db.get_run_status(flow_id, owner)
    except FlowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    if as_json:
        click.echo(run_status.model_dump_json(indent=2))
        return
    ResultTableRenderer(console).print_run(
        record.graph, run_status.status, run_status.results, error=run_status.error, title=record.name
    )


@flow.command("delete")
@click.argument("flow_id")
@owner_option
def flow_delete(flow_id: str, owner: str) -> None:
    """Delete a saved flow."""
    db = _open_db()
    try:
        db.delete_flow(flow_id, owner)
    except FlowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print(f"[green]Flow deleted:[/green] {flow_id}")


# --- Devices ---


@main.group()
def device() -> None:
    """Manage remote devices."""
    pass


@device.command("add")
@click.option("--name", required=True, help="Display name")
@click.option("--host", required=True, help="Hostname or IP address")
@click.option("--port", type=int, default=22, show_default=True)
@click.option("--username", required=True)
@click.option("--password", help="Password (password authentication)")
@click.option(
    "--key-file",
    type=click.Path(exists=True, dir_okay=False),
    help="Private key file (key authentication)",
)
@click.option("--passphrase", help="Private key passphrase")
@owner_option
def device_add(
    name: str,
    host: str,
    port: int,
    username: str,
    password: str | None,
    key_file: str | None,
    passphrase: str | None,
    owner: str,
) -> None:
    """Register a device."""
    if not password and not key_file:
        password = click.prompt("Password", hide_input=True)

    try:
        descriptor = ConnectionDescriptor(
            host=host,
            port=port,
            username=username,
            auth_type="privateKey" if key_file else "password",
            password=None if key_file else password,
            private_key=Path(key_file).read_text() if key_file else None,
            passphrase=passphrase,
        )
    except pydantic.ValidationError as e:
        console.print("[red]Invalid device settings:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {loc}: {err['msg']}" if loc else f"  - {err['msg']}")
        sys.exit(1)

    db = _open_db()
    record = db.add_device(owner, name, descriptor)
    console.print(f"[green]Device added:[/green] {escape(record.name)} ({record.id})")


@device.command("list")
@owner_option
def device_list(owner: str) -> None:
    """List registered devices."""
    db = _open_db()

    table = Table(title="Devices")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Address", style="green")
    table.add_column("Auth")
    table.add_column("Status", justify="center")
    table.add_column("Last connection", style="dim")

    status_style = {"online": "green", "offline": "red", "unknown": "dim"}
    for record in db.list_devices(owner):
        table.add_row(
            record.id,
            escape(record.name),
            escape(f"{record.username}@{record.host}:{record.port}"),
            record.auth_type,
            f"[{status_style[record.status]}]{record.status}[/]",
            record.last_connection.strftime("%Y-%m-%d %H:%M:%S") if record.last_connection else "-",
        )
    console.print(table)


@device.command("test")
@click.argument("device_id")
@owner_option
def device_test(device_id: str, owner: str) -> None:
    """Check that a device accepts SSH connections."""
    db = _open_db()
    orchestrator = _build_orchestrator(db)
    try:
        result = asyncio.run(orchestrator.test_device(device_id, owner))
    except FlowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    if result.success:
        console.print(f"[green]✓ {escape(result.message)}[/green]")
        if result.system:
            console.print(f"  {escape(result.system)}")
    else:
        console.print(f"[red]✗ {escape(result.message)}[/red]")
        sys.exit(1)


@device.command("exec")
@click.argument("device_id")
@click.argument("command")
@owner_option
def device_exec(device_id: str, command: str, owner: str) -> None:
    """Run a single command on a device."""
    db = _open_db()
    orchestrator = _build_orchestrator(db)
    try:
        result = asyncio.run(orchestrator.run_device_command(device_id, owner, command))
    except (FlowError, SessionError, ValueError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    if result.stdout:
        click.echo(result.stdout, nl=not result.stdout.endswith("\n"))
    if result.stderr:
        click.echo(result.stderr, nl=not result.stderr.endswith("\n"), err=True)
    if result.timed_out:
        console.print("[yellow]Command timed out[/yellow]")
    sys.exit(result.exit_code if 0 <= result.exit_code <= 255 else 1)


@device.command("delete")
@click.argument("device_id")
@owner_option
def device_delete(device_id: str, owner: str) -> None:
    """Remove a registered device."""
    db = _open_db()
    try:
        db.delete_device(device_id, owner)
    except FlowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print(f"[green]Device deleted:[/green] {device_id}")


# --- Server ---


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
def serve(host: str, port: int) -> None:
    """Start the HTTP API."""
    import uvicorn

    console.print(f"[blue]Serving piflow API on http://{host}:{port}[/blue]")
    uvicorn.run("piflow.studio.server:app", host=host, port=port)


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"piflow v{__version__}")
    console.print("Flow execution engine for remote devices")


if __name__ == "__main__":
    main()
