"""CLI application for InsForge Realtime.

Provides commands for:
- validate: Validate configuration
- example-config: Write an example configuration
- listen: Print events arriving on a channel
- publish: Send one broadcast message
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from insforge_realtime import __version__
from insforge_realtime.config.loader import (
    ConfigurationError,
    generate_example_config,
    load_config,
)
from insforge_realtime.domain.model.events import BroadcastEvent, ChangeEvent, EventKind
from insforge_realtime.exceptions import RealtimeError
from insforge_realtime.main import run_listener, run_publish

if TYPE_CHECKING:
    from insforge_realtime.config.schema import RealtimeConfig


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"insforge-realtime {__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="insforge-realtime",
    help="InsForge Realtime - subscribe to and publish on realtime channels",
    add_completion=False,
)


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
) -> None:
    """InsForge Realtime CLI."""


console = Console()

ConfigArgument = Annotated[
    Path,
    typer.Argument(
        help="Path to configuration YAML file",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
]


@app.command()
def validate(
    config: ConfigArgument,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Show detailed validation information",
        ),
    ] = False,
) -> None:
    """Validate a configuration file without connecting."""
    console.print(f"[bold]Validating:[/bold] {config}")

    try:
        realtime_config = load_config(config)
    except ConfigurationError as e:
        console.print("[bold red]Validation failed:[/bold red]")
        console.print(str(e))
        raise typer.Exit(code=1) from e

    console.print("[bold green]Configuration valid![/bold green]")
    if verbose:
        _print_config_summary(realtime_config)


@app.command("example-config")
def example_config(
    output: Annotated[
        Path,
        typer.Option(
            "--output",
            "-o",
            help="Output file path",
        ),
    ] = Path("realtime.yaml"),
) -> None:
    """Generate an example configuration file."""
    output.write_text(generate_example_config())

    console.print(f"[bold green]Example configuration written:[/bold green] {output}")
    console.print("\nEdit this file to match your project, then run:")
    console.print(f"  [cyan]insforge-realtime validate {output}[/cyan]")
    console.print(f"  [cyan]insforge-realtime listen {output} <channel>[/cyan]")


@app.command()
def listen(
    config: ConfigArgument,
    channel: Annotated[str, typer.Argument(help="Channel name")],
    table: Annotated[
        str | None,
        typer.Option("--table", "-t", help="Listen to row changes on this table"),
    ] = None,
    schema: Annotated[
        str,
        typer.Option("--schema", "-s", help="Database schema of --table"),
    ] = "public",
    predicate: Annotated[
        str | None,
        typer.Option("--predicate", "-p", help="Row filter, e.g. user_id=eq.42"),
    ] = None,
    kind: Annotated[
        list[str] | None,
        typer.Option("--kind", "-k", help="Change kinds to listen to (repeatable)"),
    ] = None,
    event: Annotated[
        str | None,
        typer.Option("--event", "-e", help="Broadcast event name ('*' for all)"),
    ] = None,
    token: Annotated[
        str | None,
        typer.Option("--token", envvar="INSFORGE_TOKEN", help="Bearer token"),
    ] = None,
) -> None:
    """Subscribe to a channel and print events until interrupted.

    Without --table, every broadcast on the channel is printed.
    """
    try:
        kinds = tuple(EventKind.from_wire(k) for k in kind) if kind else None
    except ValueError as e:
        console.print(f"[bold red]Invalid kind:[/bold red] {e}")
        raise typer.Exit(code=1) from e
    if kinds and any(not k.is_change for k in kinds):
        console.print("[bold red]--kind accepts INSERT, UPDATE or DELETE[/bold red]")
        raise typer.Exit(code=1)

    console.print(f"[bold green]Listening on[/bold green] {channel}")
    options: dict[str, Any] = {
        "table": table,
        "schema": schema,
        "predicate": predicate,
        "event": event,
        "token": token,
    }
    if kinds:
        options["kinds"] = kinds

    try:
        asyncio.run(run_listener(config, channel, on_event=_print_event, **options))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutdown requested[/yellow]")
    except (ConfigurationError, RealtimeError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e


@app.command()
def publish(
    config: ConfigArgument,
    channel: Annotated[str, typer.Argument(help="Channel name")],
    event: Annotated[str, typer.Argument(help="Broadcast event name")],
    payload: Annotated[str, typer.Argument(help="JSON payload")] = "{}",
    token: Annotated[
        str | None,
        typer.Option("--token", envvar="INSFORGE_TOKEN", help="Bearer token"),
    ] = None,
) -> None:
    """Publish one broadcast message on a channel."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        console.print(f"[bold red]Invalid JSON payload:[/bold red] {e}")
        raise typer.Exit(code=1) from e

    try:
        asyncio.run(run_publish(config, channel, event, data, token=token))
    except (ConfigurationError, RealtimeError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e

    console.print(f"[bold green]Published[/bold green] {event} on {channel}")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"InsForge Realtime version [bold]{__version__}[/bold]")


def _print_event(channel: str, event: ChangeEvent | BroadcastEvent) -> None:
    """Print one delivered event."""
    timestamp = event.received_at.strftime("%H:%M:%S")
    if isinstance(event, ChangeEvent):
        record = event.record
        if hasattr(record, "model_dump"):
            record = record.model_dump(mode="json")
        console.print(
            f"[dim]{timestamp}[/dim] [cyan]{channel}[/cyan] "
            f"[bold]{event.kind.value}[/bold] {event.schema}.{event.table} "
            f"{json.dumps(record, default=str)}",
            highlight=False,
        )
    else:
        console.print(
            f"[dim]{timestamp}[/dim] [cyan]{channel}[/cyan] "
            f"[magenta]{event.event}[/magenta] {json.dumps(event.payload, default=str)}",
            highlight=False,
        )


def _print_config_summary(config: RealtimeConfig) -> None:
    """Print a summary of the configuration."""
    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    reconnect = config.reconnect
    attempts = str(reconnect.max_attempts) if reconnect.max_attempts else "unlimited"

    table.add_row("Base URL", config.base_url)
    table.add_row("REST API", config.api_url)
    table.add_row("Anon key", "set" if config.anon_key else "not set")
    table.add_row("Transports", ", ".join(config.transport.transports))
    table.add_row("Connect timeout", f"{config.connect_timeout_s}s")
    table.add_row("Subscribe timeout", f"{config.subscribe_timeout_s}s")
    table.add_row("Control queue", str(config.control_queue_size))
    table.add_row(
        "Reconnect",
        f"{reconnect.base_delay_s}s..{reconnect.max_delay_s}s, {attempts} attempts"
        if reconnect.enabled
        else "disabled",
    )

    console.print(table)
