"""Command line interface for Terra Voyage collaboration."""

import json
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from terravoyage.collaboration.conflicts import (
    detect_conflicts,
    format_conflict_message,
    get_conflict_severity,
)
from terravoyage.collaboration.events import parse_event
from terravoyage.config import settings

app = typer.Typer(
    name="terravoyage",
    help="Terra Voyage - real-time trip collaboration",
    add_completion=False,
)

console = Console()

_SEVERITY_STYLES = {"low": "green", "medium": "yellow", "high": "red"}


@app.command("version")
def version():
    """Show version information."""
    version_info = f"""
Terra Voyage v{settings.app_version}
Real-time trip collaboration

Environment: {settings.environment}
Python: {sys.version}
"""
    console.print(
        Panel(
            version_info.strip(),
            title="Version Information",
            border_style="green",
        )
    )


@app.command("server")
def start_server(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Server host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Server port"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Number of workers"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug mode"),
):
    """Start the collaboration server."""
    from terravoyage.server import main as server_main

    if host:
        settings.host = host
    if port:
        settings.port = port
    if reload:
        settings.reload = reload
    if workers:
        settings.workers = workers
    if debug:
        settings.debug = debug

    server_main()


@app.command("config")
def show_config():
    """Show current configuration."""
    config_table = Table(title="Terra Voyage Configuration")

    config_table.add_column("Setting", style="cyan")
    config_table.add_column("Value", style="green")

    config_items = [
        ("App Name", settings.app_name),
        ("Version", settings.app_version),
        ("Environment", settings.environment),
        ("Debug", str(settings.debug)),
        ("Host", settings.host),
        ("Port", str(settings.port)),
        ("Socket Path", settings.socket_path),
        ("Server URL", settings.collaboration_server_url),
        ("Conflict Window (ms)", str(settings.conflict_window_ms)),
        ("Typing Debounce (ms)", str(settings.typing_debounce_ms)),
        ("Max Reconnect Attempts", str(settings.max_reconnect_attempts)),
        ("Metrics Enabled", str(settings.metrics_enabled)),
    ]

    for setting, value in config_items:
        config_table.add_row(setting, value)

    console.print(config_table)


@app.command("detect")
def detect(
    events_file: Path = typer.Argument(..., help="JSON file holding an array of collaboration events"),
    window_ms: Optional[int] = typer.Option(
        None, "--window-ms", help="Conflict window in milliseconds"
    ),
):
    """Detect conflicting edits in a recorded event log."""
    if not events_file.exists():
        console.print(f"[red]File not found: {events_file}[/red]")
        raise typer.Exit(code=1)

    try:
        raw_events = json.loads(events_file.read_text())
    except ValueError as e:
        console.print(f"[red]Invalid JSON: {e}[/red]")
        raise typer.Exit(code=1)

    if not isinstance(raw_events, list):
        console.print("[red]Expected a JSON array of events[/red]")
        raise typer.Exit(code=1)

    events = [event for event in map(parse_event, raw_events) if event is not None]
    skipped = len(raw_events) - len(events)

    window = timedelta(milliseconds=window_ms if window_ms is not None else settings.conflict_window_ms)
    conflicts = detect_conflicts(events, window)

    if skipped:
        console.print(f"[yellow]Skipped {skipped} malformed event(s)[/yellow]")

    if not conflicts:
        console.print(f"[green]No conflicts in {len(events)} event(s)[/green]")
        return

    table = Table(title=f"Detected Conflicts ({len(conflicts)})")
    table.add_column("Entity", style="cyan")
    table.add_column("Base User", style="green")
    table.add_column("Conflicts With")
    table.add_column("Severity")
    table.add_column("Summary", style="dim")

    for conflict in conflicts:
        severity = get_conflict_severity(conflict).value
        table.add_row(
            f"{conflict.entity_type.value}:{conflict.entity_id}",
            conflict.user_id,
            ", ".join(conflict.conflicts_with),
            f"[{_SEVERITY_STYLES[severity]}]{severity}[/{_SEVERITY_STYLES[severity]}]",
            format_conflict_message(conflict),
        )

    console.print(table)


def main():
    """Main CLI entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
