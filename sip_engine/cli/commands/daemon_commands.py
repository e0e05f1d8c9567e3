"""CLI commands for the scheduler daemon.

Provides Typer subgroup `daemon` with commands: start, status, stop
"""

import os
import signal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from sip_engine.config.base import get_config
from sip_engine.config.logging import setup_logging
from sip_engine.config.scheduler import load_scheduler_config

daemon_app = typer.Typer(
    name="daemon",
    help="SIP scheduler daemon",
    no_args_is_help=True,
)

console = Console()


def _pid_file(config_path: Optional[str] = None) -> str:
    path = config_path or get_config().scheduler_config_path
    return load_scheduler_config(path).daemon.pid_file


@daemon_app.command(name="start")
def daemon_start(
    config: Optional[str] = typer.Option(None, help="Path to scheduler.yaml"),
) -> None:
    """Start the scheduler daemon in the foreground."""
    from sip_engine.daemon import SIPDaemon, start_daemon

    pid = SIPDaemon.is_daemon_running(_pid_file(config))
    if pid:
        console.print(f"[yellow]Daemon already running (pid={pid})[/yellow]")
        raise typer.Exit(1)

    app_config = get_config()
    setup_logging(log_level=app_config.log_level, log_file=app_config.log_file)
    console.print("[bold blue]Starting SIP scheduler daemon...[/bold blue]")

    try:
        start_daemon(config_path=config)
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")


@daemon_app.command(name="status")
def daemon_status(
    config: Optional[str] = typer.Option(None, help="Path to scheduler.yaml"),
) -> None:
    """Show daemon process, schedule and queue status."""
    from sip_engine.cli.context import cli_components
    from sip_engine.daemon import SIPDaemon

    pid = SIPDaemon.is_daemon_running(_pid_file(config))

    with cli_components() as c:
        triggers = c.registry.list_triggers()
        counts = c.registry.job_counts()
        queue = c.registry.config.queue_name

    table = Table(title="SIP Scheduler Status", show_header=False)
    table.add_column("Field", style="cyan", width=22)
    table.add_column("Value")

    table.add_row("Status", "[green]running[/green]" if pid else "[red]stopped[/red]")
    table.add_row("PID", str(pid or "N/A"))
    table.add_row("Queue", queue)
    table.add_row("Schedulers", str(len(triggers)))
    if triggers:
        next_fire = min(t.next_fire_at for t in triggers)
        table.add_row("Next Fire", next_fire.isoformat())
    for status in ("pending", "active", "failed"):
        table.add_row(f"Jobs {status}", str(counts.get(status, 0)))

    console.print(table)


@daemon_app.command(name="stop")
def daemon_stop(
    config: Optional[str] = typer.Option(None, help="Path to scheduler.yaml"),
) -> None:
    """Ask a running daemon to shut down gracefully."""
    from sip_engine.daemon import SIPDaemon

    pid = SIPDaemon.is_daemon_running(_pid_file(config))
    if not pid:
        console.print("[dim]Daemon is not running[/dim]")
        return

    os.kill(pid, signal.SIGTERM)
    console.print(f"[yellow]Sent SIGTERM to daemon (pid={pid})[/yellow]")
