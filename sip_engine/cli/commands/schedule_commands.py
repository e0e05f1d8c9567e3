"""CLI commands for inspecting and repairing the schedule.

Provides Typer subgroup `schedule` with commands: reconcile, list, jobs
"""

import typer
from rich.table import Table

from sip_engine.cli.context import cli_components, console

schedule_app = typer.Typer(
    name="schedule",
    help="Inspect and reconcile plan schedules",
    no_args_is_help=True,
)


@schedule_app.command(name="reconcile")
def schedule_reconcile() -> None:
    """Run one reconciliation sweep now."""
    with cli_components() as c:
        report = c.reconciler.reconcile()

    console.print(f"[bold]Reconciliation complete:[/bold] {report.summary()}")
    for plan_id in report.created:
        console.print(f"  [green]+[/green] created scheduler for SIP {plan_id}")
    for trigger_id in report.removed:
        console.print(f"  [red]-[/red] removed {trigger_id}")
    for trigger_id, error in report.errors.items():
        console.print(f"  [bold red]![/bold red] {trigger_id}: {error}")

    if report.errors:
        raise typer.Exit(1)


@schedule_app.command(name="list")
def schedule_list() -> None:
    """List registered schedulers."""
    with cli_components() as c:
        triggers = c.registry.list_triggers()

    if not triggers:
        console.print("[dim]No schedulers registered[/dim]")
        return

    table = Table(title=f"Schedulers ({len(triggers)})")
    table.add_column("Scheduler", style="cyan")
    table.add_column("SIP", justify="right")
    table.add_column("Pattern")
    table.add_column("Cadence")
    table.add_column("Next Fire")

    for t in triggers:
        table.add_row(
            t.id,
            str(t.plan_id),
            t.pattern,
            t.payload.get("cadence", ""),
            t.next_fire_at.isoformat() if t.next_fire_at else "",
        )

    console.print(table)


@schedule_app.command(name="jobs")
def schedule_jobs() -> None:
    """Show execution job counts by status."""
    with cli_components() as c:
        counts = c.registry.job_counts()
        queue = c.registry.config.queue_name

    if not counts:
        console.print(f"[dim]No jobs on queue {queue}[/dim]")
        return

    table = Table(title=f"Queue {queue}")
    table.add_column("Status", style="cyan")
    table.add_column("Jobs", justify="right")
    for status, count in sorted(counts.items()):
        table.add_row(status, str(count))
    console.print(table)
