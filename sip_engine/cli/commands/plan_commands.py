"""CLI commands for managing plans.

Provides Typer subgroup `plan` with commands:
create, list, show, pause, resume, update, delete, execute, history
"""

import asyncio
import json
from typing import Optional

import typer
from rich.table import Table

from sip_engine.cli.context import cli_components, console, status_style
from sip_engine.utils.cadence import Cadence

plan_app = typer.Typer(
    name="plan",
    help="Create and manage recurring trade plans",
    no_args_is_help=True,
)


def _print_plan(plan: dict, title: str = "SIP") -> None:
    table = Table(title=f"{title} {plan['id']}", show_header=False)
    table.add_column("Field", style="cyan", width=18)
    table.add_column("Value")

    table.add_row("Wallet", plan["wallet_id"])
    table.add_row("Trade", f"{plan['amount']} {plan['from_asset']} -> {plan['to_asset']}")
    table.add_row("Cadence", plan["cadence"])
    table.add_row("Status", status_style(plan["status"]))
    table.add_row("Executions", str(plan["total_executions"]))
    table.add_row("Last Execution", plan["last_execution"] or "Never")
    table.add_row("Next Execution", plan["next_execution"] or "N/A")
    if plan.get("last_error"):
        table.add_row("Last Error", f"[red]{plan['last_error']}[/red]")
    table.add_row("Created", plan["created_at"] or "")

    console.print(table)


@plan_app.command(name="create")
def plan_create(
    wallet_id: str = typer.Option(..., "--wallet", help="Wallet that funds the trades"),
    from_asset: str = typer.Option(..., "--from", help="Asset to spend"),
    to_asset: str = typer.Option(..., "--to", help="Asset to buy"),
    amount: str = typer.Option(..., help="Amount of from-asset per execution"),
    cadence: Cadence = typer.Option(..., help="daily, weekly or monthly"),
) -> None:
    """Create a plan and execute its first trade immediately."""
    with cli_components() as c:

        async def _create():
            try:
                return await c.plans.create_plan(
                    wallet_id, from_asset, to_asset, amount, cadence.value
                )
            finally:
                await c.trade_client.aclose()

        result = asyncio.run(_create())
        _print_plan(result.plan, title="Created SIP")

        if result.succeeded:
            trade = result.initial_trade
            console.print(
                f"[green]✓ Initial trade settled[/green] "
                f"(id={trade['trade_id']}, tx={trade['transaction_hash']})"
            )
        else:
            console.print(f"[bold red]{result.error}[/bold red]")
            raise typer.Exit(1)


@plan_app.command(name="list")
def plan_list(
    wallet_id: Optional[str] = typer.Option(None, "--wallet", help="Only this wallet's plans"),
) -> None:
    """List plans, newest first."""
    with cli_components() as c:
        plans = c.plans.list_plans(wallet_id)

    if not plans:
        console.print("[dim]No SIPs found[/dim]")
        return

    table = Table(title=f"SIPs ({len(plans)})")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Wallet")
    table.add_column("Trade")
    table.add_column("Cadence")
    table.add_column("Status")
    table.add_column("Runs", justify="right")
    table.add_column("Next Execution")

    for p in plans:
        table.add_row(
            str(p["id"]),
            p["wallet_id"],
            f"{p['amount']} {p['from_asset']} -> {p['to_asset']}",
            p["cadence"],
            status_style(p["status"]),
            str(p["total_executions"]),
            p["next_execution"] or "N/A",
        )

    console.print(table)


@plan_app.command(name="show")
def plan_show(
    plan_id: int = typer.Argument(..., help="Plan ID"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Show one plan."""
    with cli_components() as c:
        plan = c.plans.get_plan(plan_id)
        trigger = c.registry.get_trigger(plan_id)

    if as_json:
        console.print(json.dumps(plan, indent=2, default=str))
        return

    _print_plan(plan)
    if trigger:
        console.print(
            f"Scheduler [cyan]{trigger.id}[/cyan]: {trigger.pattern} "
            f"(next fire {trigger.next_fire_at.isoformat()})"
        )
    else:
        console.print("[dim]Not scheduled[/dim]")


@plan_app.command(name="pause")
def plan_pause(
    plan_id: int = typer.Argument(..., help="Plan ID"),
    wallet_id: str = typer.Option(..., "--wallet", help="Owning wallet"),
) -> None:
    """Pause a plan and remove its schedule."""
    with cli_components() as c:
        plan = c.plans.pause(plan_id, wallet_id)
    console.print(f"[yellow]SIP {plan_id} paused[/yellow] ({plan['status']})")


@plan_app.command(name="resume")
def plan_resume(
    plan_id: int = typer.Argument(..., help="Plan ID"),
    wallet_id: str = typer.Option(..., "--wallet", help="Owning wallet"),
) -> None:
    """Reactivate a plan and register its schedule."""
    with cli_components() as c:
        plan = c.plans.resume(plan_id, wallet_id)
    console.print(
        f"[green]SIP {plan_id} resumed[/green], next execution {plan['next_execution']}"
    )


@plan_app.command(name="update")
def plan_update(
    plan_id: int = typer.Argument(..., help="Plan ID"),
    wallet_id: str = typer.Option(..., "--wallet", help="Owning wallet"),
    amount: Optional[str] = typer.Option(None, help="New amount"),
    cadence: Optional[Cadence] = typer.Option(None, help="New cadence"),
    status: Optional[str] = typer.Option(None, help="New status"),
) -> None:
    """Update a plan's amount, cadence or status."""
    with cli_components() as c:
        plan = c.plans.update_plan(
            plan_id,
            wallet_id,
            amount=amount,
            cadence=cadence.value if cadence else None,
            status=status,
        )
    _print_plan(plan, title="Updated SIP")


@plan_app.command(name="delete")
def plan_delete(
    plan_id: int = typer.Argument(..., help="Plan ID"),
    wallet_id: str = typer.Option(..., "--wallet", help="Owning wallet"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a plan and its schedule."""
    if not yes and not typer.confirm(f"Delete SIP {plan_id}?"):
        raise typer.Abort()

    with cli_components() as c:
        c.plans.delete_plan(plan_id, wallet_id)
    console.print(f"[green]✓ SIP {plan_id} deleted[/green]")


@plan_app.command(name="execute")
def plan_execute(
    plan_id: int = typer.Argument(..., help="Plan ID"),
) -> None:
    """Execute a plan now, outside its schedule."""
    with cli_components() as c:

        async def _execute():
            try:
                return await c.plans.execute_now(plan_id)
            finally:
                await c.trade_client.aclose()

        result = asyncio.run(_execute())

    console.print(
        f"[green]✓ SIP {plan_id} executed[/green] "
        f"(trade={result.trade.trade_id}, attempts={result.attempts}); "
        f"next execution {result.next_execution.isoformat()}"
    )


@plan_app.command(name="history")
def plan_history(
    plan_id: int = typer.Argument(..., help="Plan ID"),
    limit: int = typer.Option(20, help="Number of executions to show"),
) -> None:
    """Show a plan's recent executions."""
    with cli_components() as c:
        c.plans.get_plan(plan_id)
        executions = c.plans.history(plan_id, limit=limit)

    if not executions:
        console.print(f"[dim]No executions recorded for SIP {plan_id}[/dim]")
        return

    table = Table(title=f"SIP {plan_id} Executions")
    table.add_column("Finished", style="cyan")
    table.add_column("Outcome")
    table.add_column("Attempts", justify="right")
    table.add_column("Trade / Error")
    table.add_column("Status After")

    for e in executions:
        ok = e["outcome"] == "succeeded"
        detail = e["trade_id"] if ok else f"{e['error_kind']}: {e['error_message']}"
        table.add_row(
            e["finished_at"] or "",
            "[green]succeeded[/green]" if ok else "[red]failed[/red]",
            str(e["attempts"]),
            detail or "",
            status_style(e["resulting_status"] or ""),
        )

    console.print(table)
