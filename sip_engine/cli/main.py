"""Main CLI entry point for the SIP engine."""

import os

# Load .env file into environment variables
from dotenv import load_dotenv

load_dotenv()

# Disable Rich help formatting to avoid compatibility issues
os.environ["_TYPER_STANDARD_TRACEBACK"] = "1"

import typer
from pydantic import ValidationError
from rich.console import Console

from sip_engine.cli.commands.daemon_commands import daemon_app
from sip_engine.cli.commands.plan_commands import plan_app
from sip_engine.cli.commands.schedule_commands import schedule_app
from sip_engine.config.base import get_config
from sip_engine.config.logging import setup_logging
from sip_engine.data.database import init_database

app = typer.Typer(
    name="sip-engine",
    help="Recurring trade (SIP) scheduler",
    add_completion=False,
    pretty_exceptions_enable=False,
)

console = Console()

app.add_typer(daemon_app, name="daemon")
app.add_typer(plan_app, name="plan")
app.add_typer(schedule_app, name="schedule")


@app.command(name="init")
def init() -> None:
    """Initialize the SIP engine (directories, logging, database)."""
    try:
        console.print("[bold blue]Initializing SIP engine...[/bold blue]")

        config = get_config()
        console.print("✓ Configuration loaded from .env")

        setup_logging(log_level=config.log_level, log_file=config.log_file)
        console.print(f"✓ Logging initialized (level={config.log_level})")

        init_database(config.database_url)
        console.print(f"✓ Database initialized at {config.database_url}")

        mode = "paper" if config.paper_trading else f"live ({config.trade_api_url})"
        console.print(f"✓ Trading mode: {mode}")
        console.print("\n[bold green]SIP engine initialized successfully![/bold green]")

    except ValidationError as e:
        console.print(f"[bold red]Configuration error:[/bold red]\n{e}")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"[bold red]Initialization failed:[/bold red] {e}")
        raise typer.Exit(1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
