"""Shared helpers for CLI commands."""

from collections.abc import Iterator
from contextlib import contextmanager

import typer
from rich.console import Console

from sip_engine.config.base import get_config
from sip_engine.config.logging import setup_logging
from sip_engine.daemon import Components, build_components
from sip_engine.errors import SIPError

console = Console()


@contextmanager
def cli_components() -> Iterator[Components]:
    """Build components for a single command and close them afterwards.

    SIPErrors are printed with their status code and end the command with
    exit code 1.
    """
    config = get_config()
    setup_logging(log_level=config.log_level, log_file=config.log_file, console_level="WARNING")
    components = build_components(config)
    try:
        yield components
    except SIPError as e:
        console.print(f"[bold red]Error ({e.kind.value}, {e.status_code}):[/bold red] {e}")
        raise typer.Exit(1)
    finally:
        components.registry.close()


def status_style(status: str) -> str:
    colors = {
        "active": "green",
        "paused": "yellow",
        "completed": "blue",
        "insufficient_funds": "red",
    }
    color = colors.get(status, "white")
    return f"[{color}]{status}[/{color}]"
