"""
CLI: ``order-spine config`` — show the effective configuration.
"""

from __future__ import annotations

import typer
from pydantic import ValidationError
from rich.table import Table

from order_spine.cli.utils import console, err_console
from order_spine.core.settings import OrderSpineSettings


def show_config(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, env"),
) -> None:
    """Show settings as resolved from environment, ``.env`` and defaults."""
    try:
        settings = OrderSpineSettings()
    except ValidationError as e:
        err_console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(code=1) from e

    if format == "json":
        console.print_json(settings.model_dump_json())
        return

    if format == "env":
        for key, value in sorted(settings.model_dump().items()):
            console.print(f"{key.upper()}={'' if value is None else value}")
        return

    console.print(f"[bold]Environment:[/bold] {settings.environment}")
    table = Table()
    table.add_column("Setting")
    table.add_column("Value")
    for key, value in settings.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)
