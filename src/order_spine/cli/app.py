"""
Root Typer application for the order-spine CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from order_spine.cli.config import show_config
from order_spine.cli.serve import serve
from order_spine.cli.simulate import simulate

app = Typer(
    name="order-spine",
    help="order-spine — asynchronous order execution engine.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from order_spine import __version__

        typer.echo(f"order-spine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """order-spine CLI — run the API, simulate order flow, inspect config."""


app.command("serve", help="Start the API server.")(serve)
app.command("simulate", help="Run simulated orders through an in-process engine.")(simulate)
app.command("config", help="Show the effective configuration.")(show_config)
