"""
CLI: ``order-spine serve`` — start the API server.
"""

from __future__ import annotations

import typer
import uvicorn

from order_spine.cli.utils import console
from order_spine.core.settings import OrderSpineSettings


def serve(
    host: str | None = typer.Option(None, "--host", "-h", help="Bind address (default: HOST setting)"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port (default: PORT setting)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on changes"),
    log_level: str = typer.Option("info", "--log-level"),
) -> None:
    """Start the order-spine REST + WebSocket API server."""
    settings = OrderSpineSettings()
    host = host or settings.host
    port = port or settings.port

    console.print(f"[bold green]Starting order-spine API[/bold green] on {host}:{port}")
    uvicorn.run(
        "order_spine.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )
