"""``sitedesk serve`` -- run the portal API server.

With ``--local`` the server uses a SQLite state file under ``.sitedesk/``
and needs no PostgreSQL; tables are created on startup and the operator
token check is skipped because the environment is forced to ``dev``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

logger = logging.getLogger(__name__)


def serve_command(
    port: int = typer.Option(
        8000,
        "--port",
        "-p",
        help="API server port.",
    ),
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        help="Host to bind the API server to.",
    ),
    local: bool = typer.Option(
        False,
        "--local",
        help="Use a SQLite state file in .sitedesk/ instead of PostgreSQL.",
    ),
    no_scheduler: bool = typer.Option(
        False,
        "--no-scheduler",
        help="Do not start the background billing reconciliation scheduler.",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        help="Enable auto-reload on code changes.",
    ),
) -> None:
    """Start the portal API server."""
    console = Console(stderr=True)

    if local:
        _setup_local_env(Path.cwd())
    if no_scheduler:
        os.environ["PORTAL_RECONCILIATION_ENABLED"] = "false"

    console.print(
        Panel(
            _build_services_table(host, port, local, no_scheduler),
            title="SiteDesk Portal API",
            border_style="blue",
        )
    )

    try:
        import uvicorn

        uvicorn_config = uvicorn.Config(
            "portal_api.main:app",
            host=host,
            port=port,
            reload=reload,
            log_level="info",
            access_log=False,
        )
        server = uvicorn.Server(uvicorn_config)

        console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
        console.print(f"[green]✓[/green] OpenAPI docs at http://{host}:{port}/docs")

        server.run()

    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/yellow]")
    except Exception as exc:
        console.print(f"[red]Server error: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    console.print("[green]Server stopped cleanly.[/green]")


def _setup_local_env(project_root: Path) -> None:
    """Point the API at a SQLite file and relax production-only settings."""
    state_db = project_root / ".sitedesk" / "state.db"
    state_db.parent.mkdir(parents=True, exist_ok=True)

    os.environ["PORTAL_DATABASE_URL"] = f"sqlite+aiosqlite:///{state_db}"
    os.environ.setdefault("PORTAL_PLATFORM_ENV", "dev")
    # Disable rate limiting in local mode.
    os.environ.setdefault("PORTAL_RATE_LIMIT_ENABLED", "false")


def _build_services_table(host: str, port: int, local: bool, no_scheduler: bool) -> Table:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Service", style="cyan")
    table.add_column("Setting")

    table.add_row("API", f"http://{host}:{port}")
    table.add_row("Database", os.environ.get("PORTAL_DATABASE_URL", "from PORTAL_DATABASE_URL / .env"))
    table.add_row("Environment", os.environ.get("PORTAL_PLATFORM_ENV", "dev" if local else "from settings"))
    table.add_row("Scheduler", "disabled" if no_scheduler else "from settings (PORTAL_RECONCILIATION_CRON)")
    return table
