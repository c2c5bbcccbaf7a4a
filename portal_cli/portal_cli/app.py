"""SiteDesk CLI application -- Typer-based operator interface.

Provides one-shot billing reconciliation, the upcoming-due report, a
billing status overview, schema migrations and the API server.  Human-readable output goes to
*stderr* via Rich; ``--json`` switches every command to a single JSON
document on *stdout* so that scripts and cron wrappers can compose cleanly.

Commands talk to the state store directly (the same database the API uses);
they do not need a running API server.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import typer
from rich.console import Console

from portal_cli.display import display_status, display_summary, display_upcoming

if TYPE_CHECKING:
    from billing_engine.models.website import WebsiteBillingView
    from portal_api.config import PortalSettings
    from portal_api.services.billing_reconciler import ReconciliationSummary
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="sitedesk",
    help="SiteDesk - website delivery portal operations",
    no_args_is_help=True,
)
console = Console(stderr=True)

from portal_cli.commands.serve import serve_command  # noqa: E402

app.command(name="serve")(serve_command)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="State store URL (defaults to PORTAL_DATABASE_URL / .env).",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings() -> PortalSettings:
    from portal_api.config import load_settings

    settings = load_settings()
    if _database_url:
        settings = settings.model_copy(update={"database_url": _database_url})
    return settings


def _parse_now(value: str | None) -> datetime:
    """Parse ``--now``; naive timestamps are taken as UTC."""
    if value is None:
        return datetime.now(UTC)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid timestamp {value!r}; expected ISO-8601.", param_hint="--now") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, default=str) + "\n")


@asynccontextmanager
async def _open_store(settings: PortalSettings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Yield a session factory for the configured store; disposes the engine on exit."""
    from billing_engine.state.database import create_session_factory, get_engine, is_local_url, prepare_schema

    engine = get_engine(
        settings.database_url,
        pool_size=1,
        max_overflow=0,
        statement_timeout_seconds=settings.database_statement_timeout,
    )
    try:
        await prepare_schema(engine, create_tables=is_local_url(settings.database_url))
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


async def _reconcile(settings: PortalSettings, now: datetime) -> ReconciliationSummary:
    from portal_api.dependencies import build_reconciler
    from portal_api.services.notification_gateway import create_notification_gateway

    notifier = create_notification_gateway(settings)
    try:
        async with _open_store(settings) as session_factory:
            reconciler = build_reconciler(session_factory, notifier, settings)
            return await reconciler.run(now, trigger="cli")
    finally:
        await notifier.close()


async def _upcoming(settings: PortalSettings, now: datetime, days_ahead: int) -> list[WebsiteBillingView]:
    from portal_api.dependencies import build_reconciler
    from portal_api.services.notification_gateway import LoggingNotificationGateway

    async with _open_store(settings) as session_factory:
        reconciler = build_reconciler(session_factory, LoggingNotificationGateway(), settings)
        return await reconciler.find_upcoming_due(now, days_ahead=days_ahead)


async def _status(
    settings: PortalSettings,
    now: datetime,
    user_id: str | None,
    runs: int,
) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    from portal_api.services.website_billing_service import WebsiteBillingService

    async with _open_store(settings) as session_factory:
        async with session_factory() as session:
            service = WebsiteBillingService(session)
            stats = await service.stats(now, days_ahead=settings.upcoming_due_days, user_id=user_id)
            history = await service.list_runs(limit=runs)
    return stats, history


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


@app.command()
def reconcile(
    now: str | None = typer.Option(
        None,
        "--now",
        help="Evaluate billing as of this ISO-8601 time (default: current UTC time).",
    ),
) -> None:
    """Run billing reconciliation once and print the run summary."""
    from billing_engine.errors import StoreUnavailableError

    as_of = _parse_now(now)
    settings = _load_settings()

    try:
        summary = asyncio.run(_reconcile(settings, as_of))
    except StoreUnavailableError as exc:
        console.print(f"[red]Website store unavailable: {exc}[/red]")
        raise typer.Exit(code=3) from exc
    except Exception as exc:
        console.print(f"[red]Reconciliation failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json(summary.to_dict())
    else:
        display_summary(console, summary)


# ---------------------------------------------------------------------------
# upcoming
# ---------------------------------------------------------------------------


@app.command()
def upcoming(
    days: int | None = typer.Option(
        None,
        "--days",
        "-d",
        min=1,
        max=60,
        help="Look-ahead window in days (default: PORTAL_UPCOMING_DUE_DAYS).",
    ),
) -> None:
    """List ACTIVE websites whose payment is due soon.  Changes nothing."""
    settings = _load_settings()
    window = days or settings.upcoming_due_days

    try:
        views = asyncio.run(_upcoming(settings, datetime.now(UTC), window))
    except Exception as exc:
        console.print(f"[red]Failed to load upcoming due dates: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json(
            [
                {
                    "websiteId": view.website_id,
                    "name": view.name,
                    "dueAt": view.due_at.isoformat() if view.due_at else None,
                    "contactEmail": view.contact.email,
                }
                for view in views
            ]
        )
    else:
        display_upcoming(console, views, window)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@app.command()
def status(
    user_id: str | None = typer.Option(None, "--user-id", help="Only count websites owned by this user."),
    runs: int = typer.Option(5, "--runs", min=0, max=200, help="Number of recent reconciliation runs to show."),
) -> None:
    """Show website counts per billing status and recent reconciliation runs."""
    settings = _load_settings()

    try:
        stats, history = asyncio.run(_status(settings, datetime.now(UTC), user_id, runs))
    except Exception as exc:
        console.print(f"[red]Failed to load billing status: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json({**stats, "recentRuns": history})
    else:
        display_status(console, stats, history)


# ---------------------------------------------------------------------------
# migrate
# ---------------------------------------------------------------------------


@app.command()
def migrate(
    revision: str = typer.Option("head", "--revision", help="Target Alembic revision."),
    sql: bool = typer.Option(False, "--sql", help="Print the migration SQL instead of applying it."),
) -> None:
    """Apply the website store schema migrations (PostgreSQL only)."""
    from billing_engine.state.database import is_local_url, upgrade_schema

    settings = _load_settings()
    if is_local_url(settings.database_url):
        console.print("[yellow]SQLite stores create their tables on startup; nothing to migrate.[/yellow]")
        return

    try:
        upgrade_schema(settings.database_url, revision, sql=sql)
    except Exception as exc:
        console.print(f"[red]Migration failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json({"revision": revision, "sqlOnly": sql})
    elif not sql:
        console.print(f"[green]✓[/green] Website store schema upgraded to {revision}")
