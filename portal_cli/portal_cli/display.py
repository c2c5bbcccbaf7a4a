"""Rich output formatting for the SiteDesk CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from billing_engine.models.website import WebsiteBillingView
    from portal_api.services.billing_reconciler import ReconciliationSummary


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "ACTIVE": "green",
    "PENDING": "yellow",
    "OVERDUE": "dark_orange",
    "SUSPENDED": "red",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


# ---------------------------------------------------------------------------
# Reconciliation summary
# ---------------------------------------------------------------------------


def display_summary(console: Console, summary: ReconciliationSummary) -> None:
    """Render the counters of one reconciliation run.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    summary:
        The run summary returned by the reconciler.
    """
    table = Table(show_header=True, header_style="bold")
    table.add_column("Outcome")
    table.add_column("Count", justify="right")

    table.add_row("Candidates", str(summary.candidates))
    table.add_row(f"{_coloured_status('PENDING')} -> {_coloured_status('SUSPENDED')}", str(summary.pending_to_suspended))
    table.add_row(f"{_coloured_status('ACTIVE')} -> {_coloured_status('OVERDUE')}", str(summary.active_to_overdue))
    table.add_row("Skipped", str(summary.skipped))
    table.add_row("Conflicts", str(summary.conflicts))
    table.add_row("Errors", f"[red]{summary.errors}[/red]" if summary.errors else "0")
    table.add_row(
        "Notification failures",
        f"[yellow]{summary.notification_failures}[/yellow]" if summary.notification_failures else "0",
    )

    finished = summary.finished_at.isoformat() if summary.finished_at else "-"
    console.print(
        Panel(
            table,
            title="Billing reconciliation",
            subtitle=f"trigger={summary.trigger} now={summary.started_at.isoformat()} finished={finished}",
            border_style="blue",
        )
    )


# ---------------------------------------------------------------------------
# Upcoming due dates
# ---------------------------------------------------------------------------


def display_upcoming(console: Console, views: list[WebsiteBillingView], days_ahead: int) -> None:
    """Render ACTIVE websites whose payment falls due soon."""
    if not views:
        console.print(f"[dim]No websites due within {days_ahead} days.[/dim]")
        return

    table = Table(title=f"Due within {days_ahead} days", show_header=True, header_style="bold")
    table.add_column("Website", style="cyan")
    table.add_column("Name")
    table.add_column("Due at")
    table.add_column("Contact", style="dim")

    for view in views:
        table.add_row(
            view.website_id,
            view.name,
            view.due_at.strftime("%Y-%m-%d %H:%M UTC") if view.due_at else "-",
            view.contact.email or "-",
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Status report
# ---------------------------------------------------------------------------


def display_status(console: Console, stats: dict[str, Any], runs: list[dict[str, Any]]) -> None:
    """Render website counts per billing status and the latest runs."""
    counts = Table(title="Billing status", show_header=True, header_style="bold")
    counts.add_column("Status")
    counts.add_column("Websites", justify="right")
    for status, count in stats["byStatus"].items():
        counts.add_row(_coloured_status(status), str(count))
    counts.add_row("[bold]Total[/bold]", f"[bold]{stats['total']}[/bold]")
    console.print(counts)
    console.print(f"Due within {stats['dueWithinDays']} days: [bold]{stats['dueSoon']}[/bold]")

    if not runs:
        console.print("[dim]No reconciliation runs recorded yet.[/dim]")
        return

    history = Table(title="Recent reconciliation runs", show_header=True, header_style="bold")
    history.add_column("Run at")
    history.add_column("Trigger")
    history.add_column("Suspended", justify="right")
    history.add_column("Overdue", justify="right")
    history.add_column("Errors", justify="right")
    for run in runs:
        history.add_row(
            run["runAt"],
            run["trigger"],
            str(run["pendingToSuspended"]),
            str(run["activeToOverdue"]),
            f"[red]{run['errors']}[/red]" if run["errors"] else "0",
        )
    console.print(history)
