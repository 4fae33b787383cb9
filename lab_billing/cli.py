"""CLI for lab billing.

Runs reconciliation, exports and subscription maintenance from the shell.
"""

import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.ext.asyncio import AsyncSession

from lab_billing.core.export import ExportError, export_items_csv
from lab_billing.core.lifecycle import SubscriptionLifecycleService
from lab_billing.core.reconciliation import ReconciliationEngine, ReconciliationError
from lab_billing.core.reminders import RenewalReminderService
from lab_billing.core.renewal import AutoRenewalService
from lab_billing.database.connection import close_db, get_session_factory, init_db
from lab_billing.monitoring.logging import setup_logging
from lab_billing.timeutils import utcnow

T = TypeVar("T")

app = typer.Typer(
    name="lab-billing",
    help="Lab billing - reconciliation and subscription maintenance",
    add_completion=False,
)
reconcile_app = typer.Typer(help="Payment reconciliation")
subscriptions_app = typer.Typer(help="Subscription lifecycle")
renewals_app = typer.Typer(help="Auto-renewal jobs")
reminders_app = typer.Typer(help="Renewal reminders")
app.add_typer(reconcile_app, name="reconcile")
app.add_typer(subscriptions_app, name="subscriptions")
app.add_typer(renewals_app, name="renewals")
app.add_typer(reminders_app, name="reminders")

console = Console()


def _run(operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """Run ``operation`` with a fresh session and dispose the engine afterwards."""

    async def runner() -> T:
        await init_db()
        try:
            async with get_session_factory()() as db:
                return await operation(db)
        finally:
            await close_db()

    return asyncio.run(runner())


def load_transactions(path: Path) -> List[Dict[str, Any]]:
    """
    Load transactions from a JSON file.

    Accepts a list of objects or an object with a ``transactions`` list.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("transactions")
    if not isinstance(data, list):
        raise typer.BadParameter(
            f"{path} must hold a JSON list or an object with a 'transactions' list"
        )
    return data


def _print_summary(result: Dict[str, Any]) -> None:
    title = "Reconciliation (dry run)" if result.get("dry_run") else "Reconciliation"
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Run", result.get("run_id") or "-")
    table.add_row("Status", result["status"])
    table.add_row("Matched", str(result["total_matched"]))
    table.add_row("Unmatched (app)", str(result["total_unmatched_app"]))
    table.add_row("Unmatched (gateway)", str(result["total_unmatched_gateway"]))
    table.add_row("Amount mismatches", str(result["total_amount_mismatch"]))
    table.add_row("Status mismatches", str(result["total_status_mismatch"]))
    table.add_row("Duplicates", str(result["total_duplicates"]))
    table.add_row("App total", str(result["total_app_amount"]))
    table.add_row("Gateway total", str(result["total_gateway_amount"]))
    table.add_row("Discrepancy", str(result["total_discrepancy"]))
    console.print(table)


@reconcile_app.command("run")
def reconcile_run(
    period_start: Optional[datetime] = typer.Option(
        None, "--period-start", help="Window start (default: yesterday 00:00 UTC)"
    ),
    period_end: Optional[datetime] = typer.Option(
        None, "--period-end", help="Window end (default: today 00:00 UTC)"
    ),
    county: Optional[str] = typer.Option(None, "--county", help="Only this county"),
    app_file: Optional[Path] = typer.Option(
        None, "--app-file", exists=True, dir_okay=False, help="App transactions JSON"
    ),
    gateway_file: Optional[Path] = typer.Option(
        None, "--gateway-file", exists=True, dir_okay=False, help="Gateway transactions JSON"
    ),
    sync: bool = typer.Option(
        True, "--sync/--no-sync", help="Query the gateway for each recorded payment"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute without saving"),
    created_by: str = typer.Option("cli", "--created-by", help="Recorded as the run author"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
) -> None:
    """Reconcile app payments against the gateway."""
    setup_logging("DEBUG" if verbose else None)

    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    start = period_start or today - timedelta(days=1)
    end = period_end or today

    engine = ReconciliationEngine()
    gateway_records = load_transactions(gateway_file) if gateway_file else None

    async def operation(db: AsyncSession) -> Dict[str, Any]:
        if app_file is not None:
            return await engine.run_from_data(
                db,
                load_transactions(app_file),
                gateway_records or [],
                period_start=start,
                period_end=end,
                county=county,
                created_by=created_by,
                notes=f"cli upload: {app_file.name}",
                dry_run=dry_run,
            )
        return await engine.reconcile_period(
            db,
            start,
            end,
            gateway_transactions=gateway_records,
            county=county,
            sync=sync,
            created_by=created_by,
            dry_run=dry_run,
        )

    console.print(f"[blue]Reconciling[/blue] {start.isoformat()} to {end.isoformat()}")
    try:
        result = _run(operation)
    except ReconciliationError as e:
        console.print(f"\n[red]Reconciliation failed:[/red] {e}")
        raise typer.Exit(1)

    _print_summary(result)
    if dry_run and result.get("discrepancies"):
        console.print(f"[yellow]{len(result['discrepancies'])} discrepancies (not saved)[/yellow]")


@reconcile_app.command("export")
def reconcile_export(
    output: Path = typer.Option(..., "--output", "-o", help="CSV file to write"),
    status: Optional[str] = typer.Option(None, "--status", help="Item status filter"),
    county: Optional[str] = typer.Option(None, "--county", help="Only runs for this county"),
    start_date: Optional[datetime] = typer.Option(None, "--start-date"),
    end_date: Optional[datetime] = typer.Option(None, "--end-date"),
) -> None:
    """Export reconciliation items as CSV."""
    setup_logging()
    try:
        content = _run(lambda db: export_items_csv(db, start_date, end_date, county, status))
    except ExportError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    output.write_text(content, encoding="utf-8")
    rows = max(content.count("\n") - 1, 0)
    console.print(f"[green]Wrote[/green] {rows} rows to {output}")


@subscriptions_app.command("process-expired")
def subscriptions_process_expired() -> None:
    """Move expired subscriptions into grace and end overdue grace periods."""
    setup_logging()
    service = SubscriptionLifecycleService()
    summary = _run(service.process_expired)
    console.print(
        f"[green]Done.[/green] entered grace: {summary['entered_grace']}, "
        f"downgraded: {summary['downgraded']}, suspended: {summary['suspended']}"
    )


@renewals_app.command("process-due")
def renewals_process_due(
    window_hours: int = typer.Option(24, "--window-hours", help="Renew periods ending within"),
) -> None:
    """Charge subscriptions that are due for renewal."""
    setup_logging()
    service = AutoRenewalService()
    summary = _run(lambda db: service.process_due_renewals(db, window_hours=window_hours))

    table = Table(title="Renewals")
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", justify="right")
    for outcome, count in summary.items():
        table.add_row(outcome, str(count))
    console.print(table)


@reminders_app.command("send")
def reminders_send(
    due_days: int = typer.Option(
        0, "--due-days", help="Include reminders due this many days ahead"
    ),
) -> None:
    """Queue due renewal reminders for delivery."""
    setup_logging()
    service = RenewalReminderService()

    async def operation(db: AsyncSession) -> Dict[str, int]:
        await service.schedule_upcoming(db)
        return await service.send_due(db, due_days=due_days)

    summary = _run(operation)
    console.print(
        f"[green]Queued[/green] {summary['sent']} reminders, skipped {summary['skipped']}"
    )


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
