"""CSV export of reconciliation items."""
import csv
import io
from datetime import datetime
from typing import Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_billing.core.matching import ITEM_STATUSES
from lab_billing.database.models import ReconciliationItem, ReconciliationRun

logger = structlog.get_logger(__name__)

CSV_HEADER = ("run_id", "transaction_id", "reference", "source", "date", "amount", "status")
UTF8_BOM = "\ufeff"


class ExportError(Exception):
    """Raised when an export request is invalid."""

    pass


def _render(rows: Iterable[tuple]) -> str:
    buffer = io.StringIO()
    buffer.write(UTF8_BOM)
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for run_uuid, item in rows:
        writer.writerow(
            (
                run_uuid,
                item.transaction_id or "",
                item.reference or "",
                item.source,
                item.transaction_date.isoformat() if item.transaction_date else "",
                f"{item.amount:.2f}",
                item.status,
            )
        )
    return buffer.getvalue()


async def export_items_csv(
    db: AsyncSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    county: Optional[str] = None,
    status: Optional[str] = None,
) -> str:
    """
    Export reconciliation items across runs as CSV.

    Args:
        start_date: Items dated on or after this instant
        end_date: Items dated on or before this instant
        county: Runs scoped to this county
        status: Item status filter

    Raises:
        ExportError: If ``status`` is not a known item status
    """
    if status and status not in ITEM_STATUSES:
        raise ExportError(
            f"Invalid status '{status}'. Expected one of {', '.join(ITEM_STATUSES)}"
        )

    stmt = select(ReconciliationRun.run_id, ReconciliationItem).join(
        ReconciliationRun, ReconciliationRun.id == ReconciliationItem.reconciliation_run_id
    )
    if start_date is not None:
        stmt = stmt.where(ReconciliationItem.transaction_date >= start_date)
    if end_date is not None:
        stmt = stmt.where(ReconciliationItem.transaction_date <= end_date)
    if county:
        stmt = stmt.where(ReconciliationRun.county == county)
    if status:
        stmt = stmt.where(ReconciliationItem.status == status)

    rows = (await db.execute(stmt.order_by(ReconciliationRun.id, ReconciliationItem.id))).all()
    logger.info("reconciliation_items_exported", rows=len(rows), status=status, county=county)
    return _render(rows)


async def export_run_csv(db: AsyncSession, run_id: str) -> str:
    """
    Export every item of one run as CSV.

    Raises:
        ExportError: If the run does not exist
    """
    run = (
        await db.execute(select(ReconciliationRun).where(ReconciliationRun.run_id == run_id))
    ).scalar_one_or_none()
    if run is None:
        raise ExportError(f"Reconciliation run {run_id} not found")

    items = (
        await db.execute(
            select(ReconciliationItem)
            .where(ReconciliationItem.reconciliation_run_id == run.id)
            .order_by(ReconciliationItem.id)
        )
    ).scalars().all()
    logger.info("reconciliation_run_exported", run_id=run_id, rows=len(items))
    return _render((run.run_id, item) for item in items)
