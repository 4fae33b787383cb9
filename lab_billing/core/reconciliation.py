"""
Reconciliation engine for comparing gateway transactions with app records.

Runs daily (or on demand) to detect discrepancies such as:
- Payments recorded in the app but unknown to the gateway
- Gateway transactions missing from the app
- Amount and status mismatches
- Duplicate transaction ids

Every run is persisted as a ``ReconciliationRun`` with one
``ReconciliationItem`` per outcome row, forming the discrepancy ledger.
"""
import time
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog
from pydantic import ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_billing.config import get_settings
from lab_billing.core.matching import (
    ITEM_STATUSES,
    MatchedItem,
    MatchingTolerances,
    MatchResult,
    TransactionMatcher,
    TransactionRecord,
)
from lab_billing.core.outbox import write_outbox_event
from lab_billing.database.models import (
    Donation,
    Payment,
    ReconciliationItem,
    ReconciliationRun,
)
from lab_billing.integrations.factory import get_gateway
from lab_billing.integrations.gateway import GatewayError, PaymentGateway
from lab_billing.monitoring.metrics import metrics
from lab_billing.timeutils import utcnow

logger = structlog.get_logger(__name__)

TransactionInput = Union[TransactionRecord, Dict[str, Any]]

# Per-run overrides accepted in ``options``
TOLERANCE_OPTIONS = {
    "amount_percentage_tolerance": "amount_percentage",
    "amount_absolute_tolerance": "amount_absolute",
    "date_tolerance": "date_days",
    "fuzzy_match_threshold": "fuzzy_threshold",
}


class ReconciliationError(Exception):
    """Raised when reconciliation fails."""

    pass


class InvalidTransactionDataError(ReconciliationError):
    """Raised when submitted transactions fail validation."""

    pass


def _to_records(transactions: Iterable[TransactionInput]) -> List[TransactionRecord]:
    records = []
    for transaction in transactions:
        if isinstance(transaction, TransactionRecord):
            records.append(transaction)
        else:
            records.append(TransactionRecord.model_validate(transaction))
    return records


def _item_to_dict(item: MatchedItem) -> Dict[str, Any]:
    record = item.record
    return {
        "source": item.source,
        "status": item.status,
        "transaction_id": record.transaction_id,
        "reference": record.reference,
        "amount": str(record.amount),
        "date": record.date.isoformat() if record.date else None,
        "linked_transaction_id": item.linked_transaction_id,
        "discrepancy_amount": (
            str(item.discrepancy_amount) if item.discrepancy_amount is not None else None
        ),
        "match_confidence": item.match_confidence,
        "match_method": item.match_method,
    }


class ReconciliationEngine:
    """
    Reconciliation engine for payment verification.

    Matching itself is delegated to ``TransactionMatcher``; the engine
    gathers inputs, persists the outcome and reports on past runs.
    """

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        tolerances: Optional[MatchingTolerances] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            gateway: Gateway queried in sync mode (defaults to the configured one)
            tolerances: Matching tolerances (defaults to settings)
        """
        self._gateway = gateway
        self.tolerances = tolerances or MatchingTolerances.from_settings(get_settings())
        logger.info("reconciliation_engine_initialized", **self.tolerances.as_dict())

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    def _tolerances_for(self, options: Optional[Dict[str, Any]]) -> MatchingTolerances:
        values = self.tolerances.as_dict()
        for option, field_name in TOLERANCE_OPTIONS.items():
            if options and options.get(option) is not None:
                values[field_name] = options[option]
        return MatchingTolerances(**values)

    @staticmethod
    def _build_item(run_pk: int, item: MatchedItem) -> ReconciliationItem:
        record = item.record
        meta = dict(record.metadata)
        if item.match_method:
            meta["match_method"] = item.match_method
        if record.status:
            meta["record_status"] = record.status
        if record.currency:
            meta["currency"] = record.currency

        return ReconciliationItem(
            reconciliation_run_id=run_pk,
            transaction_id=record.transaction_id,
            reference=record.reference,
            source=item.source,
            transaction_date=record.date,
            amount=record.amount,
            payer_name=record.payer_name,
            payer_phone=record.payer_phone,
            payer_email=record.payer_email,
            account=record.account,
            county=record.county,
            status=item.status,
            linked_transaction_id=item.linked_transaction_id,
            discrepancy_amount=item.discrepancy_amount,
            match_confidence=item.match_confidence,
            meta=meta or None,
            resolution_status="open" if item.is_discrepancy else None,
        )

    @staticmethod
    def _apply_totals(run: ReconciliationRun, result: MatchResult) -> None:
        run.total_matched = result.total_matched
        run.total_unmatched_app = result.total_unmatched_app
        run.total_unmatched_gateway = result.total_unmatched_gateway
        run.total_amount_mismatch = result.total_amount_mismatch
        run.total_status_mismatch = result.total_status_mismatch
        run.total_duplicates = result.total_duplicates
        run.total_app_amount = result.total_app_amount
        run.total_gateway_amount = result.total_gateway_amount
        run.total_discrepancy = result.total_discrepancy

    async def run_from_data(
        self,
        db: AsyncSession,
        app_transactions: Iterable[TransactionInput],
        gateway_transactions: Iterable[TransactionInput],
        *,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        county: Optional[str] = None,
        created_by: Optional[str] = None,
        notes: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Match two transaction lists and record the outcome.

        Args:
            db: Database session
            app_transactions: Transactions recorded by the app
            gateway_transactions: Transactions reported by the gateway
            options: Per-run tolerance overrides
            dry_run: Compute the summary without writing anything

        Returns:
            Dict[str, Any]: Run summary

        Raises:
            InvalidTransactionDataError: If a transaction fails validation
            ReconciliationError: If the run fails
        """
        start_time = time.time()
        try:
            app_records = _to_records(app_transactions)
            gateway_records = _to_records(gateway_transactions)
        except ValidationError as e:
            raise InvalidTransactionDataError(f"Invalid transaction data: {e}")

        matcher = TransactionMatcher(self._tolerances_for(options))

        if dry_run:
            result = matcher.match(app_records, gateway_records)
            status = "partial" if result.has_discrepancies else "success"
            logger.info(
                "reconciliation_dry_run_completed",
                status=status,
                app_count=len(app_records),
                gateway_count=len(gateway_records),
                **result.item_counts(),
            )
            return {
                "run_id": None,
                "status": status,
                "dry_run": True,
                "period_start": period_start.isoformat() if period_start else None,
                "period_end": period_end.isoformat() if period_end else None,
                "county": county,
                **result.summary(),
                "item_counts": result.item_counts(),
                "discrepancies": [_item_to_dict(i) for i in result.items if i.is_discrepancy],
            }

        run_id = str(uuid.uuid4())
        run = ReconciliationRun(
            run_id=run_id,
            status="running",
            started_at=utcnow(),
            period_start=period_start,
            period_end=period_end,
            county=county,
            created_by=created_by,
            notes=notes,
            options={
                "tolerances": matcher.tolerances.as_dict(),
                "app_count": len(app_records),
                "gateway_count": len(gateway_records),
            },
        )
        db.add(run)
        await db.commit()
        run_pk = run.id

        logger.info(
            "reconciliation_started",
            run_id=run_id,
            app_count=len(app_records),
            gateway_count=len(gateway_records),
            county=county,
        )

        try:
            result = matcher.match(app_records, gateway_records)
            for item in result.items:
                db.add(self._build_item(run.id, item))

            self._apply_totals(run, result)
            run.status = "partial" if result.has_discrepancies else "success"
            run.completed_at = utcnow()

            write_outbox_event(
                db,
                aggregate_type="reconciliation_run",
                aggregate_id=run_id,
                event_type="reconciliation.completed",
                payload={"run_id": run_id, "status": run.status, **result.summary()},
            )
            await db.commit()

        except Exception as e:
            logger.error("reconciliation_failed", run_id=run_id, error=str(e))
            await db.rollback()

            # Rollback expires the run; reload it before recording the failure
            run = await db.get(ReconciliationRun, run_pk)
            run.status = "failed"
            run.completed_at = utcnow()
            run.error_message = str(e)
            await db.commit()

            metrics.record_reconciliation_run("failed", {}, 0.0, time.time() - start_time)
            raise ReconciliationError(f"Reconciliation failed: {str(e)}")

        duration = time.time() - start_time
        metrics.record_reconciliation_run(
            run.status, result.item_counts(), float(result.total_discrepancy), duration
        )
        logger.info(
            "reconciliation_completed",
            run_id=run_id,
            status=run.status,
            matched=result.total_matched,
            unmatched_app=result.total_unmatched_app,
            unmatched_gateway=result.total_unmatched_gateway,
            amount_mismatch=result.total_amount_mismatch,
            status_mismatch=result.total_status_mismatch,
            duplicates=result.total_duplicates,
            total_discrepancy=str(result.total_discrepancy),
            duration_seconds=round(duration, 3),
        )

        return {
            "run_id": run_id,
            "status": run.status,
            "dry_run": False,
            "period_start": period_start.isoformat() if period_start else None,
            "period_end": period_end.isoformat() if period_end else None,
            "county": county,
            **result.summary(),
            "item_counts": result.item_counts(),
        }

    async def collect_app_transactions(
        self,
        db: AsyncSession,
        period_start: datetime,
        period_end: datetime,
        county: Optional[str] = None,
    ) -> List[TransactionRecord]:
        """
        Build app-side records from payments and donations created in the window.

        Donations already backed by a payment are covered by that payment.
        """
        payment_stmt = select(Payment).where(
            Payment.created_at >= period_start,
            Payment.created_at < period_end,
            Payment.status != "cancelled",
        )
        if county:
            payment_stmt = payment_stmt.where(Payment.county == county)
        payments = (await db.execute(payment_stmt.order_by(Payment.id))).scalars().all()

        records = [
            TransactionRecord(
                transaction_id=payment.transaction_id or payment.external_reference,
                reference=payment.reference,
                amount=payment.amount,
                date=payment.paid_at or payment.created_at,
                status=payment.status,
                currency=payment.currency,
                county=payment.county,
                metadata={
                    "payment_id": payment.id,
                    "payable_type": payment.payable_type,
                    "payable_id": payment.payable_id,
                },
            )
            for payment in payments
        ]

        donation_stmt = select(Donation).where(
            Donation.created_at >= period_start,
            Donation.created_at < period_end,
            Donation.payment_id.is_(None),
            Donation.status != "cancelled",
        )
        if county:
            donation_stmt = donation_stmt.where(Donation.county == county)
        donations = (await db.execute(donation_stmt.order_by(Donation.id))).scalars().all()

        records.extend(
            TransactionRecord(
                reference=donation.reference,
                amount=donation.amount,
                date=donation.created_at,
                status=donation.status,
                currency=donation.currency,
                payer_name=donation.donor_name,
                payer_email=donation.donor_email,
                county=donation.county,
                metadata={"donation_id": donation.id},
            )
            for donation in donations
        )

        logger.info(
            "app_transactions_collected",
            payments=len(payments),
            donations=len(donations),
            period_start=period_start.isoformat(),
            period_end=period_end.isoformat(),
        )
        return records

    async def _fetch_gateway_transactions(
        self, app_records: List[TransactionRecord]
    ) -> List[TransactionRecord]:
        """Query the gateway for every app record carrying a gateway id."""
        gateway_records = []
        for record in app_records:
            if not record.transaction_id:
                continue
            try:
                result = await self.gateway.query_status(record.transaction_id)
            except GatewayError as e:
                logger.warning(
                    "gateway_status_query_failed",
                    transaction_id=record.transaction_id,
                    error=str(e),
                )
                continue

            if result.status.upper() == "UNKNOWN":
                continue

            gateway_records.append(
                TransactionRecord(
                    transaction_id=result.reference or record.transaction_id,
                    reference=result.merchant_reference or record.reference,
                    amount=result.amount if result.amount is not None else record.amount,
                    date=result.occurred_at,
                    status=result.status,
                    metadata={"gateway": self.gateway.name},
                )
            )
        return gateway_records

    async def reconcile_period(
        self,
        db: AsyncSession,
        period_start: datetime,
        period_end: datetime,
        gateway_transactions: Optional[Iterable[TransactionInput]] = None,
        county: Optional[str] = None,
        sync: bool = True,
        created_by: Optional[str] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Reconcile app records in a window against gateway records.

        Without an explicit gateway list the gateway is queried per app
        record when ``sync`` is set; otherwise the gateway side is empty.
        """
        app_records = await self.collect_app_transactions(db, period_start, period_end, county)

        if gateway_transactions is None:
            gateway_records = await self._fetch_gateway_transactions(app_records) if sync else []
        else:
            gateway_records = list(gateway_transactions)

        return await self.run_from_data(
            db,
            app_records,
            gateway_records,
            period_start=period_start,
            period_end=period_end,
            county=county,
            created_by=created_by,
            notes="gateway sync" if gateway_transactions is None and sync else None,
            dry_run=dry_run,
        )

    async def reconcile_yesterday(self, db: AsyncSession, sync: bool = True) -> Dict[str, Any]:
        """
        Reconcile payments for yesterday (UTC).

        Returns:
            Dict[str, Any]: Reconciliation results
        """
        today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        yesterday = today - timedelta(days=1)
        return await self.reconcile_period(
            db, yesterday, today, sync=sync, created_by="scheduler"
        )

    async def list_runs(
        self,
        db: AsyncSession,
        status: Optional[str] = None,
        county: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        conditions = []
        if status:
            conditions.append(ReconciliationRun.status == status)
        if county:
            conditions.append(ReconciliationRun.county == county)

        total = (
            await db.execute(select(func.count(ReconciliationRun.id)).where(*conditions))
        ).scalar_one()
        stmt = (
            select(ReconciliationRun)
            .where(*conditions)
            .order_by(ReconciliationRun.started_at.desc(), ReconciliationRun.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        runs = list((await db.execute(stmt)).scalars().all())
        return {"items": runs, "total": total, "page": page, "per_page": per_page}

    async def get_run(self, db: AsyncSession, run_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a run with per-status and per-resolution item counts.

        Returns:
            Optional[Dict[str, Any]]: ``{"run": ..., "summary": ...}`` or None
        """
        stmt = select(ReconciliationRun).where(ReconciliationRun.run_id == run_id)
        run = (await db.execute(stmt)).scalar_one_or_none()
        if run is None:
            return None

        status_rows = await db.execute(
            select(ReconciliationItem.status, func.count(ReconciliationItem.id))
            .where(ReconciliationItem.reconciliation_run_id == run.id)
            .group_by(ReconciliationItem.status)
        )
        by_status = {status: 0 for status in ITEM_STATUSES}
        by_status.update({status: count for status, count in status_rows.all()})

        resolution_rows = await db.execute(
            select(ReconciliationItem.resolution_status, func.count(ReconciliationItem.id))
            .where(
                ReconciliationItem.reconciliation_run_id == run.id,
                ReconciliationItem.resolution_status.is_not(None),
            )
            .group_by(ReconciliationItem.resolution_status)
        )
        by_resolution = {"open": 0, "resolved": 0, "ignored": 0}
        by_resolution.update({status: count for status, count in resolution_rows.all()})

        return {
            "run": run,
            "summary": {
                "items_by_status": by_status,
                "discrepancies_by_resolution": by_resolution,
                "total_items": sum(by_status.values()),
            },
        }

    async def get_stats(self, db: AsyncSession) -> Dict[str, Any]:
        """Aggregate figures across all runs."""
        status_rows = await db.execute(
            select(ReconciliationRun.status, func.count(ReconciliationRun.id)).group_by(
                ReconciliationRun.status
            )
        )
        runs_by_status = {status: count for status, count in status_rows.all()}
        total_runs = sum(runs_by_status.values())
        finished = sum(
            runs_by_status.get(status, 0) for status in ("success", "partial", "failed")
        )
        success_rate = (
            round(runs_by_status.get("success", 0) / finished * 100, 2) if finished else 0.0
        )

        totals = (
            await db.execute(
                select(
                    func.coalesce(func.sum(ReconciliationRun.total_matched), 0),
                    func.coalesce(func.sum(ReconciliationRun.total_unmatched_app), 0),
                    func.coalesce(func.sum(ReconciliationRun.total_unmatched_gateway), 0),
                    func.coalesce(func.sum(ReconciliationRun.total_amount_mismatch), 0),
                    func.coalesce(func.sum(ReconciliationRun.total_status_mismatch), 0),
                    func.coalesce(func.sum(ReconciliationRun.total_duplicates), 0),
                    func.coalesce(func.sum(ReconciliationRun.total_discrepancy), 0),
                )
            )
        ).one()

        last_run = (
            await db.execute(
                select(ReconciliationRun)
                .order_by(ReconciliationRun.started_at.desc(), ReconciliationRun.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()

        open_discrepancies = (
            await db.execute(
                select(func.count(ReconciliationItem.id)).where(
                    ReconciliationItem.resolution_status == "open"
                )
            )
        ).scalar_one()

        return {
            "total_runs": total_runs,
            "runs_by_status": runs_by_status,
            "success_rate": success_rate,
            "last_run": last_run,
            "total_matched": int(totals[0]),
            "total_unmatched_app": int(totals[1]),
            "total_unmatched_gateway": int(totals[2]),
            "total_amount_mismatch": int(totals[3]),
            "total_status_mismatch": int(totals[4]),
            "total_duplicates": int(totals[5]),
            "total_discrepancy": Decimal(str(totals[6])),
            "open_discrepancies": open_discrepancies,
        }

    async def delete_run(self, db: AsyncSession, run_id: str) -> bool:
        """Delete a run and its items. Returns False when the run does not exist."""
        stmt = select(ReconciliationRun).where(ReconciliationRun.run_id == run_id)
        run = (await db.execute(stmt)).scalar_one_or_none()
        if run is None:
            return False

        await db.execute(
            delete(ReconciliationItem).where(ReconciliationItem.reconciliation_run_id == run.id)
        )
        await db.delete(run)
        await db.commit()

        logger.info("reconciliation_run_deleted", run_id=run_id)
        return True
