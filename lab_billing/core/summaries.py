"""
Financial summaries and donation/payment consistency checks.

Complements transaction-level reconciliation with aggregate views:
payment totals by status, verified versus unverified donations, and
donations whose payment record disagrees with them.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import Select, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_billing.database.models import AuditLog, Donation, Payment, WebhookEvent
from lab_billing.timeutils import utcnow

logger = structlog.get_logger(__name__)

PAYMENT_STATUSES = ("paid", "pending", "failed", "cancelled", "refunded")
DONATION_STATUSES = ("paid", "pending", "failed", "cancelled")


def _in_window(
    stmt: Select, column: Any, start: Optional[datetime], end: Optional[datetime]
) -> Select:
    if start is not None:
        stmt = stmt.where(column >= start)
    if end is not None:
        stmt = stmt.where(column < end)
    return stmt


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0))


class FinancialReconciliationService:
    """Aggregate payment and donation figures over a window."""

    async def payment_summary(
        self,
        db: AsyncSession,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        county: Optional[str] = None,
    ) -> Dict[str, Any]:
        stmt = select(Payment.status, func.count(Payment.id), func.sum(Payment.amount))
        stmt = _in_window(stmt, Payment.created_at, start, end)
        if county:
            stmt = stmt.where(Payment.county == county)
        rows = (await db.execute(stmt.group_by(Payment.status))).all()

        summary: Dict[str, Any] = {
            "entity": "payments",
            "total_count": 0,
            "total_amount": Decimal("0"),
        }
        for status in PAYMENT_STATUSES:
            summary[f"{status}_count"] = 0
            summary[f"{status}_amount"] = Decimal("0")
        for status, count, amount in rows:
            summary[f"{status}_count"] = count
            summary[f"{status}_amount"] = _money(amount)
            summary["total_count"] += count
            summary["total_amount"] += _money(amount)

        summary["has_discrepancy"] = summary["pending_count"] > 0 or summary["failed_count"] > 0
        return summary

    async def donation_summary(
        self,
        db: AsyncSession,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        county: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Paid donations count as verified; everything else is unverified."""
        stmt = select(Donation.status, func.count(Donation.id), func.sum(Donation.amount))
        stmt = _in_window(stmt, Donation.created_at, start, end)
        if county:
            stmt = stmt.where(Donation.county == county)
        rows = (await db.execute(stmt.group_by(Donation.status))).all()

        summary: Dict[str, Any] = {
            "entity": "donations",
            "total_count": 0,
            "total_amount": Decimal("0"),
            "verified_count": 0,
            "verified_amount": Decimal("0"),
            "unverified_count": 0,
            "unverified_amount": Decimal("0"),
        }
        for status, count, amount in rows:
            summary["total_count"] += count
            summary["total_amount"] += _money(amount)
            bucket = "verified" if status == "paid" else "unverified"
            summary[f"{bucket}_count"] += count
            summary[f"{bucket}_amount"] += _money(amount)

        summary["has_discrepancy"] = summary["unverified_amount"] > 0
        return summary

    async def report(
        self,
        db: AsyncSession,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        county: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Both summaries for the window.

        When ``actor`` is given the report generation is audited.
        """
        payments = await self.payment_summary(db, start, end, county)
        donations = await self.donation_summary(db, start, end, county)
        report = {
            "period_start": start.isoformat() if start else None,
            "period_end": end.isoformat() if end else None,
            "county": county,
            "payments": payments,
            "donations": donations,
            "has_discrepancies": payments["has_discrepancy"] or donations["has_discrepancy"],
            "generated_at": utcnow().isoformat(),
        }

        if actor:
            db.add(
                AuditLog(
                    action="financial_report_generated",
                    model_type="payment",
                    actor=actor,
                    new_values={
                        "payments_total": str(payments["total_amount"]),
                        "donations_total": str(donations["total_amount"]),
                        "has_discrepancies": report["has_discrepancies"],
                    },
                )
            )
            await db.commit()

        logger.info(
            "financial_report_generated",
            payments_total=str(payments["total_amount"]),
            donations_total=str(donations["total_amount"]),
            has_discrepancies=report["has_discrepancies"],
        )
        return report

    async def flag_discrepancy(
        self,
        db: AsyncSession,
        model_type: str,
        model_id: Any,
        reason: str,
        actor: Optional[str] = None,
    ) -> AuditLog:
        """Record a discrepancy spotted by an operator."""
        entry = AuditLog(
            action="discrepancy_flagged",
            model_type=model_type,
            model_id=str(model_id),
            actor=actor,
            notes=reason,
        )
        db.add(entry)
        await db.commit()

        logger.warning(
            "discrepancy_flagged",
            model_type=model_type,
            model_id=str(model_id),
            reason=reason,
            actor=actor,
        )
        return entry


class DonationReconciliationService:
    """Keeps donations consistent with their payments and webhook events."""

    async def _payment_for(self, db: AsyncSession, donation: Donation) -> Optional[Payment]:
        if donation.payment_id is not None:
            return await db.get(Payment, donation.payment_id)
        stmt = (
            select(Payment)
            .where(Payment.payable_type == "donation", Payment.payable_id == donation.id)
            .order_by(Payment.id)
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def reconcile_donation(self, db: AsyncSession, donation: Donation) -> str:
        """
        Bring one donation in line with its payment and commit.

        Without a payment, a processed webhook event for the donation's
        reference is taken as proof of payment and a payment is created.

        Returns:
            str: ``synced``, ``unchanged``, ``payment_created`` or ``no_payment``
        """
        try:
            payment = await self._payment_for(db, donation)
            if payment is not None:
                if payment.amount != donation.amount:
                    logger.warning(
                        "donation_amount_mismatch",
                        donation_id=donation.id,
                        donation_amount=str(donation.amount),
                        payment_amount=str(payment.amount),
                    )
                donation.payment_id = payment.id
                outcome = "unchanged"
                if payment.status in ("paid", "failed", "cancelled") and (
                    donation.status != payment.status
                ):
                    donation.status = payment.status
                    outcome = "synced"
                await db.commit()
                return outcome

            event_stmt = (
                select(WebhookEvent)
                .where(
                    WebhookEvent.order_reference == donation.reference,
                    WebhookEvent.status == "processed",
                )
                .order_by(WebhookEvent.id)
                .limit(1)
            )
            event = (await db.execute(event_stmt)).scalar_one_or_none()
            if event is None:
                return "no_payment"

            payload = event.payload or {}
            payment = Payment(
                member_id=donation.member_id,
                payable_type="donation",
                payable_id=donation.id,
                amount=donation.amount,
                currency=donation.currency,
                status="paid",
                gateway=event.provider,
                method=payload.get("payment_method"),
                external_reference=event.external_id,
                receipt_url=payload.get("receipt_url"),
                county=donation.county,
                meta=payload,
                paid_at=event.processed_at or utcnow(),
            )
            db.add(payment)
            await db.flush()

            donation.payment_id = payment.id
            donation.status = "paid"
            await db.commit()

            logger.info(
                "donation_payment_created_from_webhook",
                donation_id=donation.id,
                payment_id=payment.id,
                webhook_event_id=event.id,
            )
            return "payment_created"

        except Exception:
            await db.rollback()
            raise

    async def reconcile_all(
        self,
        db: AsyncSession,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Reconcile every pending donation; failures are collected per donation."""
        stmt = _in_window(
            select(Donation).where(Donation.status == "pending"), Donation.created_at, start, end
        )
        donations = list((await db.execute(stmt.order_by(Donation.id))).scalars().all())
        donation_ids = [donation.id for donation in donations]

        results: Dict[str, Any] = {
            "total_checked": len(donations),
            "reconciled": 0,
            "payments_created": 0,
            "discrepancies": 0,
            "errors": [],
        }
        for donation_id in donation_ids:
            try:
                # A rollback for an earlier donation expires loaded rows
                donation = await db.get(Donation, donation_id)
                outcome = await self.reconcile_donation(db, donation)
            except Exception as e:
                logger.error("donation_reconciliation_error", donation_id=donation_id, error=str(e))
                results["discrepancies"] += 1
                results["errors"].append({"donation_id": donation_id, "error": str(e)})
                continue
            results["reconciled"] += 1
            if outcome == "payment_created":
                results["payments_created"] += 1

        logger.info(
            "donation_reconciliation_completed",
            total_checked=results["total_checked"],
            reconciled=results["reconciled"],
            discrepancies=results["discrepancies"],
        )
        return results

    async def detect_discrepancies(self, db: AsyncSession) -> Dict[str, List[Dict[str, Any]]]:
        """
        Find donations that disagree with their payments.

        - missing_payments: paid donations with no payment record
        - amount_mismatches: donation and payment amounts differ
        - status_mismatches: payment settled but the donation shows otherwise
        """
        linked = or_(
            Donation.payment_id == Payment.id,
            (Payment.payable_type == "donation") & (Payment.payable_id == Donation.id),
        )

        has_payment = select(Payment.id).where(linked).exists()
        missing_stmt = select(Donation).where(
            Donation.status == "paid", Donation.payment_id.is_(None), ~has_payment
        )
        missing = [
            {"donation_id": d.id, "reference": d.reference, "amount": str(d.amount)}
            for d in (await db.execute(missing_stmt.order_by(Donation.id))).scalars().all()
        ]

        pair_stmt = select(Donation, Payment).join(Payment, linked).order_by(Donation.id)
        amount_mismatches = []
        status_mismatches = []
        for donation, payment in (await db.execute(pair_stmt)).all():
            if donation.amount != payment.amount:
                amount_mismatches.append(
                    {
                        "donation_id": donation.id,
                        "reference": donation.reference,
                        "donation_amount": str(donation.amount),
                        "payment_amount": str(payment.amount),
                        "payment_id": payment.id,
                    }
                )
            if payment.status in ("paid", "failed", "cancelled") and (
                donation.status != payment.status
            ):
                status_mismatches.append(
                    {
                        "donation_id": donation.id,
                        "reference": donation.reference,
                        "donation_status": donation.status,
                        "payment_status": payment.status,
                        "payment_id": payment.id,
                    }
                )

        return {
            "missing_payments": missing,
            "amount_mismatches": amount_mismatches,
            "status_mismatches": status_mismatches,
        }

    async def summary(
        self,
        db: AsyncSession,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Donation counts and totals by county and by day."""
        county_stmt = _in_window(
            select(
                Donation.county,
                func.count(Donation.id),
                func.sum(case((Donation.status == "paid", 1), else_=0)),
                func.sum(Donation.amount),
                func.sum(case((Donation.status == "paid", Donation.amount), else_=0)),
                func.sum(case((Donation.status == "pending", Donation.amount), else_=0)),
            ),
            Donation.created_at,
            start,
            end,
        )
        by_county = [
            {
                "county": county,
                "total_donations": count,
                "paid_donations": int(paid or 0),
                "total_amount": str(_money(amount)),
                "total_paid": str(_money(paid_amount)),
                "total_pending": str(_money(pending_amount)),
            }
            for county, count, paid, amount, paid_amount, pending_amount in (
                await db.execute(county_stmt.group_by(Donation.county).order_by(Donation.county))
            ).all()
        ]

        day = func.date(Donation.created_at)
        day_stmt = _in_window(
            select(day, func.count(Donation.id), func.sum(Donation.amount)).where(
                Donation.status == "paid"
            ),
            Donation.created_at,
            start,
            end,
        )
        by_date = [
            {"date": str(value), "paid_donations": count, "total_paid": str(_money(amount))}
            for value, count, amount in (
                await db.execute(day_stmt.group_by(day).order_by(day))
            ).all()
        ]

        return {"by_county": by_county, "by_date": by_date}
