"""
Subscription auto-renewal.

Every attempt is recorded as an ``AutoRenewalJob``. Failed attempts are
rescheduled by ``PaymentFailureHandler``:

    attempt 1 -> retry in 24 hours (retry_24h)
    attempt 2 -> retry in 3 days   (retry_3d)
    attempt 3+ -> retry in 7 days  (retry_7d), final-failure notice emitted

A gateway answer of PENDING leaves the job ``processing`` until the payment
webhook settles it through ``settle_pending_job``.
"""
import calendar
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_billing.config import get_settings
from lab_billing.core.outbox import write_outbox_event
from lab_billing.database.models import (
    AutoRenewalJob,
    Member,
    Payment,
    PaymentMethod,
    Plan,
    Subscription,
)
from lab_billing.integrations.factory import get_gateway
from lab_billing.integrations.gateway import PaymentGateway
from lab_billing.monitoring.metrics import metrics
from lab_billing.timeutils import utcnow

logger = structlog.get_logger(__name__)

RETRY_SCHEDULE = {
    1: (timedelta(days=1), "retry_24h"),
    2: (timedelta(days=3), "retry_3d"),
}
FINAL_RETRY = (timedelta(days=7), "retry_7d")


class RenewalError(Exception):
    """Raised when a renewal cannot be attempted or a job transition is invalid."""

    pass


def retry_delay_for_attempt(attempts: int) -> tuple[timedelta, str]:
    """Delay and attempt type for the retry following failed attempt number ``attempts``."""
    return RETRY_SCHEDULE.get(attempts, FINAL_RETRY)


def attempt_type_for_count(renewal_attempt_count: int) -> str:
    """Attempt type of the next job given the failures so far."""
    if renewal_attempt_count <= 0:
        return "initial"
    return retry_delay_for_attempt(renewal_attempt_count)[1]


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def extend_subscription(subscription: Subscription, plan: Plan, now: datetime) -> None:
    """Apply a successful renewal: new period, active status, retry state cleared."""
    base = subscription.ends_at if subscription.ends_at and subscription.ends_at > now else now
    subscription.ends_at = add_months(base, plan.interval_months or 1)
    subscription.status = "active"
    subscription.grace_period_status = "none"
    subscription.grace_period_started_at = None
    subscription.grace_period_ends_at = None
    subscription.suspended_at = None
    subscription.suspension_reason = None
    subscription.renewal_attempt_count = 0
    subscription.last_renewal_attempt_at = now
    subscription.last_renewal_result = "success"
    subscription.last_renewal_error = None
    subscription.next_auto_renewal_at = None


class PaymentFailureHandler:
    """Schedules retries for failed renewal charges."""

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts or get_settings().renewal_max_attempts

    async def handle_failure(
        self,
        db: AsyncSession,
        subscription: Subscription,
        job: AutoRenewalJob,
        error: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Record a failed attempt on the job and subscription and schedule the next one.

        Does not commit; the caller owns the transaction.

        Returns:
            Dict[str, Any]: attempts so far, next retry time and whether this was final
        """
        now = now or utcnow()
        attempts = (subscription.renewal_attempt_count or 0) + 1
        delay, next_attempt_type = retry_delay_for_attempt(attempts)
        next_retry_at = now + delay
        final = attempts >= self.max_attempts

        subscription.renewal_attempt_count = attempts
        subscription.last_renewal_attempt_at = now
        subscription.last_renewal_result = "failed"
        subscription.last_renewal_error = error
        subscription.next_auto_renewal_at = next_retry_at

        job.executed_at = job.executed_at or now
        job.error_message = error
        job.next_retry_at = next_retry_at
        job.status = "failed" if final else "retry_scheduled"

        if final:
            write_outbox_event(
                db,
                aggregate_type="subscription",
                aggregate_id=subscription.id,
                event_type="subscription.renewal_failed_final",
                payload={
                    "subscription_id": subscription.id,
                    "member_id": subscription.member_id,
                    "attempts": attempts,
                    "error": error,
                    "next_retry_at": next_retry_at.isoformat(),
                },
            )
            logger.warning(
                "renewal_failed_final",
                subscription_id=subscription.id,
                attempts=attempts,
                error=error,
            )
        else:
            logger.info(
                "renewal_retry_scheduled",
                subscription_id=subscription.id,
                attempts=attempts,
                next_retry_at=next_retry_at.isoformat(),
                next_attempt_type=next_attempt_type,
            )

        metrics.record_renewal_attempt(job.status, job.attempt_type)
        return {
            "attempts": attempts,
            "next_retry_at": next_retry_at,
            "next_attempt_type": next_attempt_type,
            "final": final,
        }


class AutoRenewalService:
    """Charges subscriptions for their next period through a payment gateway."""

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        failure_handler: Optional[PaymentFailureHandler] = None,
    ):
        self._gateway = gateway
        self.failure_handler = failure_handler or PaymentFailureHandler()
        self.settings = get_settings()

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    async def _resolve_payment_identifier(
        self, db: AsyncSession, subscription: Subscription, member: Optional[Member]
    ) -> Optional[str]:
        """Primary active method, any active method, the subscription's own, then the phone."""
        stmt = (
            select(PaymentMethod)
            .where(
                PaymentMethod.member_id == subscription.member_id,
                PaymentMethod.is_active.is_(True),
            )
            .order_by(PaymentMethod.is_primary.desc(), PaymentMethod.id)
            .limit(1)
        )
        method = (await db.execute(stmt)).scalar_one_or_none()
        if method is not None:
            return method.identifier
        if subscription.payment_method:
            return subscription.payment_method
        if member is not None and member.phone:
            return member.phone
        return None

    async def process_subscription_renewal(
        self,
        db: AsyncSession,
        subscription: Subscription,
        now: Optional[datetime] = None,
        attempt_type: Optional[str] = None,
    ) -> AutoRenewalJob:
        """
        Attempt one renewal charge and commit the outcome.

        Raises:
            RenewalError: If the subscription's plan no longer exists
        """
        now = now or utcnow()
        plan = await db.get(Plan, subscription.plan_id)
        if plan is None:
            raise RenewalError(f"Plan {subscription.plan_id} not found")
        member = await db.get(Member, subscription.member_id)

        job = AutoRenewalJob(
            subscription_id=subscription.id,
            member_id=subscription.member_id,
            status="processing",
            attempt_type=attempt_type or attempt_type_for_count(subscription.renewal_attempt_count),
            attempt_number=(subscription.renewal_attempt_count or 0) + 1,
            max_attempts=self.failure_handler.max_attempts,
            scheduled_at=now,
            executed_at=now,
            amount=plan.price,
            currency=plan.currency or self.settings.default_currency,
        )
        db.add(job)
        await db.flush()

        logger.info(
            "renewal_attempt_started",
            subscription_id=subscription.id,
            job_id=job.id,
            attempt_type=job.attempt_type,
        )

        if plan.is_free or plan.price <= 0:
            job.status = "succeeded"
            extend_subscription(subscription, plan, now)
            metrics.record_renewal_attempt("succeeded", job.attempt_type)
            await db.commit()
            return job

        identifier = await self._resolve_payment_identifier(db, subscription, member)
        job.payment_method = identifier
        if identifier is None:
            await self.failure_handler.handle_failure(
                db, subscription, job, "No payment method available", now
            )
            await db.commit()
            return job

        reference = f"RENEWAL-{subscription.id}-{job.id}"
        result = await self.gateway.charge(
            identifier,
            int(Decimal(plan.price) * 100),
            {
                "reference": reference,
                "currency": job.currency,
                "email": member.email if member else None,
                "phone": member.phone if member else identifier,
                "first_name": member.name if member else "",
                "description": f"{plan.name} renewal",
                "subscription_id": subscription.id,
            },
        )

        job.transaction_id = result.reference
        job.payment_gateway_response = result.to_dict()

        status = result.status.upper()
        if result.success and status == "COMPLETED":
            payment_status = "paid"
        elif result.success:
            payment_status = "pending"
        else:
            payment_status = "failed"

        db.add(
            Payment(
                member_id=subscription.member_id,
                payable_type="subscription",
                payable_id=subscription.id,
                amount=plan.price,
                currency=job.currency,
                status=payment_status,
                gateway=self.gateway.name,
                method="auto_renewal",
                reference=reference,
                external_reference=result.reference,
                transaction_id=result.reference,
                county=member.county if member else None,
                meta={"auto_renewal_job_id": job.id},
                paid_at=now if payment_status == "paid" else None,
            )
        )

        if payment_status == "paid":
            self._mark_succeeded(db, subscription, plan, job, now)
        elif payment_status == "pending":
            subscription.last_renewal_attempt_at = now
            metrics.record_renewal_attempt("pending", job.attempt_type)
            logger.info(
                "renewal_pending_confirmation",
                subscription_id=subscription.id,
                job_id=job.id,
                transaction_id=result.reference,
            )
        else:
            await self.failure_handler.handle_failure(
                db, subscription, job, result.error_message or "Payment failed", now
            )

        await db.commit()
        return job

    def _mark_succeeded(
        self,
        db: AsyncSession,
        subscription: Subscription,
        plan: Plan,
        job: AutoRenewalJob,
        now: datetime,
    ) -> None:
        job.status = "succeeded"
        job.error_message = None
        job.next_retry_at = None
        extend_subscription(subscription, plan, now)
        write_outbox_event(
            db,
            aggregate_type="subscription",
            aggregate_id=subscription.id,
            event_type="subscription.renewed",
            payload={
                "subscription_id": subscription.id,
                "member_id": subscription.member_id,
                "job_id": job.id,
                "amount": str(job.amount),
                "currency": job.currency,
                "ends_at": subscription.ends_at.isoformat(),
            },
        )
        metrics.record_renewal_attempt("succeeded", job.attempt_type)
        metrics.record_subscription_transition("renewed")
        logger.info(
            "renewal_succeeded",
            subscription_id=subscription.id,
            job_id=job.id,
            ends_at=subscription.ends_at.isoformat(),
        )

    async def settle_pending_job(
        self,
        db: AsyncSession,
        transaction_id: str,
        succeeded: bool,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AutoRenewalJob]:
        """
        Resolve a ``processing`` job once the gateway confirms the charge.

        Does not commit; called from webhook processing inside its transaction.
        """
        now = now or utcnow()
        stmt = select(AutoRenewalJob).where(
            AutoRenewalJob.transaction_id == transaction_id,
            AutoRenewalJob.status == "processing",
        )
        job = (await db.execute(stmt)).scalar_one_or_none()
        if job is None:
            return None

        subscription = await db.get(Subscription, job.subscription_id)
        plan = await db.get(Plan, subscription.plan_id) if subscription else None
        if subscription is None or plan is None:
            job.status = "failed"
            job.error_message = "Subscription or plan no longer exists"
            return job

        if succeeded:
            self._mark_succeeded(db, subscription, plan, job, now)
        else:
            await self.failure_handler.handle_failure(
                db, subscription, job, error or "Payment failed", now
            )
        return job

    async def process_due_renewals(
        self, db: AsyncSession, now: Optional[datetime] = None, window_hours: int = 24
    ) -> Dict[str, int]:
        """
        Renew every auto-renewing subscription that is due.

        Due means a scheduled retry has arrived, or, with nothing scheduled,
        the period ends within ``window_hours``. Subscriptions with a job still
        awaiting gateway confirmation are skipped.
        """
        now = now or utcnow()
        in_flight = exists().where(
            AutoRenewalJob.subscription_id == Subscription.id,
            AutoRenewalJob.status == "processing",
        )
        stmt = (
            select(Subscription)
            .where(
                Subscription.auto_renew.is_(True),
                Subscription.status.in_(("active", "grace_period")),
                or_(
                    Subscription.next_auto_renewal_at <= now,
                    and_(
                        Subscription.next_auto_renewal_at.is_(None),
                        Subscription.ends_at.is_not(None),
                        Subscription.ends_at <= now + timedelta(hours=window_hours),
                    ),
                ),
                ~in_flight,
            )
            .order_by(Subscription.ends_at)
        )
        subscriptions = list((await db.execute(stmt)).scalars().all())

        summary = {"processed": 0, "succeeded": 0, "pending": 0, "failed": 0, "errors": 0}
        for subscription in subscriptions:
            try:
                job = await self.process_subscription_renewal(db, subscription, now)
            except RenewalError as e:
                logger.error(
                    "renewal_attempt_error", subscription_id=subscription.id, error=str(e)
                )
                summary["errors"] += 1
                continue
            summary["processed"] += 1
            if job.status == "succeeded":
                summary["succeeded"] += 1
            elif job.status == "processing":
                summary["pending"] += 1
            else:
                summary["failed"] += 1

        logger.info("due_renewals_processed", **summary)
        return summary

    async def list_jobs(
        self,
        db: AsyncSession,
        status: Optional[str] = None,
        subscription_id: Optional[int] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        """Paginated job listing, newest first."""
        conditions = []
        if status:
            conditions.append(AutoRenewalJob.status == status)
        if subscription_id:
            conditions.append(AutoRenewalJob.subscription_id == subscription_id)

        total = (
            await db.execute(select(func.count(AutoRenewalJob.id)).where(*conditions))
        ).scalar_one()
        stmt = (
            select(AutoRenewalJob)
            .where(*conditions)
            .order_by(AutoRenewalJob.created_at.desc(), AutoRenewalJob.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        jobs = list((await db.execute(stmt)).scalars().all())
        return {"items": jobs, "total": total, "page": page, "per_page": per_page}

    async def get_job(self, db: AsyncSession, job_id: int) -> Optional[AutoRenewalJob]:
        return await db.get(AutoRenewalJob, job_id)

    async def retry_job(
        self, db: AsyncSession, job_id: int, now: Optional[datetime] = None
    ) -> AutoRenewalJob:
        """
        Run a manual retry for a failed or scheduled job.

        Raises:
            RenewalError: If the job is missing or not retryable
        """
        job = await db.get(AutoRenewalJob, job_id)
        if job is None:
            raise RenewalError(f"Renewal job {job_id} not found")
        if job.status not in ("failed", "retry_scheduled"):
            raise RenewalError(f"Cannot retry a job in status '{job.status}'")

        subscription = await db.get(Subscription, job.subscription_id)
        if subscription is None:
            raise RenewalError(f"Subscription {job.subscription_id} not found")

        if job.status == "retry_scheduled":
            job.status = "cancelled"

        logger.info("renewal_manual_retry", job_id=job_id, subscription_id=subscription.id)
        return await self.process_subscription_renewal(
            db, subscription, now, attempt_type="manual_retry"
        )

    async def cancel_job(self, db: AsyncSession, job_id: int) -> AutoRenewalJob:
        """
        Cancel a pending or scheduled job and clear the subscription's retry.

        Raises:
            RenewalError: If the job is missing or already executed
        """
        job = await db.get(AutoRenewalJob, job_id)
        if job is None:
            raise RenewalError(f"Renewal job {job_id} not found")
        if job.status not in ("pending", "retry_scheduled"):
            raise RenewalError(f"Cannot cancel a job in status '{job.status}'")

        job.status = "cancelled"
        job.next_retry_at = None
        subscription = await db.get(Subscription, job.subscription_id)
        if subscription is not None:
            subscription.next_auto_renewal_at = None

        await db.commit()
        logger.info("renewal_job_cancelled", job_id=job_id)
        return job
