"""
Subscription expiry lifecycle.

    active --(ends_at passed)--> grace_period --(grace over)--> downgraded to free plan
                                                             \-> suspended (no free plan)
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_billing.config import get_settings
from lab_billing.core.outbox import write_outbox_event
from lab_billing.database.models import AuditLog, Plan, Subscription
from lab_billing.monitoring.metrics import metrics
from lab_billing.timeutils import utcnow

logger = structlog.get_logger(__name__)


class SubscriptionLifecycleError(Exception):
    """Raised on an invalid subscription state transition."""

    pass


def is_in_grace_period(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return (
        subscription.status == "grace_period"
        and subscription.grace_period_ends_at is not None
        and subscription.grace_period_ends_at > now
    )


def has_access(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    """Members keep access while active or within the grace period."""
    now = now or utcnow()
    if subscription.status == "active":
        return subscription.ends_at is None or subscription.ends_at > now
    return is_in_grace_period(subscription, now)


class SubscriptionLifecycleService:
    """Moves expired subscriptions through grace, downgrade and suspension."""

    def __init__(self, grace_period_days: Optional[int] = None):
        self.grace_period_days = grace_period_days or get_settings().grace_period_days

    async def enter_grace_period(
        self,
        db: AsyncSession,
        subscription: Subscription,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Start the grace window. Does not commit."""
        now = now or utcnow()
        if subscription.status != "active":
            raise SubscriptionLifecycleError(
                f"Only active subscriptions can enter a grace period (status={subscription.status})"
            )

        days = days or self.grace_period_days
        subscription.status = "grace_period"
        subscription.grace_period_status = "active"
        subscription.grace_period_started_at = now
        subscription.grace_period_ends_at = now + timedelta(days=days)

        write_outbox_event(
            db,
            aggregate_type="subscription",
            aggregate_id=subscription.id,
            event_type="subscription.grace_period_started",
            payload={
                "subscription_id": subscription.id,
                "member_id": subscription.member_id,
                "grace_period_ends_at": subscription.grace_period_ends_at.isoformat(),
            },
        )
        metrics.record_subscription_transition("grace_period")
        logger.info(
            "subscription_entered_grace_period",
            subscription_id=subscription.id,
            member_id=subscription.member_id,
            grace_period_ends_at=subscription.grace_period_ends_at.isoformat(),
        )
        return subscription

    async def extend_grace_period(
        self,
        db: AsyncSession,
        subscription: Subscription,
        days: int,
        actor: Optional[str] = None,
    ) -> Subscription:
        """
        Push the end of an ongoing grace period out by ``days`` and audit it.

        Raises:
            SubscriptionLifecycleError: If not in a grace period or ``days`` is not positive
        """
        if days <= 0:
            raise SubscriptionLifecycleError("Extension must be a positive number of days")
        if subscription.status != "grace_period" or subscription.grace_period_ends_at is None:
            raise SubscriptionLifecycleError("Subscription is not in a grace period")

        old_end = subscription.grace_period_ends_at
        subscription.grace_period_ends_at = old_end + timedelta(days=days)
        subscription.grace_period_status = "active"

        db.add(
            AuditLog(
                action="grace_period_extended",
                model_type="subscription",
                model_id=str(subscription.id),
                actor=actor,
                old_values={"grace_period_ends_at": old_end.isoformat()},
                new_values={
                    "grace_period_ends_at": subscription.grace_period_ends_at.isoformat()
                },
                notes=f"Extended by {days} days",
            )
        )
        await db.commit()

        logger.info(
            "grace_period_extended",
            subscription_id=subscription.id,
            days=days,
            actor=actor,
        )
        return subscription

    async def suspend(
        self,
        db: AsyncSession,
        subscription: Subscription,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Suspend access. Does not commit."""
        now = now or utcnow()
        subscription.status = "suspended"
        subscription.grace_period_status = "expired"
        subscription.suspended_at = now
        subscription.suspension_reason = reason
        subscription.auto_renew = False
        subscription.next_auto_renewal_at = None

        write_outbox_event(
            db,
            aggregate_type="subscription",
            aggregate_id=subscription.id,
            event_type="subscription.suspended",
            payload={
                "subscription_id": subscription.id,
                "member_id": subscription.member_id,
                "reason": reason,
            },
        )
        metrics.record_subscription_transition("suspended")
        logger.info("subscription_suspended", subscription_id=subscription.id, reason=reason)
        return subscription

    async def cancel(
        self, db: AsyncSession, subscription: Subscription, now: Optional[datetime] = None
    ) -> Subscription:
        """Cancel a subscription. Does not commit."""
        now = now or utcnow()
        subscription.status = "cancelled"
        subscription.cancelled_at = now
        subscription.auto_renew = False
        subscription.next_auto_renewal_at = None
        if subscription.grace_period_status == "active":
            subscription.grace_period_status = "expired"
        metrics.record_subscription_transition("cancelled")
        logger.info("subscription_cancelled", subscription_id=subscription.id)
        return subscription

    async def _get_free_plan(self, db: AsyncSession) -> Optional[Plan]:
        stmt = (
            select(Plan)
            .where(Plan.is_free.is_(True), Plan.is_active.is_(True))
            .order_by(Plan.id)
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def downgrade_to_free(
        self, db: AsyncSession, subscription: Subscription, now: Optional[datetime] = None
    ) -> Optional[Subscription]:
        """
        Replace the subscription with one on the free plan.

        Suspends instead when no free plan exists. Does not commit.

        Returns:
            Optional[Subscription]: The new free subscription, or None when suspended
        """
        now = now or utcnow()
        free_plan = await self._get_free_plan(db)
        if free_plan is None:
            logger.warning("no_free_plan_for_downgrade", subscription_id=subscription.id)
            await self.suspend(db, subscription, "Grace period expired; no free plan", now)
            return None

        new_subscription = Subscription(
            member_id=subscription.member_id,
            plan_id=free_plan.id,
            status="active",
            starts_at=now,
            ends_at=None,
            auto_renew=False,
        )
        db.add(new_subscription)
        await self.cancel(db, subscription, now)
        subscription.grace_period_status = "expired"
        await db.flush()

        write_outbox_event(
            db,
            aggregate_type="subscription",
            aggregate_id=subscription.id,
            event_type="subscription.downgraded",
            payload={
                "old_subscription_id": subscription.id,
                "new_subscription_id": new_subscription.id,
                "member_id": subscription.member_id,
                "free_plan_id": free_plan.id,
            },
        )
        metrics.record_subscription_transition("downgraded")
        logger.info(
            "subscription_downgraded_to_free",
            member_id=subscription.member_id,
            old_subscription_id=subscription.id,
            new_subscription_id=new_subscription.id,
            free_plan_id=free_plan.id,
        )
        return new_subscription

    async def process_expired(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Run both expiry steps and commit.

        1. Active subscriptions past ``ends_at`` enter the grace period
        2. Grace periods that have run out are downgraded (or suspended)
        """
        now = now or utcnow()
        summary = {"entered_grace": 0, "downgraded": 0, "suspended": 0}

        expired_stmt = select(Subscription).where(
            Subscription.status == "active",
            Subscription.ends_at.is_not(None),
            Subscription.ends_at < now,
        )
        for subscription in (await db.execute(expired_stmt)).scalars().all():
            await self.enter_grace_period(db, subscription, now=now)
            summary["entered_grace"] += 1

        grace_stmt = select(Subscription).where(
            Subscription.status == "grace_period",
            Subscription.grace_period_ends_at.is_not(None),
            Subscription.grace_period_ends_at < now,
        )
        for subscription in (await db.execute(grace_stmt)).scalars().all():
            replacement = await self.downgrade_to_free(db, subscription, now)
            if replacement is None:
                summary["suspended"] += 1
            else:
                summary["downgraded"] += 1

        await db.commit()
        logger.info("expired_subscriptions_processed", **summary)
        return summary
