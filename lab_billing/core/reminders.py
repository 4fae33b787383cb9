"""Renewal reminders ahead of subscription expiry."""
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_billing.core.outbox import write_outbox_event
from lab_billing.database.models import Member, RenewalReminder, Subscription
from lab_billing.monitoring.metrics import metrics
from lab_billing.timeutils import utcnow

logger = structlog.get_logger(__name__)

REMINDER_OFFSETS = (
    ("seven_days", 7),
    ("three_days", 3),
    ("one_day", 1),
    ("final_notice", 0),
)


class RenewalReminderService:
    """Schedules reminders and hands due ones to the outbox for delivery."""

    async def _schedule(
        self,
        db: AsyncSession,
        subscription: Subscription,
        now: datetime,
        channel: str,
    ) -> List[RenewalReminder]:
        if subscription.ends_at is None:
            return []

        existing_stmt = select(RenewalReminder.reminder_type).where(
            RenewalReminder.subscription_id == subscription.id
        )
        existing = set((await db.execute(existing_stmt)).scalars().all())

        created = []
        for reminder_type, days in REMINDER_OFFSETS:
            if reminder_type in existing:
                continue
            scheduled_at = subscription.ends_at - timedelta(days=days)
            if scheduled_at < now:
                continue
            reminder = RenewalReminder(
                subscription_id=subscription.id,
                member_id=subscription.member_id,
                reminder_type=reminder_type,
                days_before_expiry=days,
                scheduled_at=scheduled_at,
                channel=channel,
                meta={"ends_at": subscription.ends_at.isoformat()},
            )
            db.add(reminder)
            created.append(reminder)
        return created

    async def schedule_for_subscription(
        self,
        db: AsyncSession,
        subscription: Subscription,
        now: Optional[datetime] = None,
        channel: str = "email",
    ) -> List[RenewalReminder]:
        """
        Create the standard reminders for the subscription's current period.

        Existing reminder types are left alone and past schedules are skipped.
        """
        created = await self._schedule(db, subscription, now or utcnow(), channel)
        await db.commit()
        logger.info(
            "renewal_reminders_scheduled",
            subscription_id=subscription.id,
            count=len(created),
        )
        return created

    async def schedule_upcoming(
        self, db: AsyncSession, now: Optional[datetime] = None, horizon_days: int = 7
    ) -> int:
        """Schedule reminders for active subscriptions ending within ``horizon_days``."""
        now = now or utcnow()
        stmt = select(Subscription).where(
            Subscription.status == "active",
            Subscription.ends_at.is_not(None),
            Subscription.ends_at >= now,
            Subscription.ends_at <= now + timedelta(days=horizon_days),
        )
        created = 0
        for subscription in (await db.execute(stmt)).scalars().all():
            created += len(await self._schedule(db, subscription, now, "email"))

        await db.commit()
        logger.info("upcoming_renewal_reminders_scheduled", count=created)
        return created

    async def send_due(
        self, db: AsyncSession, now: Optional[datetime] = None, due_days: int = 0
    ) -> Dict[str, int]:
        """
        Queue every unsent reminder whose time has come.

        Args:
            due_days: Also include reminders scheduled up to this many days ahead
        """
        now = now or utcnow()
        cutoff = now + timedelta(days=due_days) if due_days > 0 else now

        stmt = (
            select(RenewalReminder)
            .where(RenewalReminder.is_sent.is_(False), RenewalReminder.scheduled_at <= cutoff)
            .order_by(RenewalReminder.scheduled_at, RenewalReminder.id)
        )
        reminders = list((await db.execute(stmt)).scalars().all())
        logger.info("renewal_reminders_due", count=len(reminders))

        summary = {"sent": 0, "skipped": 0}
        for reminder in reminders:
            email = (reminder.meta or {}).get("email")
            if not email:
                member = await db.get(Member, reminder.member_id)
                email = member.email if member else None
            if not email:
                logger.warning("renewal_reminder_missing_email", reminder_id=reminder.id)
                summary["skipped"] += 1
                continue

            write_outbox_event(
                db,
                aggregate_type="renewal_reminder",
                aggregate_id=reminder.id,
                event_type="renewal_reminder.due",
                payload={
                    "reminder_id": reminder.id,
                    "subscription_id": reminder.subscription_id,
                    "reminder_type": reminder.reminder_type,
                    "days_before_expiry": reminder.days_before_expiry,
                    "channel": reminder.channel,
                    "email": email,
                },
            )
            reminder.is_sent = True
            reminder.sent_at = now
            metrics.record_reminder_sent(reminder.reminder_type)
            summary["sent"] += 1

        await db.commit()
        logger.info("renewal_reminders_sent", **summary)
        return summary
