"""
Tests for renewal reminders.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from lab_billing.core.reminders import RenewalReminderService
from lab_billing.database.models import Member, OutboxEvent, RenewalReminder, Subscription
from lab_billing.timeutils import utcnow


@pytest.fixture
def reminders() -> RenewalReminderService:
    return RenewalReminderService()


async def _subscription(db, member, plan, ends_in: timedelta) -> Subscription:
    subscription = Subscription(
        member_id=member.id, plan_id=plan.id, ends_at=utcnow() + ends_in
    )
    db.add(subscription)
    await db.commit()
    return subscription


class TestScheduling:
    """Reminder creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_schedules_all_types(self, test_db, reminders, member, paid_plan):
        """Seven, three and one day reminders plus a final notice on the expiry date."""
        subscription = await _subscription(test_db, member, paid_plan, timedelta(days=10))

        created = await reminders.schedule_for_subscription(test_db, subscription)

        by_type = {r.reminder_type: r for r in created}
        assert set(by_type) == {"seven_days", "three_days", "one_day", "final_notice"}
        assert by_type["seven_days"].scheduled_at == subscription.ends_at - timedelta(days=7)
        assert by_type["final_notice"].scheduled_at == subscription.ends_at
        assert by_type["one_day"].days_before_expiry == 1
        assert by_type["one_day"].channel == "email"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_skips_past_schedules(self, test_db, reminders, subscription):
        """A period ending in 12 hours only gets the final notice."""
        created = await reminders.schedule_for_subscription(test_db, subscription)
        assert [r.reminder_type for r in created] == ["final_notice"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_scheduling_is_idempotent(self, test_db, reminders, member, paid_plan):
        subscription = await _subscription(test_db, member, paid_plan, timedelta(days=10))
        await reminders.schedule_for_subscription(test_db, subscription)

        again = await reminders.schedule_for_subscription(test_db, subscription)

        assert again == []
        rows = (await test_db.execute(select(RenewalReminder))).scalars().all()
        assert len(rows) == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_ended_subscription(self, test_db, reminders, member, free_plan):
        subscription = Subscription(member_id=member.id, plan_id=free_plan.id, ends_at=None)
        test_db.add(subscription)
        await test_db.commit()

        assert await reminders.schedule_for_subscription(test_db, subscription) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_schedule_upcoming_horizon(self, test_db, reminders, member, paid_plan):
        """Only subscriptions ending inside the horizon are scheduled."""
        await _subscription(test_db, member, paid_plan, timedelta(days=10))

        assert await reminders.schedule_upcoming(test_db, horizon_days=7) == 0
        assert await reminders.schedule_upcoming(test_db, horizon_days=14) == 4


class TestSending:
    """Queueing due reminders."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_send_due(self, test_db, reminders, member, paid_plan):
        subscription = await _subscription(test_db, member, paid_plan, timedelta(days=10))
        await reminders.schedule_for_subscription(test_db, subscription)
        now = utcnow()

        assert await reminders.send_due(test_db, now=now) == {"sent": 0, "skipped": 0}

        summary = await reminders.send_due(test_db, now=now + timedelta(days=3, hours=1))
        assert summary == {"sent": 1, "skipped": 0}

        reminder = (
            await test_db.execute(
                select(RenewalReminder).where(RenewalReminder.reminder_type == "seven_days")
            )
        ).scalar_one()
        assert reminder.is_sent is True
        assert reminder.sent_at == now + timedelta(days=3, hours=1)

        event = (
            await test_db.execute(
                select(OutboxEvent).where(OutboxEvent.event_type == "renewal_reminder.due")
            )
        ).scalar_one()
        assert event.payload["email"] == "wanjiku@example.com"
        assert event.payload["reminder_type"] == "seven_days"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sent_reminders_not_resent(self, test_db, reminders, subscription):
        await reminders.schedule_for_subscription(test_db, subscription)
        later = utcnow() + timedelta(days=1)

        assert (await reminders.send_due(test_db, now=later))["sent"] == 1
        assert (await reminders.send_due(test_db, now=later))["sent"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_due_days_look_ahead(self, test_db, reminders, member, paid_plan):
        subscription = await _subscription(test_db, member, paid_plan, timedelta(days=10))
        await reminders.schedule_for_subscription(test_db, subscription)

        summary = await reminders.send_due(test_db, due_days=8)

        assert summary["sent"] == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_email_skipped(self, test_db, reminders, paid_plan):
        member = Member(name="Walk-in", phone="254702000000")
        test_db.add(member)
        await test_db.flush()
        subscription = await _subscription(test_db, member, paid_plan, timedelta(hours=6))
        await reminders.schedule_for_subscription(test_db, subscription)

        summary = await reminders.send_due(test_db, now=utcnow() + timedelta(days=1))

        assert summary == {"sent": 0, "skipped": 1}
        reminder = (await test_db.execute(select(RenewalReminder))).scalar_one()
        assert reminder.is_sent is False
