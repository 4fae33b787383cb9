"""
Subscription lifecycle background worker.

Each sweep, in order:
1. Expired subscriptions enter the grace period; ended grace periods downgrade
2. Due auto-renewals are charged (or retried)
3. Reminders are scheduled for subscriptions ending soon
4. Due reminders are queued for delivery
5. Failed webhook events are retried
"""
import asyncio
import signal
from typing import Any, Dict

import structlog

from lab_billing.config import get_settings
from lab_billing.core.lifecycle import SubscriptionLifecycleService
from lab_billing.core.reminders import RenewalReminderService
from lab_billing.core.renewal import AutoRenewalService
from lab_billing.database.connection import close_db, get_session_factory
from lab_billing.integrations.webhook_handler import WebhookHandler
from lab_billing.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_lifecycle_sweep(
    lifecycle: SubscriptionLifecycleService,
    renewals: AutoRenewalService,
    reminders: RenewalReminderService,
    webhooks: WebhookHandler,
) -> Dict[str, Any]:
    """Run one sweep and return what each step did."""
    results: Dict[str, Any] = {}
    async with get_session_factory()() as db:
        results["expired"] = await lifecycle.process_expired(db)
        results["renewals"] = await renewals.process_due_renewals(db)
        results["reminders_scheduled"] = await reminders.schedule_upcoming(db)
        results["reminders"] = await reminders.send_due(db)
        results["webhooks"] = await webhooks.retry_failed(db)

    logger.info("lifecycle_sweep_completed", **results)
    return results


async def start_lifecycle_worker(interval_seconds: int = 3600) -> None:
    """
    Start the lifecycle worker.

    Sweeps every ``interval_seconds`` until SIGINT/SIGTERM.
    """
    setup_logging()
    logger.info("lifecycle_worker_starting", interval_seconds=interval_seconds)

    renewals = AutoRenewalService()
    lifecycle = SubscriptionLifecycleService()
    reminders = RenewalReminderService()
    webhooks = WebhookHandler(renewal_service=renewals)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("lifecycle_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_lifecycle_sweep(lifecycle, renewals, reminders, webhooks)
            except Exception as e:
                logger.error("lifecycle_sweep_error", error=str(e))

            remaining = float(interval_seconds)
            while remaining > 0 and running:
                sleep_time = min(remaining, 60)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    finally:
        await webhooks.close()
        await close_db()
        logger.info("lifecycle_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Subscription lifecycle worker")
    parser.add_argument(
        "--interval",
        type=int,
        default=get_settings().lifecycle_interval_seconds,
        help="Seconds between sweeps",
    )
    args = parser.parse_args()

    asyncio.run(start_lifecycle_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
