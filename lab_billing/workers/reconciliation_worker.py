"""
Reconciliation background worker.

Runs daily reconciliation of the previous day at a scheduled hour (UTC).
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any, Dict

import structlog

from lab_billing.config import get_settings
from lab_billing.core.reconciliation import ReconciliationEngine
from lab_billing.database.connection import close_db, get_session_factory
from lab_billing.monitoring.logging import setup_logging
from lab_billing.timeutils import utcnow

logger = structlog.get_logger(__name__)


async def run_daily_reconciliation(sync: bool = True) -> Dict[str, Any]:
    """
    Reconcile yesterday's payments against the gateway.

    Returns:
        Dict with the run summary
    """
    logger.info("daily_reconciliation_started", sync=sync)

    engine = ReconciliationEngine()
    async with get_session_factory()() as db:
        try:
            result = await engine.reconcile_yesterday(db, sync=sync)
        except Exception as e:
            logger.error("daily_reconciliation_failed", error=str(e))
            raise

    logger.info(
        "daily_reconciliation_completed",
        run_id=result["run_id"],
        status=result["status"],
        total_matched=result["total_matched"],
        total_discrepancy=result["total_discrepancy"],
    )

    if result["status"] == "partial":
        logger.warning(
            "reconciliation_discrepancies_detected",
            run_id=result["run_id"],
            item_counts=result["item_counts"],
            total_discrepancy=result["total_discrepancy"],
        )

    return result


def seconds_until_next_run(target_hour: int) -> float:
    """
    Seconds until the next occurrence of ``target_hour``:00 UTC.

    Args:
        target_hour: Hour of day to run (24-hour format)
    """
    now = utcnow()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # Passed today's run time
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()
    logger.info(
        "reconciliation_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )
    return seconds_until


async def start_reconciliation_worker(target_hour: int = 2, sync: bool = True) -> None:
    """
    Start the reconciliation worker.

    Runs daily at the given hour until SIGINT/SIGTERM.

    Args:
        target_hour: Hour of day to run (default: 2 AM UTC)
        sync: Query the gateway for each payment
    """
    if not 0 <= target_hour <= 23:
        raise ValueError("target_hour must be between 0 and 23")

    setup_logging()
    logger.info("reconciliation_worker_starting", target_hour=target_hour, sync=sync)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            seconds_until = seconds_until_next_run(target_hour)

            # Sleep in short chunks so a shutdown signal is noticed
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_daily_reconciliation(sync=sync)
            except Exception as e:
                # Keep the schedule alive; the failed run is recorded
                logger.error("reconciliation_execution_error", error=str(e))

    finally:
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Daily reconciliation worker")
    parser.add_argument(
        "--hour",
        type=int,
        default=get_settings().reconciliation_hour,
        help="Hour of day (UTC) to run reconciliation (0-23)",
    )
    parser.add_argument(
        "--no-sync", action="store_true", help="Skip gateway status queries"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(target_hour=args.hour, sync=not args.no_sync))


if __name__ == "__main__":
    main()
