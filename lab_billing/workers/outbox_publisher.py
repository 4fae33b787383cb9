"""
Outbox publisher background worker.

Continuously polls the outbox table and appends events to a Redis stream,
where notification senders (email, SMS) consume them.
"""
import asyncio
import json
import signal
from typing import Any, Awaitable, Callable, Dict

import redis.asyncio as aioredis
import structlog

from lab_billing.config import get_settings
from lab_billing.core.outbox import OutboxPublisher
from lab_billing.database.connection import close_db
from lab_billing.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def make_stream_publisher(
    redis_client: aioredis.Redis, stream: str
) -> Callable[[Dict[str, Any]], Awaitable[None]]:
    """Build a publisher that XADDs each event to ``stream``."""

    async def publish_to_stream(event_data: Dict[str, Any]) -> None:
        fields = {
            "event_id": str(event_data["id"]),
            "event_type": event_data["event_type"],
            "aggregate_type": event_data["aggregate_type"],
            "aggregate_id": event_data["aggregate_id"],
            "payload": json.dumps(event_data["payload"], default=str),
            "created_at": event_data["created_at"],
        }
        message_id = await redis_client.xadd(stream, fields)
        logger.info(
            "event_published_to_stream",
            stream=stream,
            message_id=message_id,
            event_type=event_data["event_type"],
            aggregate_id=event_data["aggregate_id"],
        )

    return publish_to_stream


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs until SIGINT/SIGTERM.
    """
    setup_logging()
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting", stream=settings.outbox_stream)

    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    publisher = OutboxPublisher(
        publisher_func=make_stream_publisher(redis_client, settings.outbox_stream),
        batch_size=100,
        poll_interval_seconds=1.0,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await redis_client.aclose()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
