"""
Transactional outbox.

Notifications (renewal reminders, final renewal failures, reconciliation
reports) are written to the outbox in the same transaction as the state
change that caused them, then published asynchronously.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lab_billing.database.connection import get_session_factory
from lab_billing.database.models import OutboxEvent
from lab_billing.monitoring.metrics import metrics
from lab_billing.timeutils import utcnow

logger = structlog.get_logger(__name__)


def write_outbox_event(
    db: AsyncSession,
    aggregate_type: str,
    aggregate_id: Any,
    event_type: str,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """
    Stage an event in the outbox; it is persisted with the caller's commit.

    Args:
        db: Database session
        aggregate_type: Aggregate type (e.g., 'subscription')
        aggregate_id: Aggregate id (e.g., subscription id or run uuid)
        event_type: Event type (e.g., 'subscription.renewed')
        payload: JSON-serialisable event payload
    """
    event = OutboxEvent(
        aggregate_id=str(aggregate_id),
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
        published=False,
        created_at=utcnow(),
    )
    db.add(event)
    return event


class OutboxPublisher:
    """
    Publishes events from the outbox table.

    1. Read unpublished events in creation order
    2. Hand each to ``publisher_func``
    3. Mark the delivered ones as published
    """

    def __init__(
        self,
        publisher_func: Optional[Callable[[Dict[str, Any]], Awaitable[Any]]] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine that delivers one event (defaults to logging it)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when the outbox is empty
            session_factory: Session factory (defaults to the application one)
        """
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._session_factory = session_factory
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            event_data = {
                "id": event.id,
                "aggregate_id": event.aggregate_id,
                "aggregate_type": event.aggregate_type,
                "event_type": event.event_type,
                "payload": event.payload,
                "created_at": event.created_at.isoformat(),
            }

            await self.publisher_func(event_data)
            metrics.record_outbox_event_published(event.event_type)

            logger.info(
                "outbox_event_published",
                event_id=event.id,
                event_type=event.event_type,
                aggregate_id=event.aggregate_id,
            )
            return True

        except Exception as e:
            logger.error("outbox_event_publish_failed", event_id=event.id, error=str(e))
            return False

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utcnow())
        )
        await db.execute(stmt)
        await db.commit()

        logger.info("outbox_events_marked_published", count=len(event_ids))

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self.session_factory() as db:
            try:
                events = await self._fetch_unpublished_events(db)
                if not events:
                    return 0

                logger.info("outbox_batch_processing_started", batch_size=len(events))

                published_ids = []
                for event in events:
                    if await self._publish_event(event):
                        published_ids.append(event.id)

                await self._mark_as_published(db, published_ids)

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=len(events) - len(published_ids),
                )
                return len(published_ids)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """Poll and publish until ``stop`` is called."""
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Count unpublished events."""
        async with self.session_factory() as db:
            stmt = select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
            result = await db.execute(stmt)
            return int(result.scalar_one())
