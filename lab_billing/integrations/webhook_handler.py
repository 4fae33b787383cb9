"""
Payment gateway webhook handling with token verification and deduplication.

Implements:
- Raw event persistence before any processing (replayable)
- Shared-token verification
- Event deduplication using Redis
- Payment state transitions, propagated to donations and renewal jobs
"""
import hmac
import time
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_billing.config import get_settings
from lab_billing.core.outbox import write_outbox_event
from lab_billing.core.renewal import AutoRenewalService
from lab_billing.database.models import Donation, Payment, WebhookEvent
from lab_billing.integrations.factory import get_gateway
from lab_billing.integrations.gateway import PaymentGateway
from lab_billing.monitoring.metrics import metrics
from lab_billing.timeutils import utcnow

logger = structlog.get_logger(__name__)

SUPPORTED_PROVIDERS = ("pesapal", "mock")

PAID_STATUSES = frozenset(
    {"payment_received", "payment_completed", "completed", "paid", "success", "succeeded"}
)
CANCELLED_STATUSES = frozenset({"cancelled", "canceled", "payment_cancelled"})
PENDING_STATUSES = frozenset({"pending", "payment_pending"})
UNKNOWN_STATUSES = frozenset({"unknown", "ipnchange", "ipn_change"})
# Status query outcomes that describe our call, not the payment
QUERY_ERROR_STATUSES = frozenset({"unknown", "not_implemented", "authentication_failed"})


class WebhookError(Exception):
    """Raised when webhook processing fails."""

    pass


def map_payment_status(raw_status: Optional[str]) -> Optional[str]:
    """
    Map a gateway/webhook status to a payment status.

    Returns None when the status says nothing about the outcome.
    """
    if not raw_status:
        return None
    value = raw_status.strip().lower().replace(" ", "_")
    if value in PAID_STATUSES:
        return "paid"
    if value in CANCELLED_STATUSES:
        return "cancelled"
    if value in PENDING_STATUSES:
        return "pending"
    if value in UNKNOWN_STATUSES:
        return None
    return "failed"


class WebhookHandler:
    """
    Records and processes gateway callbacks.

    Pesapal IPNs carry no outcome, so for them the status is fetched from the
    gateway; mock callbacks carry it in ``status`` or ``event_type``.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        renewal_service: Optional[AutoRenewalService] = None,
        status_gateway: Optional[PaymentGateway] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            redis_client: Optional Redis client for event deduplication
            renewal_service: Settles renewal jobs awaiting confirmation
            status_gateway: Gateway queried for Pesapal IPN outcomes
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self.renewal_service = renewal_service or AutoRenewalService()
        self._status_gateway = status_gateway

        logger.info("webhook_handler_initialized")

    def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @property
    def status_gateway(self) -> PaymentGateway:
        if self._status_gateway is None:
            self._status_gateway = get_gateway("pesapal")
        return self._status_gateway

    def verify_token(self, token: Optional[str]) -> bool:
        """Constant-time comparison against the configured secret; open when none is set."""
        secret = self.settings.webhook_secret
        if not secret:
            return True
        return hmac.compare_digest(str(token or ""), secret)

    @staticmethod
    def dedup_key(event: WebhookEvent) -> str:
        return f"webhook:processed:{event.provider}:{event.external_id}:{event.event_type}"

    async def is_event_processed(self, key: str) -> bool:
        try:
            redis = self._ensure_redis()
            return bool(await redis.exists(key))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), key=key)
            # If Redis is down, process the event anyway to avoid losing it
            return False

    async def mark_event_processed(self, key: str) -> None:
        try:
            redis = self._ensure_redis()
            await redis.setex(key, self.settings.webhook_dedup_ttl_seconds, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), key=key)

    async def receive(
        self,
        db: AsyncSession,
        provider: str,
        payload: Dict[str, Any],
        token: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> WebhookEvent:
        """
        Persist an incoming callback.

        A repeat of an already processed delivery returns the stored event.

        Raises:
            WebhookError: If the token does not match (the event is still stored as failed)
        """
        provider = provider.lower()
        event_type = str(
            payload.get("OrderNotificationType") or payload.get("event_type") or "IPNCHANGE"
        )
        external_id = str(
            payload.get("OrderTrackingId")
            or payload.get("reference")
            or f"{provider}-{uuid.uuid4().hex}"
        )
        order_reference = payload.get("OrderMerchantReference") or payload.get(
            "merchant_reference"
        )

        if self.verify_token(token):
            stmt = (
                select(WebhookEvent)
                .where(
                    WebhookEvent.provider == provider,
                    WebhookEvent.external_id == external_id,
                    WebhookEvent.event_type == event_type,
                    WebhookEvent.status == "processed",
                )
                .limit(1)
            )
            existing = (await db.execute(stmt)).scalar_one_or_none()
            if existing is not None:
                logger.info(
                    "webhook_duplicate_delivery",
                    provider=provider,
                    external_id=external_id,
                    event_id=existing.id,
                )
                return existing

        event = WebhookEvent(
            provider=provider,
            event_type=event_type,
            external_id=external_id,
            order_reference=str(order_reference) if order_reference else None,
            payload=payload,
            signature=signature,
            status="received",
        )
        db.add(event)

        if not self.verify_token(token):
            event.status = "failed"
            event.error = "Invalid webhook token"
            await db.commit()
            logger.warning("webhook_invalid_token", provider=provider, external_id=external_id)
            metrics.record_webhook_event(provider, "failed", 0.0)
            raise WebhookError("Invalid webhook token")

        await db.commit()
        logger.info(
            "webhook_received",
            event_id=event.id,
            provider=provider,
            event_type=event_type,
            external_id=external_id,
        )
        return event

    async def _find_payment(self, db: AsyncSession, event: WebhookEvent) -> Optional[Payment]:
        conditions = [Payment.external_reference == event.external_id]
        if event.order_reference:
            conditions.append(Payment.reference == event.order_reference)
        stmt = select(Payment).where(or_(*conditions)).order_by(Payment.id).limit(1)
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _resolve_status(self, event: WebhookEvent) -> Optional[str]:
        payload = event.payload or {}
        raw = payload.get("status") or payload.get("payment_status")
        status = map_payment_status(str(raw)) if raw else None
        if status is None and event.provider != "pesapal":
            status = map_payment_status(event.event_type)
        if status is None and event.provider == "pesapal":
            result = await self.status_gateway.query_status(event.external_id)
            query_status = (result.status or "").strip().lower()
            if not result.success and (not query_status or query_status in QUERY_ERROR_STATUSES):
                logger.warning(
                    "webhook_status_query_failed",
                    event_id=event.id,
                    external_id=event.external_id,
                    status=result.status,
                    error=result.error_message,
                )
                return None
            status = map_payment_status(result.status)
        return status

    async def _sync_payable(
        self, db: AsyncSession, payment: Payment, new_status: str, error: Optional[str]
    ) -> None:
        conditions = [Donation.payment_id == payment.id]
        if payment.payable_type == "donation" and payment.payable_id is not None:
            conditions.append(Donation.id == payment.payable_id)
        donation_stmt = select(Donation).where(or_(*conditions))
        for donation in (await db.execute(donation_stmt)).scalars().all():
            if donation.status != "paid":
                donation.status = new_status
                donation.payment_id = donation.payment_id or payment.id

        if payment.payable_type == "subscription":
            transaction_id = payment.external_reference or payment.transaction_id
            if transaction_id:
                await self.renewal_service.settle_pending_job(
                    db, transaction_id, succeeded=new_status == "paid", error=error
                )

    async def process(self, db: AsyncSession, event: WebhookEvent) -> Dict[str, Any]:
        """
        Apply a stored event to its payment and commit.

        Raises:
            WebhookError: If processing fails unexpectedly (the event is marked failed)
        """
        start_time = time.time()
        event_id = event.id
        provider = event.provider

        if event.status == "processed":
            return {"status": "duplicate", "event_id": event_id}

        if provider not in SUPPORTED_PROVIDERS:
            event.status = "ignored"
            event.error = "Unsupported provider"
            event.processed_at = utcnow()
            await db.commit()
            logger.warning("webhook_unsupported_provider", event_id=event_id, provider=provider)
            metrics.record_webhook_event(provider, "ignored", time.time() - start_time)
            return {"status": "ignored", "event_id": event_id, "reason": "Unsupported provider"}

        key = self.dedup_key(event)
        if await self.is_event_processed(key):
            event.status = "ignored"
            event.error = "Duplicate delivery"
            event.processed_at = utcnow()
            await db.commit()
            metrics.record_webhook_event(provider, "duplicate", time.time() - start_time)
            return {"status": "duplicate", "event_id": event_id}

        try:
            payment = await self._find_payment(db, event)
            if payment is None:
                event.status = "failed"
                event.error = "payment_not_found"
                await db.commit()
                logger.warning(
                    "webhook_payment_not_found",
                    event_id=event_id,
                    external_id=event.external_id,
                    order_reference=event.order_reference,
                )
                metrics.record_webhook_event(provider, "failed", time.time() - start_time)
                return {"status": "payment_not_found", "event_id": event_id}

            new_status = await self._resolve_status(event)
            if new_status is None:
                event.status = "failed"
                event.error = "Unable to determine payment status"
                await db.commit()
                metrics.record_webhook_event(provider, "failed", time.time() - start_time)
                return {"status": "status_unknown", "event_id": event_id}

            previous_status = payment.status
            now = utcnow()
            if previous_status == "paid" and new_status != "paid":
                logger.warning(
                    "webhook_ignored_paid_downgrade",
                    event_id=event_id,
                    payment_id=payment.id,
                    requested_status=new_status,
                )
            elif new_status != "pending" and new_status != previous_status:
                payment.status = new_status
                if not payment.external_reference:
                    payment.external_reference = event.external_id
                if new_status == "paid":
                    payment.paid_at = now
                    payment.receipt_url = (event.payload or {}).get(
                        "receipt_url"
                    ) or payment.receipt_url
                error = None if new_status == "paid" else f"Gateway reported {new_status}"
                await self._sync_payable(db, payment, new_status, error)
                write_outbox_event(
                    db,
                    aggregate_type="payment",
                    aggregate_id=payment.id,
                    event_type=f"payment.{new_status}",
                    payload={
                        "payment_id": payment.id,
                        "reference": payment.reference,
                        "external_reference": payment.external_reference,
                        "previous_status": previous_status,
                        "status": new_status,
                        "amount": str(payment.amount),
                    },
                )

            # A pending outcome settles nothing; the next IPN for this order
            # carries the same identity and must not be taken for a repeat.
            settled = new_status != "pending"
            event.status = "processed" if settled else "ignored"
            event.error = None if settled else "Payment still pending"
            event.processed_at = now
            await db.commit()

        except Exception as e:
            await db.rollback()
            logger.error("webhook_event_processing_failed", event_id=event_id, error=str(e))
            event.status = "failed"
            event.error = str(e)
            await db.commit()
            metrics.record_webhook_event(provider, "failed", time.time() - start_time)
            raise WebhookError(f"Failed to process event {event_id}: {str(e)}")

        outcome = "processed" if settled else "pending"
        if settled:
            await self.mark_event_processed(key)
        metrics.record_webhook_event(provider, outcome, time.time() - start_time)
        logger.info(
            "webhook_event_processed",
            event_id=event_id,
            outcome=outcome,
            payment_id=payment.id,
            previous_status=previous_status,
            payment_status=payment.status,
        )
        return {
            "status": outcome,
            "event_id": event_id,
            "payment_id": payment.id,
            "previous_status": previous_status,
            "payment_status": payment.status,
        }

    async def retry_failed(self, db: AsyncSession, limit: int = 50) -> Dict[str, int]:
        """Reprocess failed events, skipping ones rejected for a bad token."""
        stmt = (
            select(WebhookEvent.id)
            .where(
                WebhookEvent.status == "failed",
                or_(WebhookEvent.error.is_(None), WebhookEvent.error != "Invalid webhook token"),
            )
            .order_by(WebhookEvent.id)
            .limit(limit)
        )
        event_ids = list((await db.execute(stmt)).scalars().all())
        summary = {"retried": 0, "processed": 0, "failed": 0}
        for event_id in event_ids:
            # A failed attempt rolls back and expires everything loaded so far
            event = await db.get(WebhookEvent, event_id)
            if event is None:
                continue
            summary["retried"] += 1
            event.status = "received"
            try:
                result = await self.process(db, event)
            except WebhookError:
                summary["failed"] += 1
                continue
            if result["status"] in ("processed", "pending"):
                summary["processed"] += 1
            else:
                summary["failed"] += 1
        logger.info("webhook_retry_completed", **summary)
        return summary

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
