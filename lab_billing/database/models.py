"""SQLAlchemy database models for the lab billing back office."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from lab_billing.timeutils import utcnow

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Member(Base):
    """Lab member who owns subscriptions, payments and donations."""

    __tablename__ = "members"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    county: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Member(id={self.id}, email={self.email})>"


class PaymentMethod(Base):
    """Stored payment method (M-Pesa number, card token, bank account)."""

    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="mpesa")
    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("type IN ('mpesa', 'card', 'bank')", name="valid_payment_method_type"),
    )


class Plan(Base):
    """Subscription plan. A plan flagged ``is_free`` is the downgrade target."""

    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    interval_months: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, slug={self.slug}, price={self.price})>"


class Subscription(Base):
    """
    Plan subscription with renewal and grace-period lifecycle state.

    Access is retained while ``status`` is ``active`` or ``grace_period``.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan_id: Mapped[int] = mapped_column(ForeignKey("plans.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    payment_method: Mapped[str | None] = mapped_column(String(255), nullable=True)
    renewal_attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_renewal_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_renewal_result: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_renewal_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_auto_renewal_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    grace_period_status: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    grace_period_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    grace_period_ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    suspended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    suspension_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'grace_period', 'suspended', 'cancelled', 'expired')",
            name="valid_subscription_status",
        ),
        CheckConstraint(
            "grace_period_status IN ('active', 'expired', 'none')",
            name="valid_grace_period_status",
        ),
        Index("idx_subscriptions_status_ends", "status", "ends_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, member_id={self.member_id}, "
            f"status={self.status}, ends_at={self.ends_at})>"
        )


class AutoRenewalJob(Base):
    """
    One renewal charge attempt for a subscription.

    Stores the gateway response and the retry schedule produced on failure.
    """

    __tablename__ = "auto_renewal_jobs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    member_id: Mapped[int] = mapped_column(ForeignKey("members.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    attempt_type: Mapped[str] = mapped_column(String(20), nullable=False, default="initial")
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    payment_method: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_gateway_response: Mapped[Dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'succeeded', 'failed', "
            "'retry_scheduled', 'cancelled')",
            name="valid_renewal_job_status",
        ),
        CheckConstraint(
            "attempt_type IN ('initial', 'retry_24h', 'retry_3d', 'retry_7d', 'manual_retry')",
            name="valid_renewal_attempt_type",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<AutoRenewalJob(id={self.id}, subscription_id={self.subscription_id}, "
            f"status={self.status}, attempt={self.attempt_type})>"
        )


class RenewalReminder(Base):
    """Scheduled reminder ahead of a subscription's expiry."""

    __tablename__ = "renewal_reminders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    member_id: Mapped[int] = mapped_column(ForeignKey("members.id"), nullable=False)
    reminder_type: Mapped[str] = mapped_column(String(20), nullable=False)
    days_before_expiry: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="email")
    meta: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("subscription_id", "reminder_type", name="uq_reminder_per_type"),
        CheckConstraint(
            "reminder_type IN ('seven_days', 'three_days', 'one_day', 'final_notice')",
            name="valid_reminder_type",
        ),
        Index("idx_reminders_due", "is_sent", "scheduled_at"),
    )


class Payment(Base):
    """
    Internal payment record.

    ``reference`` is the merchant reference sent to the gateway,
    ``external_reference`` the gateway's tracking id.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    member_id: Mapped[int | None] = mapped_column(ForeignKey("members.id"), nullable=True)
    payable_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payable_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    gateway: Mapped[str] = mapped_column(String(50), nullable=False, default="mock")
    method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    external_reference: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    receipt_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    county: Mapped[str | None] = mapped_column(String(100), nullable=True)
    meta: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'cancelled', 'refunded')",
            name="valid_payment_status",
        ),
        Index("idx_payments_payable", "payable_type", "payable_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, reference={self.reference}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Donation(Base):
    """Donation, verified once its backing payment is paid."""

    __tablename__ = "donations"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    member_id: Mapped[int | None] = mapped_column(ForeignKey("members.id"), nullable=True)
    donor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    donor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    reference: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True)
    county: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'cancelled')",
            name="valid_donation_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Donation(id={self.id}, reference={self.reference}, status={self.status})>"


class WebhookEvent(Base):
    """
    Gateway callback as received.

    Rows are kept for replay; ``status`` tracks processing.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    order_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    signature: Mapped[str | None] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="received")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('received', 'processed', 'failed', 'ignored')",
            name="valid_webhook_status",
        ),
        Index("idx_webhook_provider_external", "provider", "external_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(id={self.id}, provider={self.provider}, "
            f"external_id={self.external_id}, status={self.status})>"
        )


class ReconciliationRun(Base):
    """
    One batch comparison of app transactions against a gateway list.

    Totals are denormalised from the run's items when the run completes.
    """

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    period_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    county: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    total_matched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_unmatched_app: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_unmatched_gateway: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount_mismatch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_status_mismatch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_duplicates: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_app_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    total_gateway_amount: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0")
    )
    total_discrepancy: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("0")
    )
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    options: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'success', 'partial', 'failed')",
            name="valid_reconciliation_run_status",
        ),
        Index("idx_reconciliation_runs_started", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<ReconciliationRun(run_id={self.run_id}, status={self.status})>"


class ReconciliationItem(Base):
    """
    One side of a reconciliation outcome.

    A matched pair produces two rows (``app`` and ``gateway``) cross-linked
    through ``linked_transaction_id``. Every non-matched row is a discrepancy
    carrying a resolution state.
    """

    __tablename__ = "reconciliation_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    reconciliation_run_id: Mapped[int] = mapped_column(
        ForeignKey("reconciliation_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    source: Mapped[str] = mapped_column(String(10), nullable=False)
    transaction_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    payer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    account: Mapped[str | None] = mapped_column(String(255), nullable=True)
    county: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    linked_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    discrepancy_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    match_confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    meta: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_status: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    resolution_action: Mapped[str | None] = mapped_column(String(30), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("source IN ('app', 'gateway')", name="valid_item_source"),
        CheckConstraint(
            "status IN ('matched', 'unmatched_app', 'unmatched_gateway', "
            "'amount_mismatch', 'status_mismatch', 'duplicate')",
            name="valid_item_status",
        ),
        CheckConstraint(
            "resolution_status IS NULL OR resolution_status IN ('open', 'resolved', 'ignored')",
            name="valid_item_resolution_status",
        ),
        Index("idx_reconciliation_items_run_status", "reconciliation_run_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReconciliationItem(id={self.id}, source={self.source}, "
            f"transaction_id={self.transaction_id}, status={self.status})>"
        )


class AuditLog(Base):
    """Append-only trail of operator and system decisions."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    model_type: Mapped[str] = mapped_column(String(100), nullable=False)
    model_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    actor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    old_values: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    new_values: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )

    __table_args__ = (Index("idx_audit_model", "model_type", "model_id"),)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, model={self.model_type})>"


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as domain changes,
    then published asynchronously by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
