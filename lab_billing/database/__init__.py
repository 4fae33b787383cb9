"""Database package for lab billing."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    AuditLog,
    AutoRenewalJob,
    Base,
    Donation,
    Member,
    OutboxEvent,
    Payment,
    PaymentMethod,
    Plan,
    ReconciliationItem,
    ReconciliationRun,
    RenewalReminder,
    Subscription,
    WebhookEvent,
)

__all__ = [
    "AuditLog",
    "AutoRenewalJob",
    "Base",
    "Donation",
    "Member",
    "OutboxEvent",
    "Payment",
    "PaymentMethod",
    "Plan",
    "ReconciliationItem",
    "ReconciliationRun",
    "RenewalReminder",
    "Subscription",
    "WebhookEvent",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
]
