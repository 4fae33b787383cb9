"""Core reconciliation and subscription billing logic."""
from .discrepancies import DiscrepancyResolutionError, DiscrepancyService
from .lifecycle import SubscriptionLifecycleError, SubscriptionLifecycleService
from .matching import MatchingTolerances, TransactionMatcher, TransactionRecord
from .outbox import OutboxPublisher
from .reconciliation import ReconciliationEngine, ReconciliationError
from .reminders import RenewalReminderService
from .renewal import AutoRenewalService, PaymentFailureHandler, RenewalError
from .summaries import DonationReconciliationService, FinancialReconciliationService

__all__ = [
    "AutoRenewalService",
    "DiscrepancyResolutionError",
    "DiscrepancyService",
    "DonationReconciliationService",
    "FinancialReconciliationService",
    "MatchingTolerances",
    "OutboxPublisher",
    "PaymentFailureHandler",
    "ReconciliationEngine",
    "ReconciliationError",
    "RenewalError",
    "RenewalReminderService",
    "SubscriptionLifecycleError",
    "SubscriptionLifecycleService",
    "TransactionMatcher",
    "TransactionRecord",
]
