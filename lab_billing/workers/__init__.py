"""Background workers for scheduled and async processing."""
from .lifecycle_worker import start_lifecycle_worker
from .outbox_publisher import start_outbox_publisher
from .reconciliation_worker import start_reconciliation_worker

__all__ = ["start_lifecycle_worker", "start_outbox_publisher", "start_reconciliation_worker"]
