"""FastAPI application and routes."""
from .main import app
from .schemas import (
    ReconciliationSummaryResponse,
    ResolveDiscrepancyRequest,
    RunFromDataRequest,
    TriggerReconciliationRequest,
)

__all__ = [
    "app",
    "ReconciliationSummaryResponse",
    "ResolveDiscrepancyRequest",
    "RunFromDataRequest",
    "TriggerReconciliationRequest",
]
