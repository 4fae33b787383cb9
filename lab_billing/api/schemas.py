"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToleranceOptions(BaseModel):
    """Per-run overrides of the configured matching tolerances."""

    amount_percentage_tolerance: Optional[float] = Field(default=None, ge=0)
    amount_absolute_tolerance: Optional[float] = Field(default=None, ge=0)
    date_tolerance: Optional[int] = Field(default=None, ge=0)
    fuzzy_match_threshold: Optional[int] = Field(default=None, ge=0, le=100)


class RunFromDataRequest(BaseModel):
    """Request schema for reconciling uploaded transaction lists."""

    app_transactions: List[Dict[str, Any]] = Field(
        default_factory=list, description="Transactions recorded by the app"
    )
    gateway_transactions: List[Dict[str, Any]] = Field(
        default_factory=list, description="Transactions reported by the gateway"
    )
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    county: Optional[str] = None
    created_by: Optional[str] = None
    notes: Optional[str] = None
    options: Optional[ToleranceOptions] = None
    dry_run: bool = Field(default=False, description="Compute without persisting")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "app_transactions": [
                        {
                            "transaction_id": "TXN-1001",
                            "reference": "DON-2024-001",
                            "amount": "1500.00",
                            "date": "2024-05-01T09:30:00",
                            "status": "paid",
                        }
                    ],
                    "gateway_transactions": [
                        {
                            "transaction_id": "TXN-1001",
                            "reference": "DON-2024-001",
                            "amount": "1500.00",
                            "date": "2024-05-01T09:31:12",
                            "status": "COMPLETED",
                        }
                    ],
                    "created_by": "finance@lab.example",
                }
            ]
        }
    }


class TriggerReconciliationRequest(BaseModel):
    """Request schema for reconciling a period from the database."""

    period_start: Optional[datetime] = Field(
        default=None, description="Window start (defaults to yesterday 00:00 UTC)"
    )
    period_end: Optional[datetime] = Field(
        default=None, description="Window end, exclusive (defaults to today 00:00 UTC)"
    )
    county: Optional[str] = None
    sync: bool = Field(default=True, description="Query the gateway for each app payment")
    created_by: Optional[str] = None
    dry_run: bool = False


class ReconciliationSummaryResponse(BaseModel):
    """Response schema for a reconciliation run outcome."""

    run_id: Optional[str] = Field(default=None, description="Run uuid (None for dry runs)")
    status: str
    dry_run: bool
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    county: Optional[str] = None
    total_matched: int
    total_unmatched_app: int
    total_unmatched_gateway: int
    total_amount_mismatch: int
    total_status_mismatch: int
    total_duplicates: int
    total_app_amount: str
    total_gateway_amount: str
    total_discrepancy: str
    item_counts: Dict[str, int]
    discrepancies: Optional[List[Dict[str, Any]]] = None


class ReconciliationRunResponse(BaseModel):
    """Response schema for a persisted reconciliation run."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    run_id: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    county: Optional[str] = None
    total_matched: int
    total_unmatched_app: int
    total_unmatched_gateway: int
    total_amount_mismatch: int
    total_status_mismatch: int
    total_duplicates: int
    total_app_amount: Decimal
    total_gateway_amount: Decimal
    total_discrepancy: Decimal
    created_by: Optional[str] = None
    notes: Optional[str] = None
    error_message: Optional[str] = None


class RunListResponse(BaseModel):
    items: List[ReconciliationRunResponse]
    total: int
    page: int
    per_page: int


class RunDetailResponse(BaseModel):
    run: ReconciliationRunResponse
    summary: Dict[str, Any]


class ReconciliationStatsResponse(BaseModel):
    """Response schema for aggregate reconciliation statistics."""

    total_runs: int
    runs_by_status: Dict[str, int]
    success_rate: float
    last_run: Optional[ReconciliationRunResponse] = None
    total_matched: int
    total_unmatched_app: int
    total_unmatched_gateway: int
    total_amount_mismatch: int
    total_status_mismatch: int
    total_duplicates: int
    total_discrepancy: Decimal
    open_discrepancies: int


class ReconciliationItemResponse(BaseModel):
    """Response schema for one discrepancy ledger row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    reconciliation_run_id: int
    transaction_id: Optional[str] = None
    reference: Optional[str] = None
    source: str
    transaction_date: Optional[datetime] = None
    amount: Decimal
    payer_name: Optional[str] = None
    payer_phone: Optional[str] = None
    payer_email: Optional[str] = None
    county: Optional[str] = None
    status: str
    linked_transaction_id: Optional[str] = None
    discrepancy_amount: Optional[Decimal] = None
    match_confidence: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta")
    resolution_status: Optional[str] = None
    resolution_action: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None


class ItemListResponse(BaseModel):
    items: List[ReconciliationItemResponse]
    total: int
    page: int
    per_page: int


class ResolveDiscrepancyRequest(BaseModel):
    """Request schema for resolving a discrepancy."""

    action: Literal["accept_app", "accept_gateway", "write_off", "manual_match"]
    resolved_by: str = Field(..., min_length=1)
    note: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "action": "accept_gateway",
                    "resolved_by": "finance@lab.example",
                    "note": "Gateway settlement report confirms 1450.00",
                }
            ]
        }
    }


class IgnoreDiscrepancyRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1)
    note: Optional[str] = None


class ReopenDiscrepancyRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    note: Optional[str] = None


class ManualMatchRequest(BaseModel):
    """Request schema for pairing an unmatched app item with a gateway item."""

    app_item_id: int
    gateway_item_id: int
    resolved_by: str = Field(..., min_length=1)
    note: Optional[str] = None


class ManualMatchResponse(BaseModel):
    app_item: ReconciliationItemResponse
    gateway_item: ReconciliationItemResponse


class FlagDiscrepancyRequest(BaseModel):
    """Request schema for flagging a record for follow-up."""

    model_type: str = Field(..., description="Flagged record type, e.g. 'payment'")
    model_id: str
    reason: str = Field(..., min_length=1)
    actor: Optional[str] = None


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    model_type: str
    model_id: Optional[str] = None
    actor: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class RenewalJobResponse(BaseModel):
    """Response schema for an auto-renewal job."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    subscription_id: int
    member_id: int
    status: str
    attempt_type: str
    attempt_number: int
    max_attempts: int
    scheduled_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    amount: Decimal
    currency: str
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime


class RenewalJobListResponse(BaseModel):
    items: List[RenewalJobResponse]
    total: int
    page: int
    per_page: int


class ExtendGracePeriodRequest(BaseModel):
    days: int = Field(..., gt=0, le=365, description="Days to add to the grace period")
    actor: Optional[str] = None


class SubscriptionResponse(BaseModel):
    """Response schema for a subscription."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    member_id: int
    plan_id: int
    status: str
    starts_at: datetime
    ends_at: Optional[datetime] = None
    auto_renew: bool
    renewal_attempt_count: int
    last_renewal_result: Optional[str] = None
    next_auto_renewal_at: Optional[datetime] = None
    grace_period_status: str
    grace_period_ends_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: int = Field(..., description="Stored webhook event id")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Processing details")
