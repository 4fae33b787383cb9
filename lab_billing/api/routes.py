"""
API routes for reconciliation, finance, renewals, subscriptions and webhooks.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from lab_billing.core.discrepancies import (
    DiscrepancyNotFoundError,
    DiscrepancyResolutionError,
    DiscrepancyService,
)
from lab_billing.core.export import ExportError, export_items_csv, export_run_csv
from lab_billing.core.lifecycle import SubscriptionLifecycleError, SubscriptionLifecycleService
from lab_billing.core.reconciliation import (
    InvalidTransactionDataError,
    ReconciliationEngine,
    ReconciliationError,
)
from lab_billing.core.renewal import AutoRenewalService, RenewalError
from lab_billing.core.summaries import DonationReconciliationService, FinancialReconciliationService
from lab_billing.database.connection import get_db
from lab_billing.database.models import Subscription
from lab_billing.integrations.webhook_handler import (
    SUPPORTED_PROVIDERS,
    WebhookError,
    WebhookHandler,
)
from lab_billing.monitoring.health import HealthCheck
from lab_billing.timeutils import utcnow

from .schemas import (
    AuditLogResponse,
    ExtendGracePeriodRequest,
    FlagDiscrepancyRequest,
    HealthCheckResponse,
    IgnoreDiscrepancyRequest,
    ItemListResponse,
    ManualMatchRequest,
    ManualMatchResponse,
    ReconciliationItemResponse,
    ReconciliationStatsResponse,
    ReconciliationSummaryResponse,
    RenewalJobListResponse,
    RenewalJobResponse,
    ReopenDiscrepancyRequest,
    ResolveDiscrepancyRequest,
    RunDetailResponse,
    RunFromDataRequest,
    RunListResponse,
    SubscriptionResponse,
    TriggerReconciliationRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
reconciliation_router = APIRouter(prefix="/admin/reconciliation", tags=["reconciliation"])
finance_router = APIRouter(prefix="/admin/finance", tags=["finance"])
renewal_router = APIRouter(prefix="/admin/renewals", tags=["renewals"])
subscription_router = APIRouter(prefix="/admin/subscriptions", tags=["subscriptions"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

# Initialize services
reconciliation_engine = ReconciliationEngine()
discrepancy_service = DiscrepancyService()
financial_service = FinancialReconciliationService()
donation_service = DonationReconciliationService()
renewal_service = AutoRenewalService()
lifecycle_service = SubscriptionLifecycleService()
webhook_handler = WebhookHandler(renewal_service=renewal_service)
health_check = HealthCheck()


def _yesterday_window() -> tuple[datetime, datetime]:
    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    return today - timedelta(days=1), today


# Reconciliation


@reconciliation_router.post(
    "/runs",
    response_model=ReconciliationSummaryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reconcile uploaded data",
    description="Match uploaded app and gateway transaction lists and record the outcome",
)
async def create_run(
    request: RunFromDataRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    logger.info(
        "api_reconciliation_run_requested",
        app_count=len(request.app_transactions),
        gateway_count=len(request.gateway_transactions),
        dry_run=request.dry_run,
    )
    try:
        return await reconciliation_engine.run_from_data(
            db,
            request.app_transactions,
            request.gateway_transactions,
            period_start=request.period_start,
            period_end=request.period_end,
            county=request.county,
            created_by=request.created_by,
            notes=request.notes,
            options=request.options.model_dump(exclude_none=True) if request.options else None,
            dry_run=request.dry_run,
        )
    except InvalidTransactionDataError as e:
        logger.warning("api_reconciliation_invalid_data", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ReconciliationError as e:
        logger.error("api_reconciliation_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Reconciliation failed: {str(e)}",
        )


@reconciliation_router.post(
    "/trigger",
    response_model=ReconciliationSummaryResponse,
    summary="Reconcile a period",
    description="Reconcile recorded payments for a window, by default yesterday",
)
async def trigger_reconciliation(
    request: TriggerReconciliationRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    default_start, default_end = _yesterday_window()
    period_start = request.period_start or default_start
    period_end = request.period_end or default_end
    if period_end <= period_start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="period_end must be after period_start",
        )

    try:
        return await reconciliation_engine.reconcile_period(
            db,
            period_start,
            period_end,
            county=request.county,
            sync=request.sync,
            created_by=request.created_by,
            dry_run=request.dry_run,
        )
    except ReconciliationError as e:
        logger.error("api_reconciliation_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Reconciliation failed: {str(e)}",
        )


@reconciliation_router.get("/runs", response_model=RunListResponse, summary="List runs")
async def list_runs(
    run_status: Optional[str] = Query(default=None, alias="status"),
    county: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await reconciliation_engine.list_runs(db, run_status, county, page, per_page)


@reconciliation_router.get("/runs/{run_id}", response_model=RunDetailResponse, summary="Get run")
async def get_run(run_id: str, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    detail = await reconciliation_engine.get_run(db, run_id)
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return detail


@reconciliation_router.delete(
    "/runs/{run_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete run"
)
async def delete_run(run_id: str, db: AsyncSession = Depends(get_db)) -> Response:
    deleted = await reconciliation_engine.delete_run(db, run_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@reconciliation_router.get(
    "/stats", response_model=ReconciliationStatsResponse, summary="Reconciliation statistics"
)
async def reconciliation_stats(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    return await reconciliation_engine.get_stats(db)


@reconciliation_router.get(
    "/export",
    summary="Export items as CSV",
    description="CSV (UTF-8 with BOM) of reconciliation items, optionally filtered",
)
async def export_items(
    run_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    county: Optional[str] = None,
    item_status: Optional[str] = Query(default=None, alias="status"),
    db: AsyncSession = Depends(get_db),
) -> Response:
    try:
        if run_id:
            content = await export_run_csv(db, run_id)
        else:
            content = await export_items_csv(db, start_date, end_date, county, item_status)
    except ExportError as e:
        code = status.HTTP_404_NOT_FOUND if run_id else status.HTTP_400_BAD_REQUEST
        raise HTTPException(status_code=code, detail=str(e))

    filename = f"reconciliation_items_{utcnow().strftime('%Y%m%d_%H%M%S')}.csv"
    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@reconciliation_router.get(
    "/discrepancies", response_model=ItemListResponse, summary="List discrepancies"
)
async def list_discrepancies(
    run_id: Optional[str] = None,
    item_status: Optional[str] = Query(default=None, alias="status"),
    resolution_status: Optional[str] = Query(
        default="open", description="open, resolved, ignored or all"
    ),
    county: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await discrepancy_service.list_discrepancies(
        db,
        run_id=run_id,
        status=item_status,
        resolution_status=None if resolution_status == "all" else resolution_status,
        county=county,
        page=page,
        per_page=per_page,
    )


@reconciliation_router.get(
    "/discrepancies/open-counts", summary="Discrepancy resolution counts per run"
)
async def discrepancy_open_counts(
    run_id: Optional[str] = None, db: AsyncSession = Depends(get_db)
) -> List[Dict[str, Any]]:
    return await discrepancy_service.open_counts(db, run_id)


def _discrepancy_http_error(e: DiscrepancyResolutionError) -> HTTPException:
    if isinstance(e, DiscrepancyNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@reconciliation_router.post(
    "/discrepancies/manual-match",
    response_model=ManualMatchResponse,
    summary="Manually match two items",
)
async def manual_match(
    request: ManualMatchRequest, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    try:
        app_item, gateway_item = await discrepancy_service.manual_match(
            db, request.app_item_id, request.gateway_item_id, request.resolved_by, request.note
        )
    except DiscrepancyResolutionError as e:
        raise _discrepancy_http_error(e)
    return {"app_item": app_item, "gateway_item": gateway_item}


@reconciliation_router.post(
    "/discrepancies/{item_id}/resolve",
    response_model=ReconciliationItemResponse,
    summary="Resolve a discrepancy",
)
async def resolve_discrepancy(
    item_id: int, request: ResolveDiscrepancyRequest, db: AsyncSession = Depends(get_db)
) -> Any:
    try:
        return await discrepancy_service.resolve(
            db, item_id, request.action, request.resolved_by, request.note
        )
    except DiscrepancyResolutionError as e:
        raise _discrepancy_http_error(e)


@reconciliation_router.post(
    "/discrepancies/{item_id}/ignore",
    response_model=ReconciliationItemResponse,
    summary="Ignore a discrepancy",
)
async def ignore_discrepancy(
    item_id: int, request: IgnoreDiscrepancyRequest, db: AsyncSession = Depends(get_db)
) -> Any:
    try:
        return await discrepancy_service.ignore(db, item_id, request.resolved_by, request.note)
    except DiscrepancyResolutionError as e:
        raise _discrepancy_http_error(e)


@reconciliation_router.post(
    "/discrepancies/{item_id}/reopen",
    response_model=ReconciliationItemResponse,
    summary="Reopen a discrepancy",
)
async def reopen_discrepancy(
    item_id: int, request: ReopenDiscrepancyRequest, db: AsyncSession = Depends(get_db)
) -> Any:
    try:
        return await discrepancy_service.reopen(db, item_id, request.actor, request.note)
    except DiscrepancyResolutionError as e:
        raise _discrepancy_http_error(e)


# Finance


@finance_router.get("/report", summary="Financial summary report")
async def financial_report(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    county: Optional[str] = None,
    actor: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await financial_service.report(db, start, end, county, actor)


@finance_router.get("/donations/discrepancies", summary="Donation/payment discrepancies")
async def donation_discrepancies(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    return await donation_service.detect_discrepancies(db)


@finance_router.post("/donations/reconcile", summary="Reconcile pending donations")
async def reconcile_donations(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await donation_service.reconcile_all(db, start, end)


@finance_router.get("/donations/summary", summary="Donation totals by county and day")
async def donation_summary(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await donation_service.summary(db, start, end)


@finance_router.post(
    "/flag",
    response_model=AuditLogResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Flag a discrepancy",
)
async def flag_discrepancy(
    request: FlagDiscrepancyRequest, db: AsyncSession = Depends(get_db)
) -> Any:
    return await financial_service.flag_discrepancy(
        db, request.model_type, request.model_id, request.reason, request.actor
    )


# Renewals


@renewal_router.get("/jobs", response_model=RenewalJobListResponse, summary="List renewal jobs")
async def list_renewal_jobs(
    job_status: Optional[str] = Query(default=None, alias="status"),
    subscription_id: Optional[int] = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await renewal_service.list_jobs(db, job_status, subscription_id, page, per_page)


@renewal_router.get("/jobs/{job_id}", response_model=RenewalJobResponse, summary="Get job")
async def get_renewal_job(job_id: int, db: AsyncSession = Depends(get_db)) -> Any:
    job = await renewal_service.get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Renewal job not found")
    return job


@renewal_router.post(
    "/jobs/{job_id}/retry", response_model=RenewalJobResponse, summary="Retry a job now"
)
async def retry_renewal_job(job_id: int, db: AsyncSession = Depends(get_db)) -> Any:
    if await renewal_service.get_job(db, job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Renewal job not found")
    try:
        return await renewal_service.retry_job(db, job_id)
    except RenewalError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@renewal_router.post(
    "/jobs/{job_id}/cancel", response_model=RenewalJobResponse, summary="Cancel a job"
)
async def cancel_renewal_job(job_id: int, db: AsyncSession = Depends(get_db)) -> Any:
    if await renewal_service.get_job(db, job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Renewal job not found")
    try:
        return await renewal_service.cancel_job(db, job_id)
    except RenewalError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@renewal_router.post("/process-due", summary="Run due renewals")
async def process_due_renewals(
    window_hours: int = Query(default=24, ge=0, le=24 * 30),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, int]:
    return await renewal_service.process_due_renewals(db, window_hours=window_hours)


# Subscriptions


@subscription_router.post("/process-expired", summary="Advance expired subscriptions")
async def process_expired_subscriptions(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    return await lifecycle_service.process_expired(db)


@subscription_router.post(
    "/{subscription_id}/grace-period/extend",
    response_model=SubscriptionResponse,
    summary="Extend a grace period",
)
async def extend_grace_period(
    subscription_id: int,
    request: ExtendGracePeriodRequest,
    db: AsyncSession = Depends(get_db),
) -> Any:
    subscription = await db.get(Subscription, subscription_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    try:
        return await lifecycle_service.extend_grace_period(
            db, subscription, request.days, request.actor
        )
    except SubscriptionLifecycleError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


# Webhooks


@webhook_router.api_route(
    "/{provider}",
    methods=["GET", "POST"],
    response_model=WebhookResponse,
    summary="Payment gateway callback",
    description="Pesapal IPN (GET or POST) and mock gateway callbacks",
)
async def receive_webhook(
    provider: str,
    request: Request,
    x_webhook_token: Optional[str] = Header(default=None, alias="X-Webhook-Token"),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    if provider.lower() not in SUPPORTED_PROVIDERS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider}"
        )

    payload: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST" and await request.body():
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be JSON"
            )
        if not isinstance(body, dict):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object"
            )
        payload.update(body)

    token = payload.pop("token", None) or x_webhook_token

    try:
        event = await webhook_handler.receive(db, provider, payload, token=token)
    except WebhookError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    try:
        result = await webhook_handler.process(db, event)
    except WebhookError as e:
        logger.error("api_webhook_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )

    return {"status": result["status"], "event_id": event.id, "result": result}


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await health_check.readiness()
        if result["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get("/metrics", summary="Prometheus metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
