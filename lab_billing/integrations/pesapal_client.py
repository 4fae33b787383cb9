"""
Pesapal API 3.0 client.

Flow for a charge:
1. Bearer token from /Auth/RequestToken (cached just under its 5 minute lifetime)
2. IPN notification id from /URLSetup/GetIpnList, registering the IPN URL if missing
3. /Transactions/SubmitOrderRequest with the billing address

Transport failures are retried with exponential backoff behind a circuit
breaker; anything left over is normalised into a failed ``GatewayResult``.
"""
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from lab_billing.config import get_settings
from lab_billing.integrations.gateway import (
    CircuitBreaker,
    GatewayError,
    GatewayErrorType,
    GatewayResult,
    PaymentGateway,
)
from lab_billing.monitoring.metrics import metrics
from lab_billing.timeutils import to_naive_utc

logger = structlog.get_logger(__name__)

TOKEN_TTL_SECONDS = 240

# Internal error code -> status reported to callers
ERROR_STATUS_MAP = {
    "authentication_failed": "authentication_failed",
    "http_error": "authentication_failed",
    "ipn_failed": "FAILED",
    "transaction_failed": "FAILED",
    "not_implemented": "not_implemented",
    "unknown_error": "UNKNOWN",
}

# GetTransactionStatus status_code values
STATUS_CODES = {0: "INVALID", 1: "COMPLETED", 2: "FAILED", 3: "REVERSED"}

SUCCESS_STATUSES = ("COMPLETED", "PENDING")


def normalize_error(error_code: str, message: str) -> GatewayResult:
    """Build a failed result for an internal error code."""
    return GatewayResult(
        success=False,
        status=ERROR_STATUS_MAP.get(error_code, error_code.upper()),
        error_message=message,
        raw={"error_code": error_code},
    )


def normalize_response(response: Dict[str, Any]) -> GatewayResult:
    """Normalise an order submission response; COMPLETED and PENDING count as success."""
    status = str(
        response.get("status") or response.get("order_tracking_status") or "PENDING"
    ).upper()
    success = status in SUCCESS_STATUSES
    error_message = None
    if not success:
        error_message = (
            response.get("error")
            or response.get("payment_status_description")
            or "Payment processing failed"
        )
    return GatewayResult(
        success=success,
        status=status,
        reference=response.get("order_tracking_id") or response.get("reference"),
        merchant_reference=response.get("merchant_reference"),
        redirect_url=response.get("redirect_url"),
        error_message=error_message,
        raw=response,
    )


class PesapalGateway(PaymentGateway):
    """Async Pesapal v3 gateway built on httpx."""

    name = "pesapal"

    def __init__(
        self,
        consumer_key: Optional[str] = None,
        consumer_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        callback_url: Optional[str] = None,
        ipn_url: Optional[str] = None,
        ipn_notification_type: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the Pesapal client. Unset arguments fall back to settings.

        Args:
            http_client: Pre-built client (tests pass one with ``httpx.MockTransport``)
        """
        settings = get_settings()
        self.consumer_key = consumer_key or settings.pesapal_consumer_key
        self.consumer_secret = consumer_secret or settings.pesapal_consumer_secret
        self.api_base = (api_base or settings.pesapal_api_base or "").rstrip("/")
        self.callback_url = callback_url or settings.pesapal_callback_url
        self.ipn_url = ipn_url or settings.pesapal_ipn_url
        self.ipn_notification_type = (
            ipn_notification_type or settings.pesapal_ipn_notification_type
        )
        self.client = http_client or httpx.AsyncClient(timeout=settings.pesapal_timeout_seconds)
        self.circuit_breaker = CircuitBreaker()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._ipn_id: Optional[str] = None

        logger.info("pesapal_gateway_initialized", configured=self.is_configured)

    @property
    def is_configured(self) -> bool:
        return bool(self.consumer_key and self.consumer_secret and self.api_base)

    @retry(
        retry=retry_if_exception_type(GatewayError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _request(
        self, method: str, path: str, token: Optional[str] = None, **kwargs: Any
    ) -> httpx.Response:
        """
        Send a request, raising ``GatewayError`` for transport and 5xx failures.

        4xx responses are returned for the caller to interpret.
        """
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        start_time = time.time()
        operation = path.strip("/").split("/")[-1]
        try:
            response = await self.circuit_breaker.call(
                self.client.request, method, f"{self.api_base}{path}", headers=headers, **kwargs
            )
        except httpx.HTTPError as e:
            metrics.record_gateway_error(self.name, GatewayErrorType.TRANSIENT.value)
            logger.warning("pesapal_transport_error", path=path, error=str(e))
            raise GatewayError(str(e), GatewayErrorType.TRANSIENT, e)

        metrics.record_gateway_call(
            self.name, operation, str(response.status_code), time.time() - start_time
        )
        if response.status_code >= 500:
            metrics.record_gateway_error(self.name, GatewayErrorType.TRANSIENT.value)
            raise GatewayError(
                f"Pesapal returned {response.status_code}", GatewayErrorType.TRANSIENT
            )
        return response

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            data = response.json()
        except ValueError:
            return default
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if data.get("message"):
                return str(data["message"])
        return default

    async def _get_token(self) -> Optional[str]:
        """Return a cached bearer token or request a new one."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = await self._request(
            "POST",
            "/Auth/RequestToken",
            json={"consumer_key": self.consumer_key, "consumer_secret": self.consumer_secret},
        )
        if not response.is_success:
            logger.error(
                "pesapal_token_error",
                status=response.status_code,
                error=self._error_message(response, "Unknown error"),
            )
            return None

        token: Optional[str]
        if "application/json" in response.headers.get("content-type", "").lower():
            data = response.json()
            token = data.get("token") or data.get("access_token") or response.text
        else:
            token = response.text.strip() or None

        if token:
            self._token = token
            self._token_expires_at = time.monotonic() + TOKEN_TTL_SECONDS
        return token

    async def _ensure_ipn_registered(self, token: str) -> Optional[str]:
        """Return the notification id for our IPN URL, registering it if needed."""
        if self._ipn_id:
            return self._ipn_id

        response = await self._request("GET", "/URLSetup/GetIpnList", token=token)
        if response.is_success:
            ipn_list = response.json()
            if isinstance(ipn_list, list):
                for ipn in ipn_list:
                    if ipn.get("url") == self.ipn_url and int(ipn.get("ipn_status", 0)) == 1:
                        self._ipn_id = ipn.get("ipn_id")
                        return self._ipn_id

        response = await self._request(
            "POST",
            "/URLSetup/RegisterIPN",
            token=token,
            json={"url": self.ipn_url, "ipn_notification_type": self.ipn_notification_type},
        )
        if not response.is_success:
            logger.error(
                "pesapal_ipn_registration_error",
                status=response.status_code,
                error=self._error_message(response, "Unknown error"),
            )
            return None

        self._ipn_id = response.json().get("ipn_id")
        logger.info("pesapal_ipn_registered", ipn_id=self._ipn_id)
        return self._ipn_id

    async def _submit_order(
        self,
        token: str,
        identifier: str,
        amount_minor: int,
        metadata: Dict[str, Any],
        notification_id: str,
    ) -> Dict[str, Any]:
        order_id = metadata.get("reference") or identifier
        email = metadata.get("email") or ""
        phone = metadata.get("phone") or ""
        if not email and not phone:
            return {"error": "Email or phone number is required"}

        response = await self._request(
            "POST",
            "/Transactions/SubmitOrderRequest",
            token=token,
            json={
                "id": order_id,
                "currency": metadata.get("currency", "KES"),
                "amount": amount_minor / 100,
                "description": metadata.get("description") or "Community lab payment",
                "callback_url": self.callback_url,
                "notification_id": notification_id,
                "billing_address": {
                    "email_address": email,
                    "phone_number": phone,
                    "country_code": "KE",
                    "first_name": metadata.get("first_name", ""),
                    "last_name": metadata.get("last_name", ""),
                    "line_1": metadata.get("address_line_1", ""),
                    "line_2": metadata.get("address_line_2", ""),
                    "city": metadata.get("city", ""),
                    "state": metadata.get("state", ""),
                    "postal_code": metadata.get("postal_code", ""),
                    "zip_code": metadata.get("zip_code", ""),
                },
            },
        )

        if not response.is_success:
            return {"error": self._error_message(response, "Failed to submit order")}

        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data:
            if data.get("error"):
                return {"error": self._error_message(response, "Failed to submit order")}
            # Pesapal echoes the HTTP code ("200") here; the outcome arrives by IPN
            status = str(data.get("status") or "PENDING")
            if status.isdigit():
                status = "PENDING"
            return {
                "order_tracking_id": data.get("order_tracking_id"),
                "merchant_reference": data.get("merchant_reference") or order_id,
                "redirect_url": data.get("redirect_url"),
                "status": status,
            }

        # Non-JSON success body: treat it as the tracking id
        return {
            "order_tracking_id": response.text.strip() or None,
            "merchant_reference": order_id,
            "redirect_url": None,
            "status": "PENDING",
        }

    async def charge(
        self, identifier: str, amount_minor: int, metadata: Optional[Dict[str, Any]] = None
    ) -> GatewayResult:
        """Submit an order for ``identifier`` (merchant reference)."""
        if not self.is_configured:
            metrics.record_gateway_error(self.name, GatewayErrorType.NOT_CONFIGURED.value)
            return normalize_error("not_implemented", "Pesapal gateway is not configured")

        metadata = metadata or {}
        logger.info("pesapal_charge_started", identifier=identifier, amount_minor=amount_minor)

        try:
            token = await self._get_token()
            if not token:
                return normalize_error("authentication_failed", "Failed to obtain JWT token")

            notification_id = await self._ensure_ipn_registered(token)
            if not notification_id:
                return normalize_error("ipn_failed", "Failed to register or retrieve IPN URL")

            order = await self._submit_order(
                token, identifier, amount_minor, metadata, notification_id
            )
            if "error" in order:
                return normalize_error("transaction_failed", order["error"])

            result = normalize_response(order)
            logger.info(
                "pesapal_charge_submitted",
                identifier=identifier,
                status=result.status,
                order_tracking_id=result.reference,
            )
            return result

        except GatewayError as e:
            logger.error("pesapal_charge_http_error", identifier=identifier, error=str(e))
            return normalize_error("http_error", str(e))
        except Exception as e:
            logger.error("pesapal_charge_unknown_error", identifier=identifier, error=str(e))
            return normalize_error("unknown_error", str(e))

    async def query_status(self, transaction_id: str) -> GatewayResult:
        """Query /Transactions/GetTransactionStatus for an order tracking id."""
        if not self.is_configured:
            return normalize_error("not_implemented", "Pesapal gateway is not configured")

        try:
            token = await self._get_token()
            if not token:
                return GatewayResult(
                    success=False,
                    status="UNKNOWN",
                    reference=transaction_id,
                    error_message="Failed to obtain authentication token",
                )

            response = await self._request(
                "GET",
                "/Transactions/GetTransactionStatus",
                token=token,
                params={"orderTrackingId": transaction_id},
            )
            if not response.is_success:
                return GatewayResult(
                    success=False,
                    status="UNKNOWN",
                    reference=transaction_id,
                    error_message=self._error_message(response, "Failed to query status"),
                )

            data = response.json()
            raw_status = data.get("status")
            if raw_status and not str(raw_status).isdigit():
                status = raw_status
            elif data.get("status_code") in STATUS_CODES:
                status = STATUS_CODES[data["status_code"]]
            else:
                status = data.get("payment_status_description") or "UNKNOWN"
            status = str(status).upper()
            amount = data.get("amount")
            try:
                occurred_at = to_naive_utc(data.get("created_date"))
            except ValueError:
                occurred_at = None

            return GatewayResult(
                success=status == "COMPLETED",
                status=status,
                reference=data.get("order_tracking_id") or transaction_id,
                merchant_reference=data.get("merchant_reference"),
                error_message=None if status == "COMPLETED" else data.get("description"),
                amount=Decimal(str(amount)) if amount is not None else None,
                occurred_at=occurred_at,
                raw=data,
            )

        except GatewayError as e:
            logger.error("pesapal_status_query_error", transaction_id=transaction_id, error=str(e))
            return GatewayResult(
                success=False, status="UNKNOWN", reference=transaction_id, error_message=str(e)
            )

    async def close(self) -> None:
        await self.client.aclose()
