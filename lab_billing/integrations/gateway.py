"""
Payment gateway contract shared by the Pesapal and mock gateways.

Charges never raise for business failures (declines, missing credentials);
they return a ``GatewayResult`` with ``success=False``. ``GatewayError`` is
reserved for transport problems and an open circuit.
"""
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from lab_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    NOT_CONFIGURED = "not_configured"


class GatewayError(Exception):
    """Base exception for gateway-related errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType = GatewayErrorType.PERMANENT,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


@dataclass
class GatewayResult:
    """Normalised outcome of a gateway call."""

    success: bool
    status: str
    reference: Optional[str] = None
    merchant_reference: Optional[str] = None
    redirect_url: Optional[str] = None
    error_message: Optional[str] = None
    amount: Optional[Decimal] = None
    occurred_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount) if self.amount is not None else None
        data["occurred_at"] = self.occurred_at.isoformat() if self.occurred_at else None
        return data


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Stops calling a failing gateway for ``timeout`` seconds once
    ``failure_threshold`` consecutive failures have been seen.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class PaymentGateway(ABC):
    """Contract every gateway implements."""

    name: str = "abstract"

    @abstractmethod
    async def charge(
        self, identifier: str, amount_minor: int, metadata: Optional[Dict[str, Any]] = None
    ) -> GatewayResult:
        """
        Charge a stored identifier (phone number, token).

        Args:
            identifier: Payment method identifier or merchant reference
            amount_minor: Amount in the smallest currency unit
            metadata: Payer details and description
        """

    @abstractmethod
    async def query_status(self, transaction_id: str) -> GatewayResult:
        """Fetch the current status of a gateway transaction."""

    async def initiate_payment(
        self, reference: str, amount_minor: int, metadata: Optional[Dict[str, Any]] = None
    ) -> GatewayResult:
        """Start a redirect checkout. Gateways without one charge directly."""
        return await self.charge(reference, amount_minor, metadata)

    async def close(self) -> None:
        """Release network resources."""
        return None
