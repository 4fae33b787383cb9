"""
Mock gateway for local, staging and test environments.

Outcomes are driven by the phone number being charged:

- 254701234567, 254702000000 and numbers starting 2547[0-5]: success
- 254709999999 (card declined), 254708888888 (insufficient funds): failure
- 254707777777: pending
- anything else: success with probability ``success_rate``
"""
import random
import re
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from lab_billing.integrations.gateway import GatewayResult, PaymentGateway
from lab_billing.timeutils import utcnow

logger = structlog.get_logger(__name__)

SUCCESS_NUMBERS = frozenset({"254701234567", "254702000000"})
FAILURE_NUMBERS = {
    "254709999999": "Card declined",
    "254708888888": "Insufficient funds",
}
PENDING_NUMBERS = frozenset({"254707777777"})
SUCCESS_PATTERN = re.compile(r"^2547[0-5]")


class MockGateway(PaymentGateway):
    """In-memory gateway with deterministic outcomes for known numbers."""

    name = "mock"

    def __init__(self, success_rate: float = 0.7, rng: Optional[random.Random] = None):
        """
        Args:
            success_rate: Success probability for unknown identifiers
            rng: Random source for unknown identifiers (seed it for reproducible runs)
        """
        self.success_rate = success_rate
        self.rng = rng or random.Random()
        self._transactions: Dict[str, GatewayResult] = {}

    @staticmethod
    def normalize_identifier(identifier: str) -> str:
        return re.sub(r"[\s+\-]", "", identifier or "")

    def _outcome(self, identifier: str) -> tuple[str, Optional[str]]:
        if identifier in FAILURE_NUMBERS:
            return "FAILED", FAILURE_NUMBERS[identifier]
        if identifier in PENDING_NUMBERS:
            return "PENDING", None
        if identifier in SUCCESS_NUMBERS or SUCCESS_PATTERN.match(identifier):
            return "COMPLETED", None
        if self.rng.random() < self.success_rate:
            return "COMPLETED", None
        return "FAILED", "Payment declined by mock gateway"

    async def charge(
        self, identifier: str, amount_minor: int, metadata: Optional[Dict[str, Any]] = None
    ) -> GatewayResult:
        metadata = metadata or {}
        number = self.normalize_identifier(identifier)
        status, error_message = self._outcome(number)
        transaction_id = f"MOCK-{uuid.uuid4().hex[:12].upper()}"

        result = GatewayResult(
            success=status in ("COMPLETED", "PENDING"),
            status=status,
            reference=transaction_id,
            merchant_reference=metadata.get("reference"),
            error_message=error_message,
            amount=Decimal(amount_minor) / 100,
            occurred_at=utcnow(),
            raw={"identifier": number, "amount": amount_minor, "metadata": metadata},
        )
        self._transactions[transaction_id] = result

        logger.info(
            "mock_gateway_charge",
            identifier=number,
            amount_minor=amount_minor,
            status=status,
            transaction_id=transaction_id,
        )
        return result

    async def initiate_payment(
        self, reference: str, amount_minor: int, metadata: Optional[Dict[str, Any]] = None
    ) -> GatewayResult:
        transaction_id = f"MOCK-{uuid.uuid4().hex[:12].upper()}"
        result = GatewayResult(
            success=True,
            status="PENDING",
            reference=transaction_id,
            merchant_reference=reference,
            redirect_url=f"/mock-checkout/{transaction_id}",
            amount=Decimal(amount_minor) / 100,
            occurred_at=utcnow(),
            raw={"metadata": metadata or {}},
        )
        self._transactions[transaction_id] = result
        return result

    async def query_status(self, transaction_id: str) -> GatewayResult:
        result = self._transactions.get(transaction_id)
        if result is None:
            return GatewayResult(
                success=False,
                status="UNKNOWN",
                reference=transaction_id,
                error_message="Transaction not found",
            )
        return result
