"""Gateway selection by name or settings."""
from typing import Optional

import structlog

from lab_billing.config import get_settings
from lab_billing.integrations.gateway import GatewayError, GatewayErrorType, PaymentGateway
from lab_billing.integrations.mock_gateway import MockGateway
from lab_billing.integrations.pesapal_client import PesapalGateway

logger = structlog.get_logger(__name__)

GATEWAYS = {
    "mock": MockGateway,
    "pesapal": PesapalGateway,
}


def get_gateway(name: Optional[str] = None) -> PaymentGateway:
    """
    Build the gateway named ``name`` (defaults to ``settings.payment_gateway``).

    Raises:
        GatewayError: If the name is not a known gateway
    """
    gateway_name = (name or get_settings().payment_gateway).lower()
    gateway_cls = GATEWAYS.get(gateway_name)
    if gateway_cls is None:
        raise GatewayError(
            f"Unknown payment gateway: {gateway_name}", GatewayErrorType.NOT_CONFIGURED
        )
    logger.info("payment_gateway_selected", gateway=gateway_name)
    return gateway_cls()
