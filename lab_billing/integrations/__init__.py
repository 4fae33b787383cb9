"""Payment gateway integrations."""
from .factory import get_gateway
from .gateway import GatewayError, GatewayErrorType, GatewayResult, PaymentGateway
from .mock_gateway import MockGateway
from .pesapal_client import PesapalGateway

__all__ = [
    "GatewayError",
    "GatewayErrorType",
    "GatewayResult",
    "MockGateway",
    "PaymentGateway",
    "PesapalGateway",
    "get_gateway",
]
