"""External integrations for purchase reconciliation."""
from .models import CaptureResult, OrderResult, PurchaseUnit, RefundResult
from .paypal_client import (
    GatewayError,
    GatewayErrorType,
    GatewayRejected,
    GatewayTransient,
    PayPalClient,
)

__all__ = [
    "CaptureResult",
    "GatewayError",
    "GatewayErrorType",
    "GatewayRejected",
    "GatewayTransient",
    "OrderResult",
    "PayPalClient",
    "PurchaseUnit",
    "RefundResult",
]
