"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CaptureOrderResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    PurchaseHistoryPage,
    PurchaseRecordResponse,
    ReturnFlowResponse,
)

__all__ = [
    "app",
    "CaptureOrderResponse",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "PurchaseHistoryPage",
    "PurchaseRecordResponse",
    "ReturnFlowResponse",
]
