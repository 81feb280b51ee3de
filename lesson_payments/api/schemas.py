"""
Pydantic schemas for API request/response models.

JSON bodies use camelCase; Python attributes stay snake_case.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base schema with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class CreateOrderRequest(CamelModel):
    """Request schema for starting a purchase."""

    main_lesson_id: int = Field(..., gt=0, description="Main lesson being bought")
    payment_method: Optional[str] = Field(default=None, max_length=50)
    platform_type: Optional[str] = Field(default=None, max_length=50)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [{"mainLessonId": 12, "paymentMethod": "paypal", "platformType": "web"}]
        },
    )


class PurchaseRecordResponse(CamelModel):
    """Purchase history ledger entry."""

    id: int
    order_token: str
    user_id: int
    user_email: str
    main_lesson_id: int
    purchase_amount: int = Field(..., description="Amount in minor currency units")
    currency: str
    payment_method: Optional[str] = None
    platform_type: Optional[str] = None
    payment_status: str
    capture_id: Optional[str] = None
    purchase_date: datetime
    created_at: datetime
    updated_at: datetime


class CreateOrderResponse(CamelModel):
    """Response schema for order creation."""

    order_token: str
    approve_url: Optional[str] = None
    gateway_status: str
    gateway_status_code: int
    purchase: PurchaseRecordResponse


class CaptureOrderResponse(CamelModel):
    """Response schema for a server-side capture."""

    order_token: str
    capture_id: Optional[str] = None
    payment_status: str
    purchase: PurchaseRecordResponse


class ReturnFlowResponse(CamelModel):
    """Outcome shown on the checkout return pages."""

    state: str = Field(..., description="completed, cancelled, processing or no_order")
    order_token: Optional[str] = None
    message: Optional[str] = None
    purchase: Optional[PurchaseRecordResponse] = None


class PaymentStatusUpdateRequest(CamelModel):
    """Request schema for a reconciliation status change."""

    payment_status: str = Field(..., description="completed or refunded")

    @field_validator("payment_status")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        return v.strip().lower()


class PurchaseRecordEnvelope(CamelModel):
    """Single record wrapped under data."""

    data: PurchaseRecordResponse


class PurchaseHistoryPage(CamelModel):
    """One page of purchase history with the filtered total."""

    data: List[PurchaseRecordResponse]
    total: int
    limit: int
    offset: int


class RefundResponse(CamelModel):
    """Response schema for a refund."""

    capture_id: str
    payment_status: str
    purchase: PurchaseRecordResponse


class EscalationResponse(CamelModel):
    kind: str
    order_token: str
    purchase_id: Optional[int] = None
    target_status: str
    reason: str
    attempts: int
    occurred_at: datetime


class ReconciliationResponse(CamelModel):
    """Result of replaying escalations."""

    resolved: int
    unresolved: List[EscalationResponse]


class ErrorResponse(BaseModel):
    """Error body shared by every failure response."""

    error: str
    message: str


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str
    checks: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
