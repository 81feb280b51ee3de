"""
API routes for purchase reconciliation.
"""
import re
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from lesson_payments.config import Settings, get_settings
from lesson_payments.core.errors import LedgerNotFound, LedgerWriteEscalated
from lesson_payments.core.ledger import PurchaseFilters, PurchaseLedger
from lesson_payments.core.reconciliation import Buyer, PurchaseReconciliationService
from lesson_payments.integrations.paypal_client import GatewayTransient
from lesson_payments.monitoring.health import HealthCheck

from .dependencies import (
    get_health_check,
    get_ledger,
    get_reconciliation_service,
    require_admin,
    require_buyer,
)
from .schemas import (
    CaptureOrderResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    EscalationResponse,
    HealthCheckResponse,
    PaymentStatusUpdateRequest,
    PurchaseHistoryPage,
    PurchaseRecordEnvelope,
    PurchaseRecordResponse,
    ReconciliationResponse,
    RefundResponse,
    ReturnFlowResponse,
)

logger = structlog.get_logger(__name__)

ORDER_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,64}$")

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
return_router = APIRouter(tags=["checkout-return"])
purchase_router = APIRouter(prefix="/purchase-history", tags=["purchase-history"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def is_valid_order_token(token: Optional[str]) -> bool:
    return bool(token) and ORDER_TOKEN_PATTERN.match(token) is not None


def _checkout_urls(request: Request, settings: Settings) -> tuple[str, str]:
    base = str(request.base_url).rstrip("/")
    return (
        settings.checkout_return_url or f"{base}/complete",
        settings.checkout_cancel_url or f"{base}/cancel",
    )


def _processing(order_token: str, message: str) -> JSONResponse:
    body = ReturnFlowResponse(state="processing", order_token=order_token, message=message)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json", by_alias=True),
    )


@order_router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a purchase",
    description="Create a gateway order for a main lesson and record it as pending",
)
async def create_order(
    body: CreateOrderRequest,
    request: Request,
    buyer: Buyer = Depends(require_buyer),
    service: PurchaseReconciliationService = Depends(get_reconciliation_service),
    settings: Settings = Depends(get_settings),
) -> CreateOrderResponse:
    """Create a checkout order priced from the catalog."""
    return_url, cancel_url = _checkout_urls(request, settings)
    initiated = await service.initiate_purchase(
        buyer=buyer,
        product_id=body.main_lesson_id,
        return_url=return_url,
        cancel_url=cancel_url,
        payment_method=body.payment_method,
        platform_type=body.platform_type,
    )
    return CreateOrderResponse(
        order_token=initiated.order.order_token,
        approve_url=initiated.order.approve_url,
        gateway_status=initiated.order.status,
        gateway_status_code=initiated.order.status_code,
        purchase=PurchaseRecordResponse.model_validate(initiated.purchase),
    )


@order_router.post(
    "/{order_token}/capture",
    response_model=CaptureOrderResponse,
    summary="Capture an approved order",
    description="Capture payment and mark the purchase completed in one server-side step",
)
async def capture_order(
    order_token: str,
    buyer: Buyer = Depends(require_buyer),
    service: PurchaseReconciliationService = Depends(get_reconciliation_service),
) -> CaptureOrderResponse:
    record = await service.complete_purchase(order_token)
    return CaptureOrderResponse(
        order_token=record.order_token,
        capture_id=record.capture_id,
        payment_status=record.payment_status,
        purchase=PurchaseRecordResponse.model_validate(record),
    )


@return_router.get(
    "/complete",
    response_model=ReturnFlowResponse,
    summary="Checkout success return",
)
async def complete_return(
    token: Optional[str] = Query(default=None),
    service: PurchaseReconciliationService = Depends(get_reconciliation_service),
) -> Any:
    """
    Buyer landed here after approving the order.

    A missing or malformed token is a no-op. The page only reports
    completed once the ledger write succeeded.
    """
    if not is_valid_order_token(token):
        logger.info("complete_return_without_order")
        return ReturnFlowResponse(state="no_order")

    try:
        record = await service.complete_purchase(token)
    except GatewayTransient as e:
        logger.warning("complete_return_processing", order_token=token, error=str(e))
        return _processing(token, "Payment is still being confirmed")
    except LedgerWriteEscalated:
        return _processing(token, "Payment received, confirmation is in progress")

    return ReturnFlowResponse(
        state="completed",
        order_token=token,
        purchase=PurchaseRecordResponse.model_validate(record),
    )


@return_router.get(
    "/cancel",
    response_model=ReturnFlowResponse,
    summary="Checkout cancel return",
)
async def cancel_return(
    token: Optional[str] = Query(default=None),
    service: PurchaseReconciliationService = Depends(get_reconciliation_service),
) -> ReturnFlowResponse:
    """Buyer abandoned checkout; drop the pending record if there is one."""
    if not is_valid_order_token(token):
        logger.info("cancel_return_without_order")
        return ReturnFlowResponse(state="no_order")

    await service.cancel_purchase(token)
    return ReturnFlowResponse(state="cancelled", order_token=token)


@purchase_router.get(
    "",
    response_model=PurchaseHistoryPage,
    summary="List purchase history",
)
async def list_purchase_history(
    payment_status: Optional[str] = Query(default=None),
    purchase_date: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=255),
    limit: int = Query(default=15, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    admin: Buyer = Depends(require_admin),
    ledger: PurchaseLedger = Depends(get_ledger),
) -> PurchaseHistoryPage:
    filters = PurchaseFilters(
        payment_status=payment_status,
        purchase_date=purchase_date,
        search=search,
    )
    records, total = await ledger.list(filters, limit=limit, offset=offset)
    return PurchaseHistoryPage(
        data=[PurchaseRecordResponse.model_validate(record) for record in records],
        total=total,
        limit=limit,
        offset=offset,
    )


@purchase_router.get(
    "/{purchase_id}",
    response_model=PurchaseRecordEnvelope,
    summary="Get a purchase record",
)
async def get_purchase(
    purchase_id: int,
    admin: Buyer = Depends(require_admin),
    ledger: PurchaseLedger = Depends(get_ledger),
) -> PurchaseRecordEnvelope:
    record = await ledger.find_by_id(purchase_id)
    if record is None:
        raise LedgerNotFound(f"Purchase {purchase_id} does not exist")
    return PurchaseRecordEnvelope(data=PurchaseRecordResponse.model_validate(record))


@purchase_router.patch(
    "/{purchase_id}/payment-status",
    response_model=PurchaseRecordEnvelope,
    summary="Apply a reconciliation status change",
    description="completed captures the order; refunded refunds the capture",
)
async def update_payment_status(
    purchase_id: int,
    body: PaymentStatusUpdateRequest,
    admin: Buyer = Depends(require_admin),
    service: PurchaseReconciliationService = Depends(get_reconciliation_service),
) -> PurchaseRecordEnvelope:
    logger.info(
        "api_update_payment_status",
        purchase_id=purchase_id,
        payment_status=body.payment_status,
        admin_id=admin.user_id,
    )
    record = await service.update_payment_status(purchase_id, body.payment_status)
    return PurchaseRecordEnvelope(data=PurchaseRecordResponse.model_validate(record))


@purchase_router.delete(
    "/{order_token}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Cancel a pending purchase",
)
async def delete_pending_purchase(
    order_token: str,
    buyer: Buyer = Depends(require_buyer),
    service: PurchaseReconciliationService = Depends(get_reconciliation_service),
) -> Response:
    """Delete a pending record; already-gone records also return 204."""
    await service.cancel_purchase(order_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@payment_router.post(
    "/captures/{capture_id}/refund",
    response_model=RefundResponse,
    summary="Refund a captured payment",
)
async def refund_capture(
    capture_id: str,
    admin: Buyer = Depends(require_admin),
    service: PurchaseReconciliationService = Depends(get_reconciliation_service),
) -> RefundResponse:
    logger.info("api_refund_request", capture_id=capture_id, admin_id=admin.user_id)
    record = await service.refund_by_capture_id(capture_id)
    return RefundResponse(
        capture_id=capture_id,
        payment_status=record.payment_status,
        purchase=PurchaseRecordResponse.model_validate(record),
    )


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Replay escalated ledger writes",
)
async def reconcile(
    limit: int = Query(default=100, ge=1, le=1000),
    admin: Buyer = Depends(require_admin),
    service: PurchaseReconciliationService = Depends(get_reconciliation_service),
) -> ReconciliationResponse:
    report = await service.replay_escalations(limit=limit)
    return ReconciliationResponse(
        resolved=len(report.resolved),
        unresolved=[
            EscalationResponse.model_validate(escalation, from_attributes=True)
            for escalation in report.unresolved
        ],
    )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Any:
    result = await health_check.check_all()
    if result["status"] != "healthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get("/health/live", response_model=HealthCheckResponse, summary="Liveness probe")
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get("/health/ready", response_model=HealthCheckResponse, summary="Readiness probe")
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Any:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
