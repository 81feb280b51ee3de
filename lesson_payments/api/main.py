"""
Main FastAPI application.

Purchase reconciliation API with:
- CORS configuration
- Domain error to HTTP translation
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lesson_payments import __version__
from lesson_payments.config import get_settings
from lesson_payments.core.errors import (
    LedgerConflict,
    LedgerNotFound,
    LedgerWriteEscalated,
    PurchaseError,
    PurchaseValidationError,
)
from lesson_payments.database.connection import close_db, init_db
from lesson_payments.integrations.paypal_client import (
    GatewayError,
    GatewayRejected,
    GatewayTransient,
)
from lesson_payments.monitoring.logging import setup_logging

from .dependencies import get_escalation_queue, get_gateway
from .routes import (
    admin_router,
    monitoring_router,
    order_router,
    payment_router,
    purchase_router,
    return_router,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    await get_gateway().close()
    await get_escalation_queue().close()
    await close_db()
    logger.info("connections_closed")


app = FastAPI(
    title="Lesson Payments",
    description=(
        "Purchase and payment reconciliation for the lesson catalog. "
        "Creates PayPal orders, captures and refunds them, and keeps the "
        "purchase history ledger consistent with the processor."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


@app.exception_handler(PurchaseValidationError)
async def purchase_validation_handler(request: Request, exc: PurchaseValidationError) -> JSONResponse:
    logger.warning("purchase_validation_error", error=str(exc))
    return _error(status.HTTP_400_BAD_REQUEST, "invalid_purchase", str(exc))


@app.exception_handler(LedgerNotFound)
async def ledger_not_found_handler(request: Request, exc: LedgerNotFound) -> JSONResponse:
    logger.info("ledger_not_found", error=str(exc))
    return _error(status.HTTP_404_NOT_FOUND, "not_found", str(exc))


@app.exception_handler(LedgerConflict)
async def ledger_conflict_handler(request: Request, exc: LedgerConflict) -> JSONResponse:
    logger.warning(
        "ledger_conflict",
        error=str(exc),
        current_status=exc.current_status,
        expected_status=exc.expected_status,
    )
    return _error(status.HTTP_409_CONFLICT, "conflict", str(exc))


@app.exception_handler(LedgerWriteEscalated)
async def ledger_escalated_handler(request: Request, exc: LedgerWriteEscalated) -> JSONResponse:
    # The buyer was charged; report processing, never failure
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "error": "processing",
            "message": "Payment received, confirmation is in progress",
            "orderToken": exc.order_token,
        },
    )


@app.exception_handler(PurchaseError)
async def purchase_error_handler(request: Request, exc: PurchaseError) -> JSONResponse:
    logger.error("purchase_error", error=str(exc), error_type=type(exc).__name__)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "purchase_error", str(exc))


@app.exception_handler(GatewayTransient)
async def gateway_transient_handler(request: Request, exc: GatewayTransient) -> JSONResponse:
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "gateway_unavailable",
        "Payment processor is temporarily unavailable. Please try again.",
    )


@app.exception_handler(GatewayRejected)
async def gateway_rejected_handler(request: Request, exc: GatewayRejected) -> JSONResponse:
    return _error(status.HTTP_502_BAD_GATEWAY, exc.issue or "gateway_rejected", str(exc))


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return _error(status.HTTP_502_BAD_GATEWAY, "gateway_error", str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        "An unexpected error occurred. Please try again later.",
    )


app.include_router(order_router)
app.include_router(return_router)
app.include_router(purchase_router)
app.include_router(payment_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "lesson_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
