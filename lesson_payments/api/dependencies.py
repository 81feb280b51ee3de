"""
FastAPI dependencies: service wiring and caller authentication.

Services are built from process-wide collaborators (one HTTP pool, one
Redis pool, one session factory); tests replace any of them through
app.dependency_overrides.
"""
from functools import lru_cache
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, Header, HTTPException, status
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lesson_payments.config import Settings, get_settings
from lesson_payments.core.catalog import ProductCatalog
from lesson_payments.core.escalation import EscalationQueue
from lesson_payments.core.ledger import PurchaseLedger
from lesson_payments.core.reconciliation import Buyer, PurchaseReconciliationService
from lesson_payments.database.connection import get_session_factory
from lesson_payments.integrations.paypal_client import PayPalClient
from lesson_payments.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@lru_cache()
def get_gateway() -> PayPalClient:
    """Process-wide PayPal client."""
    return PayPalClient(get_settings())


@lru_cache()
def get_escalation_queue() -> EscalationQueue:
    """Process-wide escalation queue."""
    return EscalationQueue(settings=get_settings())


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


def get_ledger(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> PurchaseLedger:
    return PurchaseLedger(session_factory)


def get_catalog(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> ProductCatalog:
    return ProductCatalog(session_factory)


def get_reconciliation_service(
    gateway: PayPalClient = Depends(get_gateway),
    ledger: PurchaseLedger = Depends(get_ledger),
    catalog: ProductCatalog = Depends(get_catalog),
    escalations: EscalationQueue = Depends(get_escalation_queue),
    settings: Settings = Depends(get_settings),
) -> PurchaseReconciliationService:
    """Reconciliation service for one request."""
    return PurchaseReconciliationService(
        gateway=gateway,
        ledger=ledger,
        catalog=catalog,
        escalations=escalations,
        settings=settings,
    )


def get_health_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    escalations: EscalationQueue = Depends(get_escalation_queue),
    gateway: PayPalClient = Depends(get_gateway),
) -> HealthCheck:
    return HealthCheck(session_factory, escalations, gateway)


def _decode_token(authorization: Optional[str], settings: Settings) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def require_buyer(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> Buyer:
    """
    Verify the bearer token and return the caller.

    Raises:
        HTTPException: 401 if the token is missing, expired, invalid or lacks identity claims
    """
    claims = _decode_token(authorization, settings)
    user_id = claims.get("id", claims.get("sub"))
    email = claims.get("email")
    try:
        return Buyer(user_id=int(user_id), email=email, role=claims.get("role", "student"))
    except (TypeError, ValueError):
        logger.warning("token_missing_identity_claims", claims=sorted(claims))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Token lacks identity claims"
        )


def require_admin(buyer: Buyer = Depends(require_buyer)) -> Buyer:
    """Require an authenticated admin."""
    if not buyer.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin only")
    return buyer
