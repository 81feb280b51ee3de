"""
Pytest configuration and fixtures.
"""
import itertools
import os
from typing import Any, AsyncGenerator, Callable, Dict
from unittest.mock import AsyncMock

# Settings are read at import time by the API module
os.environ.setdefault("PAYPAL_CLIENT_ID", "test-client-id")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from lesson_payments.api.dependencies import (
    get_db_session_factory,
    get_escalation_queue,
    get_gateway,
)
from lesson_payments.api.main import app
from lesson_payments.config import Settings, get_settings
from lesson_payments.core.catalog import ProductCatalog
from lesson_payments.core.escalation import EscalationQueue
from lesson_payments.core.ledger import PurchaseLedger
from lesson_payments.core.reconciliation import Buyer, PurchaseReconciliationService
from lesson_payments.database.connection import build_session_factory
from lesson_payments.database.models import Base, MainLesson, PurchaseRecord
from lesson_payments.integrations.models import CaptureResult, OrderResult, RefundResult
from lesson_payments.integrations.paypal_client import PayPalClient

PRICED_LESSON_ID = 1
FREE_LESSON_ID = 2
DRAFT_LESSON_ID = 3
UNPRICED_LESSON_ID = 4


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond SQLite")
    config.addinivalue_line("markers", "integration: tests through the HTTP API")
    config.addinivalue_line("markers", "race: concurrent access tests")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with immediate retries."""
    return Settings(
        paypal_client_id="test-client-id",
        paypal_client_secret="test-client-secret",
        paypal_environment="sandbox",
        paypal_base_url="https://paypal.test",
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/15",
        jwt_secret="test-jwt-secret",
        app_name="lesson-payments-test",
        app_env="test",
        log_level="DEBUG",
        payment_retry_max_attempts=3,
        payment_retry_base_delay=0,
        ledger_retry_max_attempts=3,
        ledger_retry_base_delay=0,
        ledger_retry_max_delay=0,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """SQLite database file with all tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the lesson catalog seeded."""
    factory = build_session_factory(engine)
    async with factory() as session:
        session.add_all(
            [
                MainLesson(id=PRICED_LESSON_ID, title="Ordering Coffee", free=False, price=499, status="published"),
                MainLesson(id=FREE_LESSON_ID, title="Greetings", free=True, price=None, status="published"),
                MainLesson(id=DRAFT_LESSON_ID, title="Business Email", free=False, price=999, status="draft"),
                MainLesson(id=UNPRICED_LESSON_ID, title="Travel", free=False, price=None, status="published"),
            ]
        )
        await session.commit()
    return factory


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> PurchaseLedger:
    return PurchaseLedger(session_factory)


@pytest.fixture
def catalog(session_factory: async_sessionmaker[AsyncSession]) -> ProductCatalog:
    return ProductCatalog(session_factory)


@pytest.fixture
def gateway(test_settings: Settings) -> AsyncMock:
    """Mock PayPal client that approves every call."""
    tokens = itertools.count(1)
    gateway = AsyncMock(spec=PayPalClient)
    gateway.settings = test_settings

    async def create_order(purchase_units: Any, return_url: str, cancel_url: str) -> OrderResult:
        token = f"ORDER-{next(tokens)}"
        return OrderResult(
            order_token=token,
            status="PAYER_ACTION_REQUIRED",
            status_code=200,
            approve_url=f"https://paypal.test/checkoutnow?token={token}",
        )

    async def capture_order(order_token: str) -> CaptureResult:
        return CaptureResult(
            order_token=order_token,
            capture_id=f"CAP-{order_token}",
            status="COMPLETED",
            order_status="COMPLETED",
        )

    async def refund_capture(capture_id: str) -> RefundResult:
        return RefundResult(refund_id=f"REF-{capture_id}", capture_id=capture_id, status="COMPLETED")

    gateway.create_order.side_effect = create_order
    gateway.capture_order.side_effect = capture_order
    gateway.refund_capture.side_effect = refund_capture
    gateway.verify_credentials.return_value = True
    return gateway


@pytest.fixture
def escalations() -> AsyncMock:
    """Mock escalation queue."""
    queue = AsyncMock(spec=EscalationQueue)
    queue.push.return_value = True
    queue.drain.return_value = []
    queue.ping.return_value = True
    queue.length.return_value = 0
    return queue


@pytest.fixture
def service(
    gateway: AsyncMock,
    ledger: PurchaseLedger,
    catalog: ProductCatalog,
    escalations: AsyncMock,
    test_settings: Settings,
) -> PurchaseReconciliationService:
    return PurchaseReconciliationService(
        gateway=gateway,
        ledger=ledger,
        catalog=catalog,
        escalations=escalations,
        settings=test_settings,
    )


@pytest.fixture
def buyer() -> Buyer:
    return Buyer(user_id=7, email="Learner@Example.com", role="student")


@pytest.fixture
def pending_record(ledger: PurchaseLedger) -> Callable[..., Any]:
    """Factory inserting a pending record directly into the ledger."""

    async def create(order_token: str = "ORDER-SEED", **overrides: Any) -> PurchaseRecord:
        values: Dict[str, Any] = {
            "order_token": order_token,
            "user_id": 7,
            "user_email": "learner@example.com",
            "main_lesson_id": PRICED_LESSON_ID,
            "purchase_amount": 499,
            "currency": "USD",
            "payment_method": "paypal",
            "platform_type": "web",
            "payment_status": "pending",
        }
        values.update(overrides)
        return await ledger.create(PurchaseRecord(**values))

    return create


@pytest.fixture
def auth_header(test_settings: Settings) -> Callable[..., Dict[str, str]]:
    """Build an Authorization header for a user with the given role."""

    def build(role: str = "student", user_id: int = 7, email: str = "learner@example.com") -> Dict[str, str]:
        token = jwt.encode(
            {"id": user_id, "email": email, "role": role},
            test_settings.jwt_secret,
            algorithm=test_settings.jwt_algorithm,
        )
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest_asyncio.fixture
async def client(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: AsyncMock,
    escalations: AsyncMock,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client wired to the SQLite ledger and mock collaborators."""
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_db_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_escalation_queue] = lambda: escalations

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
