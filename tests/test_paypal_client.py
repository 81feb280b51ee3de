"""
Tests for the PayPal gateway client against a mocked HTTP transport.
"""
import json
from typing import Any, Callable, Dict, List

import httpx
import pytest
import pytest_asyncio

from lesson_payments.config import Settings
from lesson_payments.integrations.models import PurchaseUnit, format_amount
from lesson_payments.integrations.paypal_client import (
    CircuitBreaker,
    GatewayErrorType,
    GatewayRejected,
    GatewayTransient,
    PayPalClient,
)

TOKEN_BODY = {"access_token": "A21-test-token", "token_type": "Bearer", "expires_in": 32400}

ORDER_BODY = {
    "id": "5O190127TN364715T",
    "status": "PAYER_ACTION_REQUIRED",
    "links": [
        {"href": "https://api-m.sandbox.paypal.com/v2/checkout/orders/5O190127TN364715T", "rel": "self"},
        {"href": "https://www.sandbox.paypal.com/checkoutnow?token=5O190127TN364715T", "rel": "payer-action"},
    ],
}

CAPTURED_ORDER_BODY = {
    "id": "5O190127TN364715T",
    "status": "COMPLETED",
    "purchase_units": [
        {
            "reference_id": "1",
            "payments": {"captures": [{"id": "3C679366HH908993F", "status": "COMPLETED"}]},
        }
    ],
}


class Recorder:
    """Collects requests and answers them from a route table."""

    def __init__(self, routes: Dict[str, Callable[[httpx.Request], httpx.Response]]):
        self.routes = routes
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = f"{request.method} {request.url.path}"
        return self.routes[key](request)

    def calls(self, key: str) -> List[httpx.Request]:
        return [r for r in self.requests if f"{r.method} {r.url.path}" == key]


def token_route(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json=TOKEN_BODY)


def sequence(*responses: Any) -> Callable[[httpx.Request], httpx.Response]:
    """Answer with each response in turn; exceptions are raised."""
    remaining = list(responses)

    def route(request: httpx.Request) -> httpx.Response:
        item = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(item, Exception):
            raise item
        return item

    return route


@pytest_asyncio.fixture
async def make_client(test_settings: Settings):
    clients: List[PayPalClient] = []

    def build(routes: Dict[str, Callable[[httpx.Request], httpx.Response]]) -> tuple:
        routes.setdefault("POST /v1/oauth2/token", token_route)
        recorder = Recorder(routes)
        client = PayPalClient(settings=test_settings, transport=httpx.MockTransport(recorder))
        clients.append(client)
        return client, recorder

    yield build

    for client in clients:
        await client.close()


def unit(amount_cents: int = 499) -> PurchaseUnit:
    return PurchaseUnit(reference_id="1", amount_cents=amount_cents, currency="USD", description="Ordering Coffee")


class TestAmounts:
    """Minor-unit to decimal string conversion."""

    @pytest.mark.unit
    def test_format_amount(self) -> None:
        assert format_amount(499, "USD") == "4.99"
        assert format_amount(500, "usd") == "5.00"
        assert format_amount(1, "EUR") == "0.01"
        assert format_amount(1500, "JPY") == "1500"

    @pytest.mark.unit
    def test_purchase_unit_payload(self) -> None:
        assert unit().to_payload() == {
            "reference_id": "1",
            "amount": {"currency_code": "USD", "value": "4.99"},
            "description": "Ordering Coffee",
        }


class TestCreateOrder:
    """Order creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order_payload_and_headers(self, make_client) -> None:
        client, recorder = make_client(
            {"POST /v2/checkout/orders": lambda r: httpx.Response(200, json=ORDER_BODY)}
        )

        result = await client.create_order(
            [unit()], "https://shop.test/complete", "https://shop.test/cancel"
        )

        assert result.order_token == "5O190127TN364715T"
        assert result.status == "PAYER_ACTION_REQUIRED"
        assert result.status_code == 200
        assert result.approve_url.endswith("token=5O190127TN364715T")

        (request,) = recorder.calls("POST /v2/checkout/orders")
        assert request.headers["Authorization"] == "Bearer A21-test-token"
        assert request.headers["PayPal-Request-Id"]
        body = json.loads(request.content)
        assert body["intent"] == "CAPTURE"
        context = body["payment_source"]["paypal"]["experience_context"]
        assert context["return_url"] == "https://shop.test/complete"
        assert context["cancel_url"] == "https://shop.test/cancel"
        assert context["shipping_preference"] == "NO_SHIPPING"
        assert context["user_action"] == "PAY_NOW"
        assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "4.99"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_access_token_is_cached(self, make_client) -> None:
        client, recorder = make_client(
            {"POST /v2/checkout/orders": lambda r: httpx.Response(201, json=ORDER_BODY)}
        )

        await client.create_order([unit()], "https://shop.test/complete", "https://shop.test/cancel")
        await client.create_order([unit()], "https://shop.test/complete", "https://shop.test/cancel")

        assert len(recorder.calls("POST /v1/oauth2/token")) == 1
        assert len(recorder.calls("POST /v2/checkout/orders")) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_failure_retried_with_same_request_id(self, make_client) -> None:
        client, recorder = make_client(
            {
                "POST /v2/checkout/orders": sequence(
                    httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"}),
                    httpx.Response(201, json=ORDER_BODY),
                )
            }
        )

        result = await client.create_order([unit()], "https://shop.test/complete", "https://shop.test/cancel")

        assert result.order_token == "5O190127TN364715T"
        first, second = recorder.calls("POST /v2/checkout/orders")
        assert first.headers["PayPal-Request-Id"] == second.headers["PayPal-Request-Id"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_validation_rejection_is_not_retried(self, make_client) -> None:
        client, recorder = make_client(
            {
                "POST /v2/checkout/orders": lambda r: httpx.Response(
                    422,
                    json={
                        "name": "UNPROCESSABLE_ENTITY",
                        "message": "The requested action could not be performed.",
                        "details": [{"issue": "DECIMAL_PRECISION"}],
                    },
                )
            }
        )

        with pytest.raises(GatewayRejected) as exc_info:
            await client.create_order([unit()], "https://shop.test/complete", "https://shop.test/cancel")

        assert exc_info.value.issue == "DECIMAL_PRECISION"
        assert exc_info.value.status_code == 422
        assert exc_info.value.error_type == GatewayErrorType.PERMANENT
        assert len(recorder.calls("POST /v2/checkout/orders")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_is_transient_after_retries(self, make_client, test_settings: Settings) -> None:
        client, recorder = make_client(
            {"POST /v2/checkout/orders": sequence(httpx.ConnectTimeout("timed out"))}
        )

        with pytest.raises(GatewayTransient):
            await client.create_order([unit()], "https://shop.test/complete", "https://shop.test/cancel")

        assert len(recorder.calls("POST /v2/checkout/orders")) == test_settings.payment_retry_max_attempts

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, make_client) -> None:
        client, _ = make_client(
            {"POST /v2/checkout/orders": lambda r: httpx.Response(429, json={"name": "RATE_LIMIT_REACHED"})}
        )

        with pytest.raises(GatewayTransient) as exc_info:
            await client.create_order([unit()], "https://shop.test/complete", "https://shop.test/cancel")

        assert exc_info.value.error_type == GatewayErrorType.RATE_LIMIT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self, make_client) -> None:
        client, recorder = make_client(
            {
                "POST /v2/checkout/orders": sequence(
                    httpx.Response(401, json={"error": "invalid_token"}),
                    httpx.Response(201, json=ORDER_BODY),
                )
            }
        )

        await client.create_order([unit()], "https://shop.test/complete", "https://shop.test/cancel")

        assert len(recorder.calls("POST /v1/oauth2/token")) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_purchase_units_rejected_locally(self, make_client) -> None:
        client, recorder = make_client({})

        with pytest.raises(GatewayRejected):
            await client.create_order([], "https://shop.test/complete", "https://shop.test/cancel")

        assert recorder.requests == []


class TestCaptureAndRefund:
    """Capture and refund calls."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_order(self, make_client) -> None:
        client, recorder = make_client(
            {
                "POST /v2/checkout/orders/5O190127TN364715T/capture": lambda r: httpx.Response(
                    201, json=CAPTURED_ORDER_BODY
                )
            }
        )

        result = await client.capture_order("5O190127TN364715T")

        assert result.capture_id == "3C679366HH908993F"
        assert result.status == "COMPLETED"
        assert result.already_captured is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_already_captured_returns_existing_capture(self, make_client) -> None:
        client, recorder = make_client(
            {
                "POST /v2/checkout/orders/5O190127TN364715T/capture": lambda r: httpx.Response(
                    422,
                    json={
                        "name": "UNPROCESSABLE_ENTITY",
                        "details": [{"issue": "ORDER_ALREADY_CAPTURED"}],
                    },
                ),
                "GET /v2/checkout/orders/5O190127TN364715T": lambda r: httpx.Response(
                    200, json=CAPTURED_ORDER_BODY
                ),
            }
        )

        result = await client.capture_order("5O190127TN364715T")

        assert result.already_captured is True
        assert result.capture_id == "3C679366HH908993F"
        assert len(recorder.calls("POST /v2/checkout/orders/5O190127TN364715T/capture")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unapproved_order_capture_is_rejected(self, make_client) -> None:
        client, _ = make_client(
            {
                "POST /v2/checkout/orders/5O190127TN364715T/capture": lambda r: httpx.Response(
                    422,
                    json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_NOT_APPROVED"}]},
                )
            }
        )

        with pytest.raises(GatewayRejected) as exc_info:
            await client.capture_order("5O190127TN364715T")

        assert exc_info.value.issue == "ORDER_NOT_APPROVED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_capture(self, make_client) -> None:
        client, recorder = make_client(
            {
                "POST /v2/payments/captures/3C679366HH908993F/refund": lambda r: httpx.Response(
                    201, json={"id": "1JU08902781691411", "status": "COMPLETED"}
                )
            }
        )

        result = await client.refund_capture("3C679366HH908993F")

        assert result.refund_id == "1JU08902781691411"
        assert result.status == "COMPLETED"
        (request,) = recorder.calls("POST /v2/payments/captures/3C679366HH908993F/refund")
        assert request.headers["PayPal-Request-Id"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_of_refunded_capture_is_rejected(self, make_client) -> None:
        client, _ = make_client(
            {
                "POST /v2/payments/captures/3C679366HH908993F/refund": lambda r: httpx.Response(
                    422,
                    json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "CAPTURE_FULLY_REFUNDED"}]},
                )
            }
        )

        with pytest.raises(GatewayRejected) as exc_info:
            await client.refund_capture("3C679366HH908993F")

        assert exc_info.value.issue == "CAPTURE_FULLY_REFUNDED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_of_unknown_capture_is_rejected(self, make_client) -> None:
        client, _ = make_client(
            {
                "POST /v2/payments/captures/MISSING/refund": lambda r: httpx.Response(
                    404, json={"name": "RESOURCE_NOT_FOUND", "details": [{"issue": "INVALID_RESOURCE_ID"}]}
                )
            }
        )

        with pytest.raises(GatewayRejected):
            await client.refund_capture("MISSING")


class TestCircuitBreaker:
    """Circuit breaker state transitions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_transient_failures(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)

        async def fail() -> None:
            raise GatewayTransient("down")

        for _ in range(2):
            with pytest.raises(GatewayTransient):
                await breaker.call(fail)

        assert breaker.state == "open"
        with pytest.raises(GatewayTransient, match="Circuit breaker is open"):
            await breaker.call(fail)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejections_do_not_open_circuit(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1)

        async def reject() -> None:
            raise GatewayRejected("bad amount")

        with pytest.raises(GatewayRejected):
            await breaker.call(reject)

        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_closes_after_successes(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)

        async def fail() -> None:
            raise GatewayTransient("down")

        async def succeed() -> str:
            return "ok"

        with pytest.raises(GatewayTransient):
            await breaker.call(fail)
        assert breaker.state == "open"

        breaker.last_failure_time -= 1
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == "half_open"
        await breaker.call(succeed)
        assert breaker.state == "closed"
