"""
PayPal Orders v2 client with retry logic and error classification.

Implements:
- OAuth2 client-credentials token caching
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent mutating calls via PayPal-Request-Id
- Distinct transient / rejected error kinds
"""
import asyncio
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from lesson_payments.config import Settings, get_settings
from lesson_payments.integrations.models import (
    CaptureResult,
    OrderResult,
    PurchaseUnit,
    RefundResult,
)
from lesson_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ALREADY_CAPTURED_ISSUE = "ORDER_ALREADY_CAPTURED"


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """Base exception for payment gateway errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        issue: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status returned by the gateway, if any
            issue: Gateway issue code (e.g. ORDER_ALREADY_CAPTURED)
            original_error: Underlying transport exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.issue = issue
        self.original_error = original_error


class GatewayTransient(GatewayError):
    """Network, timeout, rate-limit or 5xx failure. Safe to retry."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType = GatewayErrorType.TRANSIENT,
        **kwargs: Any,
    ):
        super().__init__(message, error_type, **kwargs)


class GatewayRejected(GatewayError):
    """Validation or business-rule rejection. Never retried automatically."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, GatewayErrorType.PERMANENT, **kwargs)


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Only transient failures count against the circuit; a rejection means
    the gateway answered.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(
        self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        """
        Await func with circuit breaker protection.

        Raises:
            GatewayTransient: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayTransient("Circuit breaker is open")

        try:
            result = await func(*args, **kwargs)
        except GatewayRejected:
            self.on_success()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class PayPalClient:
    """
    Thin adapter over the PayPal Orders v2 and Payments v2 REST APIs.

    Holds no purchase state. Three operations matter to reconciliation:
    create_order, capture_order and refund_capture.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize PayPal client.

        Args:
            settings: Optional settings (defaults to the cached environment settings)
            transport: Optional httpx transport, used by tests
        """
        self.settings = settings or get_settings()
        self.circuit_breaker = CircuitBreaker()
        self._http = httpx.AsyncClient(
            base_url=self.settings.gateway_base_url,
            timeout=httpx.Timeout(self.settings.paypal_timeout_seconds),
            transport=transport,
        )
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

        logger.info(
            "paypal_client_initialized",
            base_url=self.settings.gateway_base_url,
            test_mode=self.settings.is_test_mode,
        )

    @staticmethod
    def _error_from_response(response: httpx.Response) -> GatewayError:
        """
        Classify a non-2xx gateway response.

        Args:
            response: Gateway HTTP response

        Returns:
            GatewayError: GatewayTransient for 429/5xx, GatewayRejected otherwise
        """
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        details = body.get("details") or []
        issue = None
        if details and isinstance(details[0], dict):
            issue = details[0].get("issue")
        issue = issue or body.get("name") or body.get("error")
        message = (
            body.get("message")
            or body.get("error_description")
            or f"PayPal returned HTTP {response.status_code}"
        )

        if response.status_code == 429:
            return GatewayTransient(
                message,
                error_type=GatewayErrorType.RATE_LIMIT,
                status_code=response.status_code,
                issue=issue,
            )
        if response.status_code >= 500:
            return GatewayTransient(message, status_code=response.status_code, issue=issue)
        return GatewayRejected(message, status_code=response.status_code, issue=issue)

    def _log_error(self, operation: str, error: GatewayError) -> None:
        metrics.record_gateway_error(error.error_type.value)
        logger.error(
            "gateway_api_error",
            operation=operation,
            error_type=error.error_type.value,
            status_code=error.status_code,
            issue=error.issue,
            error_message=str(error),
        )

    async def _get_access_token(self) -> str:
        """Return a cached OAuth2 access token, fetching a new one when expired."""
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            try:
                response = await self._http.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
                    headers={"Accept": "application/json"},
                )
            except httpx.TransportError as e:
                error = GatewayTransient(f"PayPal OAuth request failed: {e}", original_error=e)
                self._log_error("oauth_token", error)
                raise error

            if response.status_code >= 400:
                error = self._error_from_response(response)
                self._log_error("oauth_token", error)
                raise error

            body = response.json()
            self._access_token = body["access_token"]
            expires_in = int(body.get("expires_in", 0))
            self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
            logger.info("paypal_access_token_refreshed", expires_in=expires_in)
            return self._access_token

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Issue one authenticated gateway request.

        Returns:
            Tuple[int, Dict[str, Any]]: HTTP status code and decoded body

        Raises:
            GatewayTransient: Network failure, timeout, 401, 429 or 5xx
            GatewayRejected: Any other 4xx
        """
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        start_time = time.time()
        try:
            response = await self._http.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            error: GatewayError = GatewayTransient(
                f"PayPal {operation} timed out", original_error=e
            )
            metrics.record_gateway_call(operation, "timeout", time.time() - start_time)
            self._log_error(operation, error)
            raise error
        except httpx.TransportError as e:
            error = GatewayTransient(f"PayPal {operation} failed: {e}", original_error=e)
            metrics.record_gateway_call(operation, "network_error", time.time() - start_time)
            self._log_error(operation, error)
            raise error

        duration = time.time() - start_time
        if response.status_code == 401:
            # Expired or revoked token; the retry fetches a fresh one
            self._access_token = None
            error = GatewayTransient(
                "PayPal rejected the access token", status_code=401
            )
        elif response.status_code >= 400:
            error = self._error_from_response(response)
        else:
            metrics.record_gateway_call(operation, "success", duration)
            body = response.json() if response.content else {}
            return response.status_code, body

        metrics.record_gateway_call(operation, error.error_type.value, duration)
        self._log_error(operation, error)
        raise error

    async def _call(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """Run _request under the circuit breaker, retrying transient failures."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(GatewayTransient),
            stop=stop_after_attempt(max(self.settings.payment_retry_max_attempts, 1)),
            wait=wait_exponential(multiplier=self.settings.payment_retry_base_delay, max=16),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.circuit_breaker.call(
                    self._request, operation, method, path, json=json, request_id=request_id
                )
        raise GatewayTransient(f"PayPal {operation} was not attempted")

    async def create_order(
        self,
        purchase_units: List[PurchaseUnit],
        return_url: str,
        cancel_url: str,
    ) -> OrderResult:
        """
        Create a checkout order the buyer approves off-site.

        Args:
            purchase_units: Items and amounts being bought
            return_url: Where the buyer lands after approving
            cancel_url: Where the buyer lands after cancelling

        Returns:
            OrderResult: Gateway order token, status and approval link

        Raises:
            GatewayTransient: If the gateway is unreachable after retries
            GatewayRejected: If the gateway refuses the order
        """
        if not purchase_units:
            raise GatewayRejected("At least one purchase unit is required")

        logger.info(
            "creating_order",
            units=len(purchase_units),
            amount_cents=sum(unit.amount_cents for unit in purchase_units),
        )

        payload = {
            "intent": "CAPTURE",
            "payment_source": {
                "paypal": {
                    "experience_context": {
                        "payment_method_preference": "IMMEDIATE_PAYMENT_REQUIRED",
                        "landing_page": "LOGIN",
                        "shipping_preference": "NO_SHIPPING",
                        "user_action": "PAY_NOW",
                        "return_url": return_url,
                        "cancel_url": cancel_url,
                    }
                }
            },
            "purchase_units": [unit.to_payload() for unit in purchase_units],
        }
        status_code, body = await self._call(
            "create_order",
            "POST",
            "/v2/checkout/orders",
            json=payload,
            request_id=str(uuid.uuid4()),
        )

        order_token = body.get("id")
        if not order_token:
            raise GatewayRejected("PayPal order response has no order id", status_code=status_code)

        approve_url = next(
            (
                link.get("href")
                for link in body.get("links", [])
                if link.get("rel") in ("payer-action", "approve")
            ),
            None,
        )

        logger.info("order_created", order_token=order_token, status=body.get("status"))

        return OrderResult(
            order_token=order_token,
            status=body.get("status", "CREATED"),
            status_code=status_code,
            approve_url=approve_url,
            raw=body,
        )

    async def get_order(self, order_token: str) -> Dict[str, Any]:
        """Retrieve an order by token."""
        logger.info("retrieving_order", order_token=order_token)
        _, body = await self._call(
            "get_order", "GET", f"/v2/checkout/orders/{quote(order_token, safe='')}"
        )
        return body

    @staticmethod
    def _capture_result(
        order_token: str, body: Dict[str, Any], already_captured: bool = False
    ) -> CaptureResult:
        captures = [
            capture
            for unit in body.get("purchase_units", [])
            for capture in unit.get("payments", {}).get("captures", [])
        ]
        if not captures:
            raise GatewayRejected(
                f"PayPal order {order_token} has no capture", issue="CAPTURE_NOT_FOUND"
            )
        capture = captures[0]
        return CaptureResult(
            order_token=order_token,
            capture_id=capture["id"],
            status=capture.get("status", body.get("status", "UNKNOWN")),
            order_status=body.get("status"),
            already_captured=already_captured,
            raw=body,
        )

    async def capture_order(self, order_token: str) -> CaptureResult:
        """
        Capture payment for an approved order.

        A repeat capture of an already-captured order returns the existing
        capture with already_captured=True instead of failing.

        Args:
            order_token: Gateway order token

        Returns:
            CaptureResult: Capture id and status

        Raises:
            GatewayTransient: If the gateway is unreachable after retries
            GatewayRejected: If the order cannot be captured
        """
        logger.info("capturing_order", order_token=order_token)

        try:
            _, body = await self._call(
                "capture_order",
                "POST",
                f"/v2/checkout/orders/{quote(order_token, safe='')}/capture",
                json={},
                request_id=str(uuid.uuid4()),
            )
        except GatewayRejected as e:
            if e.issue != ALREADY_CAPTURED_ISSUE:
                raise
            logger.info("order_already_captured", order_token=order_token)
            body = await self.get_order(order_token)
            return self._capture_result(order_token, body, already_captured=True)

        result = self._capture_result(order_token, body)
        logger.info(
            "order_captured",
            order_token=order_token,
            capture_id=result.capture_id,
            status=result.status,
        )
        return result

    async def refund_capture(self, capture_id: str) -> RefundResult:
        """
        Refund a captured payment in full.

        Args:
            capture_id: Gateway capture id recorded at completion

        Returns:
            RefundResult: Refund id and status

        Raises:
            GatewayTransient: If the gateway is unreachable after retries
            GatewayRejected: If the capture is unknown or already refunded
        """
        logger.info("creating_refund", capture_id=capture_id)

        status_code, body = await self._call(
            "refund_capture",
            "POST",
            f"/v2/payments/captures/{quote(capture_id, safe='')}/refund",
            json={},
            request_id=str(uuid.uuid4()),
        )
        refund_id = body.get("id")
        if not refund_id:
            raise GatewayRejected("PayPal refund response has no refund id", status_code=status_code)

        logger.info("refund_created", capture_id=capture_id, refund_id=refund_id)

        return RefundResult(
            refund_id=refund_id,
            capture_id=capture_id,
            status=body.get("status", "UNKNOWN"),
            raw=body,
        )

    async def verify_credentials(self) -> bool:
        """Fetch an access token to prove the gateway is reachable."""
        await self._get_access_token()
        return True

    async def close(self) -> None:
        """Close the HTTP connection pool."""
        await self._http.aclose()
