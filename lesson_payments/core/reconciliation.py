"""
Purchase reconciliation service.

Owns the purchase state machine:

    NoOrder -> pending -> completed -> refunded
                  \\
                   -> deleted (buyer cancelled before capture)

The gateway is always called before the ledger moves, and the ledger
only moves through compare-and-swap writes. The one hazardous window is
a ledger write that fails after the gateway captured or refunded; that
write is retried with backoff and, when retries run out, escalated for
manual reconciliation instead of being reported as a failed purchase.
"""
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, NoReturn, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from lesson_payments.config import Settings, get_settings
from lesson_payments.core.catalog import Product, ProductCatalog
from lesson_payments.core.errors import (
    LedgerConflict,
    LedgerNotFound,
    LedgerWriteEscalated,
    PurchaseValidationError,
)
from lesson_payments.core.escalation import Escalation, EscalationQueue
from lesson_payments.core.ledger import PurchaseLedger
from lesson_payments.database.models import PaymentStatus, PurchaseRecord, utcnow
from lesson_payments.integrations.models import OrderResult, PurchaseUnit
from lesson_payments.integrations.paypal_client import (
    GatewayRejected,
    GatewayTransient,
    PayPalClient,
)
from lesson_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Refund statuses that mean no money moved back to the buyer
FAILED_REFUND_STATUSES = frozenset({"failed", "cancelled"})


class Buyer(BaseModel):
    """Authenticated caller identity."""

    user_id: int
    email: str
    role: str = "student"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class InitiatedPurchase:
    """Gateway order plus the pending ledger record created for it."""

    order: OrderResult
    purchase: PurchaseRecord


@dataclass
class ReplayReport:
    """Outcome of replaying queued escalations."""

    resolved: List[Escalation] = field(default_factory=list)
    unresolved: List[Escalation] = field(default_factory=list)


def normalize_status(status: Optional[str]) -> str:
    """Lower-case a gateway status for storage and comparison."""
    return (status or "").strip().lower()


class PurchaseReconciliationService:
    """
    Keeps the purchase ledger consistent with the payment gateway.

    Stateless apart from its collaborators; construct one per process or
    per request.
    """

    def __init__(
        self,
        gateway: PayPalClient,
        ledger: PurchaseLedger,
        catalog: ProductCatalog,
        escalations: Optional[EscalationQueue] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize reconciliation service.

        Args:
            gateway: Payment gateway client
            ledger: Purchase ledger store
            catalog: Product catalog for pricing
            escalations: Optional escalation queue (created from settings if not provided)
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.ledger = ledger
        self.catalog = catalog
        self.escalations = escalations or EscalationQueue(settings=self.settings)

    @staticmethod
    def _validate_product(product: Optional[Product], product_id: int) -> Product:
        """
        Check that a product can be bought.

        Raises:
            PurchaseValidationError: If the product is missing, free, unpriced or unpublished
        """
        if product is None:
            raise PurchaseValidationError(f"Main lesson {product_id} does not exist")
        if product.free:
            raise PurchaseValidationError(f"Main lesson {product_id} is free")
        if product.price is None or product.price <= 0:
            raise PurchaseValidationError(f"Main lesson {product_id} has no price")
        if product.status != "published":
            raise PurchaseValidationError(f"Main lesson {product_id} is not published")
        return product

    async def _write_after_money_moved(
        self,
        operation: str,
        write: Callable[[], Awaitable[Optional[PurchaseRecord]]],
        escalation: Escalation,
    ) -> Optional[PurchaseRecord]:
        """
        Retry a ledger write that follows a capture or refund.

        Raises:
            LedgerWriteEscalated: If the write kept failing and was escalated
        """

        def before_sleep(retry_state: RetryCallState) -> None:
            metrics.record_ledger_retry(operation)
            logger.warning(
                "ledger_write_retry",
                operation=operation,
                order_token=escalation.order_token,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(SQLAlchemyError),
            stop=stop_after_attempt(max(self.settings.ledger_retry_max_attempts, 1)),
            wait=wait_exponential(
                multiplier=self.settings.ledger_retry_base_delay,
                max=self.settings.ledger_retry_max_delay,
            ),
            before_sleep=before_sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await write()
        except SQLAlchemyError as e:
            await self.escalations.push(
                escalation.model_copy(update={"reason": f"{escalation.reason}: {e}"})
            )
            raise LedgerWriteEscalated(
                f"Ledger write for {escalation.order_token} was escalated for reconciliation",
                order_token=escalation.order_token,
                target_status=escalation.target_status,
            ) from e
        return None

    async def _escalate_orphaned_capture(self, escalation: Escalation) -> NoReturn:
        """
        Escalate a capture whose record was cancelled while it was in flight.

        Raises:
            LedgerConflict: Always
        """
        await self.escalations.push(
            escalation.model_copy(
                update={
                    "kind": "capture_orphaned",
                    "reason": "record cancelled while capture was in flight",
                }
            )
        )
        raise LedgerConflict(
            f"Purchase {escalation.order_token} was cancelled while its capture was in flight",
            expected_status=PaymentStatus.PENDING.value,
        )

    async def initiate_purchase(
        self,
        buyer: Buyer,
        product_id: int,
        return_url: str,
        cancel_url: str,
        payment_method: Optional[str] = None,
        platform_type: Optional[str] = None,
    ) -> InitiatedPurchase:
        """
        Create a gateway order and record it as a pending purchase.

        Flow:
        1. Validate the product is purchasable
        2. Create the gateway order (no ledger write on failure)
        3. Insert the pending ledger record

        Args:
            buyer: Authenticated buyer
            product_id: Main lesson id
            return_url: Buyer return URL after approval
            cancel_url: Buyer return URL after cancelling
            payment_method: Descriptive payment method
            platform_type: Descriptive client platform

        Returns:
            InitiatedPurchase: Gateway order and pending record

        Raises:
            PurchaseValidationError: If the product cannot be bought
            GatewayError: If the gateway refuses or cannot be reached
        """
        correlation_id = str(uuid.uuid4())
        log = logger.bind(correlation_id=correlation_id, user_id=buyer.user_id)
        log.info("purchase_initiation_started", main_lesson_id=product_id)

        product = self._validate_product(await self.catalog.get_product(product_id), product_id)

        unit = PurchaseUnit(
            reference_id=str(product.id),
            amount_cents=product.price,
            currency=self.settings.checkout_currency,
            description=product.title[:127],
        )
        order = await self.gateway.create_order([unit], return_url, cancel_url)

        record = PurchaseRecord(
            order_token=order.order_token,
            user_id=buyer.user_id,
            user_email=buyer.email,
            main_lesson_id=product.id,
            purchase_amount=product.price,
            currency=self.settings.checkout_currency,
            payment_method=payment_method or "paypal",
            platform_type=platform_type or "web",
            payment_status=PaymentStatus.PENDING.value,
            purchase_date=utcnow(),
        )
        try:
            record = await self.ledger.create(record)
        except (LedgerConflict, SQLAlchemyError) as e:
            # The remote order lapses on its own or is cleaned up by the cancel path
            log.error(
                "purchase_record_insert_failed",
                order_token=order.order_token,
                error=str(e),
            )
            raise

        metrics.record_transition("created", product.price)
        log.info(
            "purchase_initiated",
            order_token=order.order_token,
            purchase_id=record.id,
            amount_cents=product.price,
        )
        return InitiatedPurchase(order=order, purchase=record)

    async def complete_purchase(self, order_token: str) -> PurchaseRecord:
        """
        Capture an approved order and mark its record completed.

        Repeating the call for a completed order returns the record
        without touching the gateway.

        Args:
            order_token: Gateway order token from the return URL

        Returns:
            PurchaseRecord: The completed record

        Raises:
            LedgerNotFound: If no purchase was recorded for the token
            LedgerConflict: If the record is refunded, or was cancelled mid-capture
            GatewayRejected: If the gateway refuses the capture or reports it in any
                state other than completed or pending
            GatewayTransient: If the gateway is unreachable or the capture is still pending
            LedgerWriteEscalated: If the post-capture write was escalated
        """
        log = logger.bind(order_token=order_token)

        record = await self.ledger.find_by_token(order_token)
        if record is None:
            raise LedgerNotFound(f"No purchase recorded for order {order_token}")
        if record.payment_status == PaymentStatus.COMPLETED.value:
            metrics.record_transition("completed_repeat")
            log.info("purchase_already_completed", purchase_id=record.id)
            return record
        if record.payment_status != PaymentStatus.PENDING.value:
            raise LedgerConflict(
                f"Purchase {order_token} is {record.payment_status} and cannot be completed",
                current_status=record.payment_status,
                expected_status=PaymentStatus.PENDING.value,
            )

        capture = await self.gateway.capture_order(order_token)
        capture_status = normalize_status(capture.status)
        log = log.bind(capture_id=capture.capture_id, capture_status=capture_status)

        if capture_status not in (PaymentStatus.COMPLETED.value, PaymentStatus.PENDING.value):
            # Declined, or captured elsewhere and since refunded or voided
            log.warning("capture_rejected")
            raise GatewayRejected(
                f"Capture for order {order_token} was {capture_status}", issue=capture.status
            )

        escalation = Escalation(
            kind="capture",
            order_token=order_token,
            purchase_id=record.id,
            target_status=PaymentStatus.COMPLETED.value,
            expected_status=PaymentStatus.PENDING.value,
            capture_id=capture.capture_id,
            reason="ledger write failed after capture",
        )

        if capture_status == PaymentStatus.PENDING.value:
            # Funds are held but not settled; pin the capture so cancel cannot drop the record
            held = await self._write_after_money_moved(
                "capture_pending",
                lambda: self.ledger.attach_capture(order_token, capture.capture_id),
                escalation.model_copy(
                    update={
                        "target_status": PaymentStatus.PENDING.value,
                        "reason": "ledger write failed after pending capture",
                    }
                ),
            )
            if held is None:
                await self._escalate_orphaned_capture(escalation)
            if held.payment_status == PaymentStatus.COMPLETED.value:
                return held
            log.warning("capture_not_settled")
            raise GatewayTransient(
                f"Capture for order {order_token} is {capture_status}", issue=capture.status
            )

        updated = await self._write_after_money_moved(
            "complete",
            lambda: self.ledger.update_status_by_token(
                order_token,
                PaymentStatus.COMPLETED,
                expected_status=PaymentStatus.PENDING,
                capture_id=capture.capture_id,
            ),
            escalation,
        )

        if updated is None:
            await self._escalate_orphaned_capture(escalation)

        metrics.record_transition("completed", updated.purchase_amount)
        log.info(
            "purchase_completed",
            purchase_id=updated.id,
            already_captured=capture.already_captured,
        )
        return updated

    async def cancel_purchase(self, order_token: str) -> bool:
        """
        Delete a pending purchase after the buyer cancelled checkout.

        Returns:
            bool: True if a record was deleted, False if none existed

        Raises:
            LedgerConflict: If the record has already left pending or holds a capture
        """
        deleted = await self.ledger.delete_by_token(order_token, PaymentStatus.PENDING)
        if deleted:
            metrics.record_transition("cancelled")
            logger.info("purchase_cancelled", order_token=order_token)
        else:
            logger.info("purchase_cancel_no_record", order_token=order_token)
        return deleted

    async def refund_purchase(self, purchase_id: int) -> PurchaseRecord:
        """
        Refund a completed purchase in full.

        Args:
            purchase_id: Ledger record id

        Returns:
            PurchaseRecord: The refunded record

        Raises:
            LedgerNotFound: If the record does not exist
            LedgerConflict: If the record is not completed
            GatewayError: If the gateway refuses or cannot be reached
            LedgerWriteEscalated: If the post-refund write was escalated
        """
        record = await self.ledger.find_by_id(purchase_id)
        if record is None:
            raise LedgerNotFound(f"Purchase {purchase_id} does not exist")
        if record.payment_status != PaymentStatus.COMPLETED.value:
            raise LedgerConflict(
                f"Purchase {purchase_id} is {record.payment_status} and cannot be refunded",
                current_status=record.payment_status,
                expected_status=PaymentStatus.COMPLETED.value,
            )
        if not record.capture_id:
            raise LedgerConflict(
                f"Purchase {purchase_id} has no capture reference",
                current_status=record.payment_status,
            )

        log = logger.bind(
            purchase_id=purchase_id,
            order_token=record.order_token,
            capture_id=record.capture_id,
        )
        log.info("purchase_refund_started")

        refund = await self.gateway.refund_capture(record.capture_id)
        refund_status = normalize_status(refund.status)
        if refund_status in FAILED_REFUND_STATUSES:
            log.warning("refund_not_applied", refund_status=refund_status)
            raise GatewayRejected(
                f"Refund for capture {record.capture_id} was {refund_status}",
                issue=refund.status,
            )

        escalation = Escalation(
            kind="refund",
            order_token=record.order_token,
            purchase_id=record.id,
            target_status=PaymentStatus.REFUNDED.value,
            expected_status=PaymentStatus.COMPLETED.value,
            capture_id=record.capture_id,
            reason="ledger write failed after refund",
        )
        updated = await self._write_after_money_moved(
            "refund",
            lambda: self.ledger.update_status_by_token(
                record.order_token,
                PaymentStatus.REFUNDED,
                expected_status=PaymentStatus.COMPLETED,
            ),
            escalation,
        )
        if updated is None:
            raise LedgerNotFound(f"Purchase {purchase_id} disappeared during refund")

        metrics.record_transition("refunded", updated.purchase_amount)
        log.info("purchase_refunded", refund_id=refund.refund_id, refund_status=refund_status)
        return updated

    async def refund_by_capture_id(self, capture_id: str) -> PurchaseRecord:
        """Refund the purchase that recorded the given capture."""
        record = await self.ledger.find_by_capture_id(capture_id)
        if record is None:
            raise LedgerNotFound(f"No purchase recorded for capture {capture_id}")
        return await self.refund_purchase(record.id)

    async def update_payment_status(self, purchase_id: int, payment_status: str) -> PurchaseRecord:
        """
        Apply a status change requested through the purchase history API.

        Only reconciliation transitions are accepted: completed captures the
        order, refunded refunds it.

        Raises:
            LedgerNotFound: If the record does not exist
            LedgerConflict: If the requested status is not a reachable transition
        """
        record = await self.ledger.find_by_id(purchase_id)
        if record is None:
            raise LedgerNotFound(f"Purchase {purchase_id} does not exist")

        target = normalize_status(payment_status)
        if target == PaymentStatus.COMPLETED.value:
            return await self.complete_purchase(record.order_token)
        if target == PaymentStatus.REFUNDED.value:
            return await self.refund_purchase(purchase_id)
        raise LedgerConflict(
            f"Payment status cannot be set to {payment_status!r}",
            current_status=record.payment_status,
        )

    async def _apply_escalation(self, escalation: Escalation) -> Optional[PurchaseRecord]:
        """Re-apply one escalated write; None means the record is gone."""
        if escalation.target_status == PaymentStatus.PENDING.value:
            return await self.ledger.attach_capture(escalation.order_token, escalation.capture_id)
        return await self.ledger.update_status_by_token(
            escalation.order_token,
            escalation.target_status,
            expected_status=escalation.expected_status,
            capture_id=escalation.capture_id,
        )

    async def replay_escalations(self, limit: int = 100) -> ReplayReport:
        """
        Re-apply queued ledger transitions.

        Capture and refund escalations are retried through the same
        compare-and-swap write. Orphaned captures need an operator to
        refund or re-record them and always go back on the queue, as does
        every drained entry that was not resolved when replay stopped.

        Args:
            limit: Maximum number of queued escalations to process

        Returns:
            ReplayReport: Resolved and still-unresolved escalations
        """
        report = ReplayReport()
        drained = await self.escalations.drain(limit)
        try:
            for escalation in drained:
                log = logger.bind(order_token=escalation.order_token, kind=escalation.kind)
                if escalation.kind not in ("capture", "refund"):
                    report.unresolved.append(escalation)
                    continue
                try:
                    updated = await self._apply_escalation(escalation)
                except (LedgerConflict, SQLAlchemyError) as e:
                    log.warning("escalation_replay_failed", error=str(e))
                    report.unresolved.append(escalation)
                    continue

                if updated is None:
                    log.warning("escalation_replay_missing_record")
                    report.unresolved.append(escalation)
                else:
                    log.info("escalation_resolved", payment_status=updated.payment_status)
                    report.resolved.append(escalation)
        finally:
            processed = len(report.resolved) + len(report.unresolved)
            # Entries after an unexpected error go back untouched along with the unresolved ones
            await self.escalations.requeue(report.unresolved + drained[processed:])

        metrics.record_replay(len(report.resolved), len(report.unresolved))
        logger.info(
            "escalation_replay_completed",
            resolved=len(report.resolved),
            unresolved=len(report.unresolved),
        )
        return report
