"""Domain exceptions for purchase reconciliation."""
from typing import Optional


class PurchaseError(Exception):
    """Base exception for purchase processing errors."""

    pass


class PurchaseValidationError(PurchaseError):
    """Raised when a product cannot be purchased."""

    pass


class LedgerError(PurchaseError):
    """Base exception for purchase ledger errors."""

    pass


class LedgerNotFound(LedgerError):
    """Raised when no purchase record matches a token or id."""

    pass


class LedgerConflict(LedgerError):
    """Raised when a record is not in the status a transition requires."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        expected_status: Optional[str] = None,
    ):
        super().__init__(message)
        self.current_status = current_status
        self.expected_status = expected_status


class LedgerWriteEscalated(LedgerError):
    """
    Raised when a ledger write after a remote money movement kept failing.

    The gateway has already captured or refunded; the transition was handed
    to manual reconciliation instead of being reported as a failure.
    """

    def __init__(self, message: str, order_token: str, target_status: str):
        super().__init__(message)
        self.order_token = order_token
        self.target_status = target_status
