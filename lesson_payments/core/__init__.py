"""Core purchase reconciliation logic."""
from .catalog import Product, ProductCatalog
from .errors import (
    LedgerConflict,
    LedgerError,
    LedgerNotFound,
    LedgerWriteEscalated,
    PurchaseError,
    PurchaseValidationError,
)
from .escalation import Escalation, EscalationQueue
from .ledger import PurchaseFilters, PurchaseLedger
from .reconciliation import (
    Buyer,
    InitiatedPurchase,
    PurchaseReconciliationService,
    ReplayReport,
)

__all__ = [
    "Buyer",
    "Escalation",
    "EscalationQueue",
    "InitiatedPurchase",
    "LedgerConflict",
    "LedgerError",
    "LedgerNotFound",
    "LedgerWriteEscalated",
    "Product",
    "ProductCatalog",
    "PurchaseError",
    "PurchaseFilters",
    "PurchaseLedger",
    "PurchaseReconciliationService",
    "PurchaseValidationError",
    "ReplayReport",
]
