"""Normalized payment gateway request and result models."""
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

# Currencies PayPal accepts without a fractional part
ZERO_DECIMAL_CURRENCIES = frozenset({"HUF", "JPY", "TWD"})


def format_amount(amount_cents: int, currency: str) -> str:
    """
    Convert a minor-unit amount into the decimal string PayPal expects.

    >>> format_amount(499, "USD")
    '4.99'
    >>> format_amount(1500, "JPY")
    '1500'
    """
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return str(amount_cents)
    return str((Decimal(amount_cents) / Decimal(100)).quantize(Decimal("0.01")))


class PurchaseUnit(BaseModel):
    """One purchasable item inside a gateway order."""

    model_config = ConfigDict(frozen=True)

    reference_id: str = Field(..., description="Local product reference")
    amount_cents: int = Field(..., gt=0, description="Amount in minor currency units")
    currency: str = Field(..., min_length=3, max_length=3)
    description: Optional[str] = Field(default=None, max_length=127)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "reference_id": self.reference_id,
            "amount": {
                "currency_code": self.currency.upper(),
                "value": format_amount(self.amount_cents, self.currency),
            },
        }
        if self.description:
            payload["description"] = self.description
        return payload


class OrderResult(BaseModel):
    """Result of creating a checkout order."""

    order_token: str
    status: str
    status_code: int
    approve_url: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class CaptureResult(BaseModel):
    """Result of capturing an approved order."""

    order_token: str
    capture_id: str
    status: str
    order_status: Optional[str] = None
    already_captured: bool = False
    raw: Dict[str, Any] = Field(default_factory=dict)


class RefundResult(BaseModel):
    """Result of refunding a capture."""

    refund_id: str
    capture_id: str
    status: str
    raw: Dict[str, Any] = Field(default_factory=dict)
