"""SQLAlchemy database models for the purchase ledger."""
import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentStatus(str, enum.Enum):
    """Ledger payment status. A cancelled purchase has no row at all."""

    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class MainLesson(Base):
    """
    Priced catalog item a buyer can purchase.

    Owned by the content CRUD side of the back office; the payment flow
    only reads price and publish state.
    """

    __tablename__ = "main_lessons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        """String representation of MainLesson."""
        return f"<MainLesson(id={self.id}, free={self.free}, price={self.price})>"


class PurchaseRecord(Base):
    """
    Purchase history ledger.

    One row per gateway order token. Rows are created pending when the
    order is created, moved to completed only after a confirmed capture,
    to refunded only after a confirmed refund, and deleted when the buyer
    cancels before capture.
    """

    __tablename__ = "purchase_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    main_lesson_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("main_lessons.id", ondelete="CASCADE"), nullable=False
    )
    purchase_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    platform_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    capture_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    purchase_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("purchase_amount > 0", name="positive_purchase_amount"),
        CheckConstraint(
            "payment_status IN ('pending', 'completed', 'refunded')",
            name="valid_payment_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_purchase_history_created", "created_at", "id"),
    )

    def __repr__(self) -> str:
        """String representation of PurchaseRecord."""
        return (
            f"<PurchaseRecord(id={self.id}, order_token={self.order_token}, "
            f"amount={self.purchase_amount}, status={self.payment_status})>"
        )
