"""Purchase history ledger

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # main_lessons is owned by the content side; purchase_history only references it
    op.create_table(
        "purchase_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("order_token", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("user_email", sa.String(length=255), nullable=False),
        sa.Column("main_lesson_id", sa.Integer(), nullable=False),
        sa.Column("purchase_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("platform_type", sa.String(length=50), nullable=True),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("capture_id", sa.String(length=64), nullable=True),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("purchase_amount > 0", name="positive_purchase_amount"),
        sa.CheckConstraint(
            "payment_status IN ('pending', 'completed', 'refunded')",
            name="valid_payment_status",
        ),
        sa.CheckConstraint("length(currency) = 3", name="valid_currency"),
        sa.ForeignKeyConstraint(
            ["main_lesson_id"], ["main_lessons.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_token"),
        sa.UniqueConstraint("capture_id"),
    )
    op.create_index(
        "idx_purchase_history_created",
        "purchase_history",
        ["created_at", "id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_purchase_history_payment_status"),
        "purchase_history",
        ["payment_status"],
        unique=False,
    )
    op.create_index(
        op.f("ix_purchase_history_purchase_date"),
        "purchase_history",
        ["purchase_date"],
        unique=False,
    )
    op.create_index(
        op.f("ix_purchase_history_user_id"),
        "purchase_history",
        ["user_id"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_purchase_history_user_id"), table_name="purchase_history")
    op.drop_index(op.f("ix_purchase_history_purchase_date"), table_name="purchase_history")
    op.drop_index(op.f("ix_purchase_history_payment_status"), table_name="purchase_history")
    op.drop_index("idx_purchase_history_created", table_name="purchase_history")
    op.drop_table("purchase_history")
