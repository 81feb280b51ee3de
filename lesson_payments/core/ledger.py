"""
Purchase ledger store.

Durable CRUD for purchase records keyed by gateway order token. Every
status write is a single conditional UPDATE or DELETE on the current
payment status, so two writers racing on the same token cannot both
apply a transition.
"""
from typing import List, Optional, Tuple, Union

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lesson_payments.core.date_ranges import purchase_date_range
from lesson_payments.core.errors import LedgerConflict
from lesson_payments.database.models import PaymentStatus, PurchaseRecord, utcnow

logger = structlog.get_logger(__name__)

StatusLike = Union[PaymentStatus, str]

DEFAULT_PAGE_SIZE = 15


class PurchaseFilters(BaseModel):
    """Filters for the purchase history listing."""

    payment_status: Optional[str] = None
    purchase_date: Optional[str] = None
    search: Optional[str] = None


class PurchaseLedger:
    """Purchase record persistence. Each call commits its own session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize ledger store.

        Args:
            session_factory: Factory for short-lived async sessions
        """
        self.session_factory = session_factory

    async def create(self, record: PurchaseRecord) -> PurchaseRecord:
        """
        Insert a new purchase record.

        Args:
            record: Unsaved record

        Returns:
            PurchaseRecord: The persisted record with its id assigned

        Raises:
            LedgerConflict: If a record already exists for the order token
        """
        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if await self.find_by_token(record.order_token) is not None:
                    raise LedgerConflict(
                        f"Purchase record for order {record.order_token} already exists"
                    )
                raise

        logger.info(
            "purchase_record_created",
            purchase_id=record.id,
            order_token=record.order_token,
            amount_cents=record.purchase_amount,
        )
        return record

    async def find_by_token(self, order_token: str) -> Optional[PurchaseRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PurchaseRecord).where(PurchaseRecord.order_token == order_token)
            )
            return result.scalar_one_or_none()

    async def find_by_id(self, purchase_id: int) -> Optional[PurchaseRecord]:
        async with self.session_factory() as session:
            return await session.get(PurchaseRecord, purchase_id)

    async def find_by_capture_id(self, capture_id: str) -> Optional[PurchaseRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PurchaseRecord).where(PurchaseRecord.capture_id == capture_id)
            )
            return result.scalar_one_or_none()

    async def update_status_by_token(
        self,
        order_token: str,
        status: StatusLike,
        expected_status: Optional[StatusLike] = None,
        capture_id: Optional[str] = None,
    ) -> Optional[PurchaseRecord]:
        """
        Move a record to a new status with a compare-and-swap update.

        Args:
            order_token: Gateway order token
            status: Target status
            expected_status: Only update when the record is currently in this status
            capture_id: Capture reference to store alongside the status

        Returns:
            Optional[PurchaseRecord]: The updated record, the unchanged record when it
            already has the target status, or None when no record exists

        Raises:
            LedgerConflict: If the record exists in a status other than expected
        """
        target = PaymentStatus(status)
        values = {"payment_status": target.value, "updated_at": utcnow()}
        if capture_id is not None:
            values["capture_id"] = capture_id

        stmt = update(PurchaseRecord).where(PurchaseRecord.order_token == order_token)
        if expected_status is not None:
            stmt = stmt.where(
                PurchaseRecord.payment_status == PaymentStatus(expected_status).value
            )
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            updated = result.rowcount > 0

        record = await self.find_by_token(order_token)
        if updated:
            logger.info(
                "purchase_status_updated",
                order_token=order_token,
                payment_status=target.value,
            )
            return record
        if record is None:
            logger.info("purchase_status_update_missing", order_token=order_token)
            return None
        if record.payment_status == target.value:
            return record

        raise LedgerConflict(
            f"Purchase {order_token} is {record.payment_status}, cannot move to {target.value}",
            current_status=record.payment_status,
            expected_status=PaymentStatus(expected_status).value if expected_status else None,
        )

    async def attach_capture(self, order_token: str, capture_id: str) -> Optional[PurchaseRecord]:
        """
        Store a capture reference on a pending record without moving its status.

        A record holding a capture reference can no longer be deleted by
        the cancel path.

        Returns:
            Optional[PurchaseRecord]: The current record, or None when no record exists
        """
        stmt = (
            update(PurchaseRecord)
            .where(
                PurchaseRecord.order_token == order_token,
                PurchaseRecord.payment_status == PaymentStatus.PENDING.value,
            )
            .values(capture_id=capture_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount > 0:
                logger.info("purchase_capture_attached", order_token=order_token, capture_id=capture_id)

        return await self.find_by_token(order_token)

    async def delete_by_token(
        self,
        order_token: str,
        expected_status: StatusLike = PaymentStatus.PENDING,
    ) -> bool:
        """
        Delete a record only while it is in the expected status and holds no
        capture reference.

        Returns:
            bool: True if a record was deleted, False if none existed

        Raises:
            LedgerConflict: If the record exists in another status or already holds a capture
        """
        expected = PaymentStatus(expected_status)
        stmt = (
            delete(PurchaseRecord)
            .where(
                PurchaseRecord.order_token == order_token,
                PurchaseRecord.payment_status == expected.value,
                PurchaseRecord.capture_id.is_(None),
            )
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount > 0:
                logger.info("purchase_record_deleted", order_token=order_token)
                return True

        record = await self.find_by_token(order_token)
        if record is None:
            return False
        if record.capture_id is not None:
            raise LedgerConflict(
                f"Purchase {order_token} has capture {record.capture_id} and cannot be deleted",
                current_status=record.payment_status,
                expected_status=expected.value,
            )
        raise LedgerConflict(
            f"Purchase {order_token} is {record.payment_status}, only {expected.value} "
            f"records can be deleted",
            current_status=record.payment_status,
            expected_status=expected.value,
        )

    async def list(
        self,
        filters: Optional[PurchaseFilters] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> Tuple[List[PurchaseRecord], int]:
        """
        List purchase records, filtered in SQL before pagination.

        Args:
            filters: Optional status, named date range and email search filters
            limit: Page size
            offset: Rows to skip

        Returns:
            Tuple[List[PurchaseRecord], int]: One page of records and the filtered total
        """
        filters = filters or PurchaseFilters()
        conditions = []

        if filters.payment_status and filters.payment_status.lower() != "all":
            conditions.append(
                func.lower(PurchaseRecord.payment_status) == filters.payment_status.lower()
            )

        date_range = purchase_date_range(filters.purchase_date)
        if date_range is not None:
            start, end = date_range
            conditions.append(PurchaseRecord.purchase_date >= start)
            conditions.append(PurchaseRecord.purchase_date < end)

        if filters.search:
            conditions.append(
                func.lower(PurchaseRecord.user_email).contains(
                    filters.search.lower(), autoescape=True
                )
            )

        count_stmt = select(func.count()).select_from(PurchaseRecord).where(*conditions)
        page_stmt = (
            select(PurchaseRecord)
            .where(*conditions)
            .order_by(PurchaseRecord.created_at, PurchaseRecord.id)
            .limit(limit)
            .offset(offset)
        )

        async with self.session_factory() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            records = list((await session.execute(page_stmt)).scalars().all())

        return records, total
