"""Read-only view of the main lesson catalog used for pricing purchases."""
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lesson_payments.database.models import MainLesson

logger = structlog.get_logger(__name__)


class Product(BaseModel):
    """Price and publish state of a main lesson."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    title: str
    free: bool
    price: Optional[int] = None
    status: str


class ProductCatalog:
    """Product lookups against the main_lessons table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_product(self, main_lesson_id: int) -> Optional[Product]:
        async with self.session_factory() as session:
            lesson = await session.get(MainLesson, main_lesson_id)
        if lesson is None:
            logger.info("product_not_found", main_lesson_id=main_lesson_id)
            return None
        return Product.model_validate(lesson)
