"""
Escalation queue for ledger writes that failed after money moved.

Entries are JSON documents on a Redis list. When Redis itself is
unreachable the critical log line written on every push is the record
of last resort.
"""
from datetime import datetime
from typing import List, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field, ValidationError
from redis.exceptions import RedisError

from lesson_payments.config import Settings, get_settings
from lesson_payments.database.models import utcnow
from lesson_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class Escalation(BaseModel):
    """A ledger transition awaiting manual reconciliation."""

    kind: str  # capture, refund, capture_orphaned
    order_token: str
    purchase_id: Optional[int] = None
    target_status: str
    expected_status: Optional[str] = None
    capture_id: Optional[str] = None
    reason: str
    attempts: int = 0
    occurred_at: datetime = Field(default_factory=utcnow)


class EscalationQueue:
    """Redis-backed FIFO of escalations."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize escalation queue.

        Args:
            redis_client: Optional Redis client (created from settings if not provided)
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.key = self.settings.escalation_queue_key

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    async def push(self, escalation: Escalation) -> bool:
        """
        Record an escalation.

        Args:
            escalation: Transition that could not be written

        Returns:
            bool: True if queued in Redis, False if only logged
        """
        payload = escalation.model_dump(mode="json")
        metrics.record_escalation(escalation.kind)
        logger.critical("purchase_escalated", **payload)

        try:
            await self._ensure_redis().rpush(self.key, escalation.model_dump_json())
        except RedisError as e:
            logger.critical(
                "escalation_queue_unavailable",
                order_token=escalation.order_token,
                error=str(e),
            )
            return False
        return True

    async def drain(self, limit: int = 100) -> List[Escalation]:
        """Pop up to limit escalations from the head of the queue."""
        redis = self._ensure_redis()
        escalations: List[Escalation] = []
        for _ in range(limit):
            raw = await redis.lpop(self.key)
            if raw is None:
                break
            try:
                escalations.append(Escalation.model_validate_json(raw))
            except ValidationError as e:
                logger.critical("escalation_unreadable", payload=raw, error=str(e))
        return escalations

    async def requeue(self, escalations: List[Escalation]) -> bool:
        """
        Push unresolved escalations back onto the tail of the queue.

        Drained entries exist nowhere else, so when Redis refuses them each
        one is written to the critical log instead.

        Returns:
            bool: True if queued in Redis, False if only logged
        """
        if not escalations:
            return True
        retried = [
            escalation.model_copy(update={"attempts": escalation.attempts + 1})
            for escalation in escalations
        ]

        try:
            await self._ensure_redis().rpush(
                self.key, *[escalation.model_dump_json() for escalation in retried]
            )
        except RedisError as e:
            logger.critical("escalation_requeue_failed", count=len(retried), error=str(e))
            for escalation in retried:
                logger.critical("purchase_escalated", **escalation.model_dump(mode="json"))
            return False

        logger.warning("escalations_requeued", count=len(retried))
        return True

    async def length(self) -> int:
        return await self._ensure_redis().llen(self.key)

    async def ping(self) -> bool:
        return await self._ensure_redis().ping()

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
