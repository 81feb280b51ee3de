"""
Tests for the Redis-backed escalation queue.
"""
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from lesson_payments.config import Settings
from lesson_payments.core.escalation import Escalation, EscalationQueue


def escalation(order_token: str = "ORDER-1", attempts: int = 0) -> Escalation:
    return Escalation(
        kind="capture",
        order_token=order_token,
        purchase_id=3,
        target_status="completed",
        expected_status="pending",
        capture_id="CAP-1",
        reason="ledger write failed after capture",
        attempts=attempts,
    )


class TestEscalationQueue:
    """Push, drain and requeue."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_push_appends_json_to_queue(self, test_settings: Settings) -> None:
        redis_client = AsyncMock()
        queue = EscalationQueue(redis_client=redis_client, settings=test_settings)

        assert await queue.push(escalation()) is True

        key, payload = redis_client.rpush.await_args.args
        assert key == test_settings.escalation_queue_key
        assert Escalation.model_validate_json(payload).order_token == "ORDER-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_push_survives_redis_outage(self, test_settings: Settings) -> None:
        redis_client = AsyncMock()
        redis_client.rpush.side_effect = RedisConnectionError("connection refused")
        queue = EscalationQueue(redis_client=redis_client, settings=test_settings)

        assert await queue.push(escalation()) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_drain_stops_when_queue_empty(self, test_settings: Settings) -> None:
        redis_client = AsyncMock()
        redis_client.lpop.side_effect = [
            escalation("ORDER-1").model_dump_json(),
            escalation("ORDER-2").model_dump_json(),
            None,
        ]
        queue = EscalationQueue(redis_client=redis_client, settings=test_settings)

        drained = await queue.drain(limit=10)

        assert [e.order_token for e in drained] == ["ORDER-1", "ORDER-2"]
        assert redis_client.lpop.await_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_drain_respects_limit(self, test_settings: Settings) -> None:
        redis_client = AsyncMock()
        redis_client.lpop.return_value = escalation().model_dump_json()
        queue = EscalationQueue(redis_client=redis_client, settings=test_settings)

        drained = await queue.drain(limit=2)

        assert len(drained) == 2
        assert redis_client.lpop.await_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requeue_counts_attempts(self, test_settings: Settings) -> None:
        redis_client = AsyncMock()
        queue = EscalationQueue(redis_client=redis_client, settings=test_settings)

        await queue.requeue([escalation("ORDER-1", attempts=1), escalation("ORDER-2")])

        key, *payloads = redis_client.rpush.await_args.args
        assert key == test_settings.escalation_queue_key
        assert [Escalation.model_validate_json(p).attempts for p in payloads] == [2, 1]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requeue_nothing_is_a_no_op(self, test_settings: Settings) -> None:
        redis_client = AsyncMock()
        queue = EscalationQueue(redis_client=redis_client, settings=test_settings)

        await queue.requeue([])

        redis_client.rpush.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requeue_survives_redis_outage(self, test_settings: Settings) -> None:
        redis_client = AsyncMock()
        redis_client.rpush.side_effect = RedisConnectionError("connection refused")
        queue = EscalationQueue(redis_client=redis_client, settings=test_settings)

        assert await queue.requeue([escalation("ORDER-1")]) is False
        redis_client.rpush.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_drain_skips_unreadable_entries(self, test_settings: Settings) -> None:
        redis_client = AsyncMock()
        redis_client.lpop.side_effect = ["{not json", escalation("ORDER-2").model_dump_json(), None]
        queue = EscalationQueue(redis_client=redis_client, settings=test_settings)

        drained = await queue.drain(limit=10)

        assert [e.order_token for e in drained] == ["ORDER-2"]
