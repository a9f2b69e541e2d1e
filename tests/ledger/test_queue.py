"""Tests for the Redis work queue."""

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from raffle_trade_tracker.ledger.queue import (
    BUY_QUEUE,
    JOB_ADD_STAKE_BONUS,
    JOB_ALLOCATE_TICKETS,
    JOB_REMOVE_STAKE_BONUS,
    JOB_REMOVE_TICKETS,
    SELL_QUEUE,
    STAKE_QUEUE,
    LedgerJob,
    RedisWorkQueue,
    WorkQueueError,
)


@pytest.fixture
def redis() -> AsyncMock:
    mock = AsyncMock()
    mock.lpush.return_value = 1
    mock.brpop.return_value = None
    mock.llen.return_value = 0
    return mock


@pytest.fixture
def job() -> LedgerJob:
    return LedgerJob.create(
        JOB_ALLOCATE_TICKETS,
        event_id="te-1",
        raffle_id="raffle-1",
        wallet_address="0xabc",
        tickets=150,
    )


class TestLedgerJob:
    def test_create_routes_by_name(self, job: LedgerJob) -> None:
        removal = LedgerJob.create(
            JOB_REMOVE_TICKETS, event_id="te-2", raffle_id="raffle-1", wallet_address="0xabc", tickets=5
        )

        assert job.queue == BUY_QUEUE
        assert removal.queue == SELL_QUEUE
        assert job.job_id != removal.job_id

    @pytest.mark.parametrize("name", [JOB_ADD_STAKE_BONUS, JOB_REMOVE_STAKE_BONUS])
    def test_stake_jobs_use_stake_queue(self, name: str) -> None:
        job = LedgerJob.create(name, event_id="se-1", raffle_id="raffle-1", wallet_address="0xabc", tickets=5)
        assert job.queue == STAKE_QUEUE

    def test_dict_round_trip(self, job: LedgerJob) -> None:
        payload = job.to_dict()

        assert payload["data"]["tickets"] == 150
        assert payload["data"]["event_id"] == "te-1"
        assert LedgerJob.from_dict(json.loads(json.dumps(payload))) == job


class TestRedisWorkQueue:
    async def test_enqueue_pushes_json(self, redis: AsyncMock, job: LedgerJob) -> None:
        queue = RedisWorkQueue(redis, prefix="test:")

        await queue.enqueue(job)

        key, body = redis.lpush.await_args.args
        assert key == "test:buy-events"
        assert json.loads(body)["job_id"] == job.job_id

    async def test_enqueue_failure(self, redis: AsyncMock, job: LedgerJob) -> None:
        redis.lpush.side_effect = RedisConnectionError("refused")
        queue = RedisWorkQueue(redis)

        with pytest.raises(WorkQueueError):
            await queue.enqueue(job)

    async def test_dequeue_decodes_bytes(self, redis: AsyncMock, job: LedgerJob) -> None:
        redis.brpop.return_value = (b"raffle:queue:buy-events", json.dumps(job.to_dict()).encode())
        queue = RedisWorkQueue(redis)

        result = await queue.dequeue([BUY_QUEUE, SELL_QUEUE], timeout=1)

        assert result == job
        keys = redis.brpop.await_args.args[0]
        assert keys == ["raffle:queue:buy-events", "raffle:queue:sell-events"]
        assert redis.brpop.await_args.kwargs == {"timeout": 1}

    async def test_dequeue_timeout(self, redis: AsyncMock) -> None:
        queue = RedisWorkQueue(redis)
        assert await queue.dequeue([BUY_QUEUE]) is None

    async def test_malformed_payload_dropped(self, redis: AsyncMock) -> None:
        redis.brpop.return_value = ("raffle:queue:buy-events", "{not json")
        queue = RedisWorkQueue(redis)

        assert await queue.dequeue([BUY_QUEUE]) is None

    async def test_missing_fields_dropped(self, redis: AsyncMock) -> None:
        redis.brpop.return_value = ("raffle:queue:buy-events", json.dumps({"job_id": "x"}))
        queue = RedisWorkQueue(redis)

        assert await queue.dequeue([BUY_QUEUE]) is None

    async def test_dequeue_failure(self, redis: AsyncMock) -> None:
        redis.brpop.side_effect = RedisConnectionError("refused")
        queue = RedisWorkQueue(redis)

        with pytest.raises(WorkQueueError):
            await queue.dequeue([BUY_QUEUE])

    async def test_length(self, redis: AsyncMock) -> None:
        redis.llen.return_value = 3
        queue = RedisWorkQueue(redis)

        assert await queue.length(SELL_QUEUE) == 3
        redis.llen.assert_awaited_once_with("raffle:queue:sell-events")
