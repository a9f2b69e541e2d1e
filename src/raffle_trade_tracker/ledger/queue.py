"""Redis-backed work queue carrying ticket allocation, removal and staking bonus jobs."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

# Queue and job names
BUY_QUEUE = "buy-events"
SELL_QUEUE = "sell-events"
STAKE_QUEUE = "stake-events"
JOB_ALLOCATE_TICKETS = "allocate-tickets"
JOB_REMOVE_TICKETS = "remove-tickets"
JOB_ADD_STAKE_BONUS = "add-stake-bonus"
JOB_REMOVE_STAKE_BONUS = "remove-stake-bonus"

JOB_QUEUES = {
    JOB_ALLOCATE_TICKETS: BUY_QUEUE,
    JOB_REMOVE_TICKETS: SELL_QUEUE,
    JOB_ADD_STAKE_BONUS: STAKE_QUEUE,
    JOB_REMOVE_STAKE_BONUS: STAKE_QUEUE,
}
ALL_QUEUES = (BUY_QUEUE, SELL_QUEUE, STAKE_QUEUE)

DEFAULT_QUEUE_PREFIX = "raffle:queue:"


class WorkQueueError(Exception):
    """Raised when a job cannot be enqueued or read."""


@dataclass(frozen=True)
class LedgerJob:
    """One ticket change to apply downstream.

    event_id is the id of the trade event or stake event record behind the job.
    """

    job_id: str
    name: str
    queue: str
    event_id: str
    raffle_id: str
    wallet_address: str
    tickets: int
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        name: str,
        *,
        event_id: str,
        raffle_id: str,
        wallet_address: str,
        tickets: int,
    ) -> LedgerJob:
        queue = JOB_QUEUES.get(name, BUY_QUEUE)
        return cls(
            job_id=uuid.uuid4().hex,
            name=name,
            queue=queue,
            event_id=event_id,
            raffle_id=raffle_id,
            wallet_address=wallet_address,
            tickets=tickets,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "queue": self.queue,
            "data": {
                "event_id": self.event_id,
                "raffle_id": self.raffle_id,
                "wallet_address": self.wallet_address,
                "tickets": self.tickets,
            },
            "enqueued_at": self.enqueued_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LedgerJob:
        data = payload["data"]
        return cls(
            job_id=str(payload["job_id"]),
            name=str(payload["name"]),
            queue=str(payload["queue"]),
            event_id=str(data["event_id"]),
            raffle_id=str(data["raffle_id"]),
            wallet_address=str(data["wallet_address"]),
            tickets=int(data["tickets"]),
            enqueued_at=datetime.fromisoformat(payload["enqueued_at"]),
        )


class RedisWorkQueue:
    """FIFO job lists in Redis: LPUSH to enqueue, BRPOP to consume.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        queue = RedisWorkQueue(redis)
        await queue.enqueue(job)
        job = await queue.dequeue([BUY_QUEUE, SELL_QUEUE], timeout=5)
        ```
    """

    def __init__(self, redis: Redis, *, prefix: str = DEFAULT_QUEUE_PREFIX) -> None:
        self._redis = redis
        self._prefix = prefix

    def key(self, queue: str) -> str:
        return f"{self._prefix}{queue}"

    async def enqueue(self, job: LedgerJob) -> None:
        try:
            await self._redis.lpush(self.key(job.queue), json.dumps(job.to_dict()))
        except RedisError as e:
            raise WorkQueueError(f"Failed to enqueue {job.name} job {job.job_id}: {e}") from e
        logger.debug("Enqueued %s job %s on %s", job.name, job.job_id, job.queue)

    async def dequeue(self, queues: Sequence[str], timeout: float = 5.0) -> LedgerJob | None:
        """Block up to `timeout` seconds for the next job on any of `queues`."""
        try:
            item = await self._redis.brpop([self.key(q) for q in queues], timeout=timeout)
        except RedisError as e:
            raise WorkQueueError(f"Failed to read from {', '.join(queues)}: {e}") from e
        if item is None:
            return None

        _, raw = item
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return LedgerJob.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Dropping malformed job payload %r: %s", raw, e)
            return None

    async def length(self, queue: str) -> int:
        return int(await self._redis.llen(self.key(queue)))
