"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from decimal import Decimal

import pytest

from raffle_trade_tracker.ingestor.models import ActiveRaffle, NormalizedStake, NormalizedTrade, StakeKind, TradeSide
from raffle_trade_tracker.ledger.queue import LedgerJob, WorkQueueError
from raffle_trade_tracker.storage.database import DatabaseManager

TOKEN = "0xabc123::pepe::PEPE"
BUYER = "0x" + "b" * 64
SELLER = "0x" + "5" * 64


class InMemoryWorkQueue:
    """Stands in for RedisWorkQueue in tests; keeps jobs in a list."""

    def __init__(self) -> None:
        self.jobs: list[LedgerJob] = []
        self.fail_next = False

    async def enqueue(self, job: LedgerJob) -> None:
        if self.fail_next:
            self.fail_next = False
            raise WorkQueueError("queue down")
        self.jobs.append(job)

    async def dequeue(self, queues: Sequence[str], timeout: float = 5.0) -> LedgerJob | None:
        for i, job in enumerate(self.jobs):
            if job.queue in queues:
                return self.jobs.pop(i)
        await asyncio.sleep(min(timeout, 0.01))
        return None


@pytest.fixture
def token() -> str:
    return TOKEN


@pytest.fixture
def raffle() -> ActiveRaffle:
    """Active raffle on the test token."""
    return ActiveRaffle(
        raffle_id="raffle-1",
        token_address=TOKEN,
        minimum_purchase=None,
        tickets_per_token=Decimal("100"),
    )


@pytest.fixture
async def db():
    """In-memory SQLite record store with the schema created."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def work_queue() -> InMemoryWorkQueue:
    return InMemoryWorkQueue()


def make_trade(
    *,
    key: str = "tx1:0",
    ts: int = 1_700_000_000_000,
    side: TradeSide = TradeSide.BUY,
    wallet: str = BUYER,
    amount_raw: str = "1500000000",
    decimals: int | None = 9,
    recipient: str | None = None,
    source: str = "blockberry",
) -> NormalizedTrade:
    return NormalizedTrade(
        tx_digest=key.split(":")[0],
        event_key=key,
        timestamp_ms=ts,
        wallet_address=wallet,
        amount_raw=amount_raw,
        coin_type=TOKEN,
        side=side,
        source=source,
        decimals=decimals,
        recipient=recipient,
    )


def make_stake(
    *,
    key: str = "stk1:0",
    ts: int = 1_700_000_000_000,
    kind: StakeKind = StakeKind.STAKE,
    wallet: str = BUYER,
    amount_raw: str = "1500000000",
) -> NormalizedStake:
    return NormalizedStake(
        tx_digest=key.split(":")[0],
        event_key=key,
        timestamp_ms=ts,
        wallet_address=wallet,
        amount_raw=amount_raw,
        kind=kind,
        staking_pool="0xpool",
        staking_account="0xaccount",
    )
