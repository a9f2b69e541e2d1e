"""Ledger layer - Trade records, ticket job queue and ticket balances."""

from raffle_trade_tracker.ledger.publisher import (
    LedgerPublisher,
    PublishOutcome,
    ReconcileOutcome,
    ReconcileResult,
)
from raffle_trade_tracker.ledger.queue import LedgerJob, RedisWorkQueue, WorkQueueError
from raffle_trade_tracker.ledger.worker import LedgerWorker

__all__ = [
    "LedgerJob",
    "LedgerPublisher",
    "LedgerWorker",
    "PublishOutcome",
    "ReconcileOutcome",
    "ReconcileResult",
    "RedisWorkQueue",
    "WorkQueueError",
]
