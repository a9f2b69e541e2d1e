"""Downstream ledger worker applying queued ticket jobs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from raffle_trade_tracker.ledger.queue import (
    ALL_QUEUES,
    JOB_ADD_STAKE_BONUS,
    JOB_ALLOCATE_TICKETS,
    JOB_REMOVE_STAKE_BONUS,
    JOB_REMOVE_TICKETS,
    LedgerJob,
    RedisWorkQueue,
    WorkQueueError,
)
from raffle_trade_tracker.storage.database import DatabaseManager
from raffle_trade_tracker.storage.repos import (
    RAFFLE_STATUS_WINNER_SELECTED,
    LedgerApplicationRepository,
    RaffleRepository,
    StakeEventRepository,
    TicketRepository,
    TradeEventRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_DEQUEUE_TIMEOUT_SECONDS = 5.0
ERROR_BACKOFF_SECONDS = 1.0


@dataclass
class WorkerStats:
    jobs_applied: int = 0
    jobs_skipped: int = 0
    jobs_failed: int = 0


class LedgerWorker:
    """Consumes the buy, sell and stake queues and updates ticket balances.

    Each job is applied at most once: its job_id is recorded in the same
    transaction as the balance change, and a job whose id is already
    recorded is skipped.
    """

    def __init__(
        self,
        db: DatabaseManager,
        queue: RedisWorkQueue,
        *,
        dequeue_timeout_seconds: float = DEFAULT_DEQUEUE_TIMEOUT_SECONDS,
    ) -> None:
        self._db = db
        self._queue = queue
        self._dequeue_timeout = dequeue_timeout_seconds
        self.stats = WorkerStats()

    async def apply(self, job: LedgerJob) -> bool:
        """Apply one job.

        Returns:
            True if the ticket balance changed, False if the job was skipped.
        """
        if job.name in (JOB_ADD_STAKE_BONUS, JOB_REMOVE_STAKE_BONUS):
            return await self._apply_stake(job)
        if job.name not in (JOB_ALLOCATE_TICKETS, JOB_REMOVE_TICKETS):
            logger.error("Unknown job type %s (job %s)", job.name, job.job_id)
            self.stats.jobs_skipped += 1
            return False

        delta = job.tickets if job.name == JOB_ALLOCATE_TICKETS else -job.tickets

        async with self._db.get_async_session() as session:
            applications = LedgerApplicationRepository(session)
            if not await applications.try_record(job.job_id, event_id=job.event_id, delta=delta):
                logger.info("Job %s already applied, skipping", job.job_id)
                self.stats.jobs_skipped += 1
                return False

            tickets = TicketRepository(session)
            if job.name == JOB_ALLOCATE_TICKETS:
                total = await tickets.increment(job.raffle_id, job.wallet_address, job.tickets)
                logger.info("Tickets allocated: %d total tickets for %s", total, job.wallet_address)
            else:
                total = await tickets.decrement_floor(job.raffle_id, job.wallet_address, job.tickets)
                logger.info("Tickets removed: %d remaining for %s", total, job.wallet_address)

            await TradeEventRepository(session).mark_processed(job.event_id)

        self.stats.jobs_applied += 1
        return True

    async def _apply_stake(self, job: LedgerJob) -> bool:
        """Add or remove a staking bonus.

        Bonuses only apply to wallets that already hold tickets, and stop once
        the raffle's winner has been selected.
        """
        adding = job.name == JOB_ADD_STAKE_BONUS
        kind = "stake" if adding else "unstake"

        async with self._db.get_async_session() as session:
            applications = LedgerApplicationRepository(session)
            delta = job.tickets if adding else -job.tickets
            if not await applications.try_record(job.job_id, event_id=job.event_id, delta=delta):
                logger.info("Job %s already applied, skipping", job.job_id)
                self.stats.jobs_skipped += 1
                return False

            stakes = StakeEventRepository(session)
            raffle = await RaffleRepository(session).get(job.raffle_id)
            tickets = TicketRepository(session)
            skip_reason = None
            if raffle is None:
                skip_reason = "raffle not found"
            elif raffle.status == RAFFLE_STATUS_WINNER_SELECTED:
                skip_reason = "winner already selected"
            elif not await tickets.has_balance(job.raffle_id, job.wallet_address):
                skip_reason = "wallet holds no tickets"

            if skip_reason is not None:
                logger.info("Ignoring %s event %s for %s: %s", kind, job.event_id, job.wallet_address, skip_reason)
                await stakes.mark_processed(job.event_id)
                self.stats.jobs_skipped += 1
                return False

            if adding:
                total = await tickets.increment(job.raffle_id, job.wallet_address, job.tickets)
                logger.info("Added %d bonus tickets for %s. New balance: %d", job.tickets, job.wallet_address, total)
            else:
                total = await tickets.decrement_floor(job.raffle_id, job.wallet_address, job.tickets)
                logger.info("Removed bonus tickets for %s. New balance: %d", job.wallet_address, total)

            await stakes.mark_processed(job.event_id)

        self.stats.jobs_applied += 1
        return True

    async def run_once(self) -> bool:
        """Wait for and apply the next job. Returns False if none arrived."""
        job = await self._queue.dequeue(ALL_QUEUES, timeout=self._dequeue_timeout)
        if job is None:
            return False
        try:
            await self.apply(job)
        except Exception as e:
            self.stats.jobs_failed += 1
            logger.error("Ticket job %s (%s) failed: %s", job.job_id, job.name, e, exc_info=True)
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("Ledger worker started")
        while not stop_event.is_set():
            try:
                await self.run_once()
            except WorkQueueError as e:
                logger.error("Ledger worker could not read jobs: %s", e)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=ERROR_BACKOFF_SECONDS)
                except TimeoutError:
                    pass
        logger.info("Ledger worker stopped")
