"""Ledger publisher: records qualifying trades and stakes and enqueues ticket jobs.

Each trade is recorded once under its (side, event_key), each stake once
under its event_key. Only a newly created record produces a job, so
re-publishing the same event never changes a ticket balance twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from raffle_trade_tracker.ingestor.extraction import format_amount
from raffle_trade_tracker.ingestor.models import (
    ActiveRaffle,
    NormalizedStake,
    NormalizedTrade,
    StakeKind,
    TicketDelta,
    TradeSide,
)
from raffle_trade_tracker.ledger.queue import (
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
    StakeEventDTO,
    StakeEventRepository,
    TradeEventDTO,
    TradeEventRepository,
    WalletUserRepository,
)

logger = logging.getLogger(__name__)


class PublishOutcome(Enum):
    PUBLISHED = "published"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class ReconcileOutcome(Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    tickets_enqueued: int = 0
    recorded_tickets: int = 0


def job_name_for(side: TradeSide) -> str:
    return JOB_ALLOCATE_TICKETS if side == TradeSide.BUY else JOB_REMOVE_TICKETS


def stake_job_name_for(kind: StakeKind) -> str:
    return JOB_ADD_STAKE_BONUS if kind == StakeKind.STAKE else JOB_REMOVE_STAKE_BONUS


def _record_id(record: TradeEventDTO | StakeEventDTO) -> str:
    if record.id is None:
        raise RuntimeError(f"Event {record.event_key} has not been stored")
    return record.id


class LedgerPublisher:
    """Hands detected trades to the downstream ledger.

    Example:
        ```python
        publisher = LedgerPublisher(db, RedisWorkQueue(redis))
        outcome = await publisher.publish(trade, raffle, tickets=150, decimals=9)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        queue: RedisWorkQueue,
        *,
        dry_run: bool = False,
    ) -> None:
        """Initialize the publisher.

        Args:
            db: Database manager for the record store.
            queue: Work queue receiving ticket jobs.
            dry_run: Log trades instead of recording and enqueueing them.
        """
        self._db = db
        self._queue = queue
        self._dry_run = dry_run

    def _build_record(
        self, trade: NormalizedTrade, raffle: ActiveRaffle, tickets: int, decimals: int
    ) -> TradeEventDTO:
        return TradeEventDTO(
            raffle_id=raffle.raffle_id,
            side=trade.side.value,
            event_key=trade.event_key,
            tx_digest=trade.tx_digest,
            wallet_address=trade.wallet_address,
            token_amount=format_amount(trade.amount_raw, decimals),
            amount_raw=trade.amount_raw,
            decimals=decimals,
            ticket_count=tickets,
            source=trade.source,
            timestamp=trade.timestamp,
        )

    async def _enqueue(self, record: TradeEventDTO, side: TradeSide, tickets: int) -> LedgerJob:
        job = LedgerJob.create(
            job_name_for(side),
            event_id=_record_id(record),
            raffle_id=record.raffle_id,
            wallet_address=record.wallet_address,
            tickets=tickets,
        )
        await self._queue.enqueue(job)
        return job

    async def publish(
        self,
        trade: NormalizedTrade,
        raffle: ActiveRaffle,
        tickets: int,
        *,
        decimals: int,
    ) -> PublishOutcome:
        """Record a trade and enqueue its ticket job, once per event key.

        Returns:
            PUBLISHED for a new trade, DUPLICATE if already recorded,
            FAILED if the record store or queue could not be written.
        """
        if self._dry_run:
            delta = TicketDelta.for_trade(trade, raffle, tickets)
            logger.info(
                "[dry-run] %s %s: %s tokens by %s -> %+d tickets in raffle %s",
                trade.side.value,
                delta.source_event_key,
                format_amount(trade.amount_raw, decimals),
                delta.wallet_address,
                delta.tickets,
                delta.raffle_id,
            )
            return PublishOutcome.PUBLISHED

        try:
            async with self._db.get_async_session() as session:
                repo = TradeEventRepository(session)
                if await repo.find_by_key(trade.side.value, trade.event_key) is not None:
                    logger.debug("Trade %s already recorded", trade.event_key)
                    return PublishOutcome.DUPLICATE
                record = await repo.create(self._build_record(trade, raffle, tickets, decimals))
        except IntegrityError:
            logger.debug("Trade %s recorded concurrently", trade.event_key)
            return PublishOutcome.DUPLICATE
        except SQLAlchemyError as e:
            logger.error("Failed to record %s %s: %s", trade.side.value, trade.event_key, e)
            return PublishOutcome.FAILED

        try:
            job = await self._enqueue(record, trade.side, tickets)
        except WorkQueueError as e:
            logger.error("Recorded %s %s but could not enqueue it: %s", trade.side.value, trade.event_key, e)
            return PublishOutcome.FAILED

        logger.info(
            "%s %s: %s tokens by %s -> %d tickets (job %s)",
            trade.side.value.capitalize(),
            trade.event_key,
            record.token_amount,
            trade.wallet_address,
            tickets,
            job.job_id,
        )

        if trade.is_buy:
            await self._note_unlinked_wallet(trade.wallet_address)
        return PublishOutcome.PUBLISHED

    async def _note_unlinked_wallet(self, wallet_address: str) -> None:
        try:
            async with self._db.get_async_session() as session:
                linked = await WalletUserRepository(session).is_linked(wallet_address)
        except SQLAlchemyError as e:
            logger.debug("Wallet link lookup for %s failed: %s", wallet_address, e)
            return
        if not linked:
            logger.info("Buyer %s has no linked user yet", wallet_address)

    async def reconcile_sell(
        self,
        trade: NormalizedTrade,
        raffle: ActiveRaffle,
        tickets: int,
        *,
        decimals: int,
    ) -> ReconcileResult:
        """Bring a sell transaction's recorded removal up to `tickets`.

        Existing records are matched by transaction digest, so a sell the
        poller already recorded under its own event key is not removed
        twice. If their total is lower than `tickets` only the difference is
        enqueued; an equal or higher total is left alone.
        """
        try:
            async with self._db.get_async_session() as session:
                repo = TradeEventRepository(session)
                existing = await repo.find_by_digest(
                    TradeSide.SELL.value, trade.tx_digest, raffle_id=raffle.raffle_id
                )
                recorded = sum(r.ticket_count for r in existing)
                if not existing:
                    record = await repo.create(self._build_record(trade, raffle, tickets, decimals))
                    diff = tickets
                    outcome = ReconcileOutcome.CREATED
                elif recorded < tickets:
                    record = next((r for r in existing if r.event_key == trade.event_key), existing[0])
                    diff = tickets - recorded
                    await repo.update_ticket_count(_record_id(record), record.ticket_count + diff)
                    outcome = ReconcileOutcome.UPDATED
                else:
                    return ReconcileResult(ReconcileOutcome.UNCHANGED, 0, recorded)
        except SQLAlchemyError as e:
            logger.error("Failed to reconcile sell %s: %s", trade.event_key, e)
            return ReconcileResult(ReconcileOutcome.FAILED)

        try:
            await self._enqueue(record, TradeSide.SELL, diff)
        except WorkQueueError as e:
            logger.error("Reconciled sell %s but could not enqueue it: %s", trade.event_key, e)
            return ReconcileResult(ReconcileOutcome.FAILED, 0, tickets)

        logger.info("Sell %s reconciled: removing %d more tickets from %s", trade.tx_digest, diff, record.wallet_address)
        return ReconcileResult(outcome, diff, tickets)

    async def publish_stake(
        self,
        stake: NormalizedStake,
        raffle: ActiveRaffle,
        tickets: int,
        *,
        decimals: int,
    ) -> PublishOutcome:
        """Record a stake or unstake and enqueue its bonus job, once per event key."""
        if self._dry_run:
            logger.info(
                "[dry-run] %s %s: %s tokens by %s -> %s%d bonus tickets in raffle %s",
                stake.kind.value,
                stake.event_key,
                format_amount(stake.amount_raw, decimals),
                stake.wallet_address,
                "+" if stake.is_stake else "-",
                tickets,
                raffle.raffle_id,
            )
            return PublishOutcome.PUBLISHED

        try:
            async with self._db.get_async_session() as session:
                repo = StakeEventRepository(session)
                if await repo.find_by_key(stake.event_key) is not None:
                    logger.debug("Stake event %s already recorded", stake.event_key)
                    return PublishOutcome.DUPLICATE
                record = await repo.create(
                    StakeEventDTO(
                        raffle_id=raffle.raffle_id,
                        stake_type=stake.kind.value,
                        event_key=stake.event_key,
                        tx_digest=stake.tx_digest,
                        wallet_address=stake.wallet_address,
                        token_amount=format_amount(stake.amount_raw, decimals),
                        amount_raw=stake.amount_raw,
                        decimals=decimals,
                        ticket_count=tickets,
                        timestamp=stake.timestamp,
                        staking_pool=stake.staking_pool,
                        staking_account=stake.staking_account,
                    )
                )
        except IntegrityError:
            logger.debug("Stake event %s recorded concurrently", stake.event_key)
            return PublishOutcome.DUPLICATE
        except SQLAlchemyError as e:
            logger.error("Failed to record %s %s: %s", stake.kind.value, stake.event_key, e)
            return PublishOutcome.FAILED

        job = LedgerJob.create(
            stake_job_name_for(stake.kind),
            event_id=_record_id(record),
            raffle_id=record.raffle_id,
            wallet_address=record.wallet_address,
            tickets=tickets,
        )
        try:
            await self._queue.enqueue(job)
        except WorkQueueError as e:
            logger.error("Recorded %s %s but could not enqueue it: %s", stake.kind.value, stake.event_key, e)
            return PublishOutcome.FAILED

        logger.info(
            "%s event queued: %s, %s%d tickets (job %s)",
            stake.kind.value.capitalize(),
            stake.event_key,
            "+" if stake.is_stake else "-",
            tickets,
            job.job_id,
        )
        return PublishOutcome.PUBLISHED
