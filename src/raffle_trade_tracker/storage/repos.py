"""Repository pattern implementations for data access.

This module provides data access for raffles, detected trade and stake
events, ticket balances, applied ledger jobs and linked wallets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from raffle_trade_tracker.ingestor.models import ActiveRaffle
from raffle_trade_tracker.storage.models import (
    LedgerApplicationModel,
    RaffleModel,
    StakeEventModel,
    TicketModel,
    TradeEventModel,
    WalletUserModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

RAFFLE_STATUS_ACTIVE = "active"
RAFFLE_STATUS_WINNER_SELECTED = "winner_selected"


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Return a dialect-specific INSERT supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class RaffleDTO:
    """Data transfer object for raffles."""

    id: str
    ca: str
    status: str
    started: bool
    end_time: datetime
    minimum_purchase: Decimal | None = None
    tickets_per_token: Decimal | None = None
    staking_bonus_percent: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: RaffleModel) -> RaffleDTO:
        return cls(
            id=model.id,
            ca=model.ca,
            status=model.status,
            started=model.started,
            end_time=model.end_time,
            minimum_purchase=model.minimum_purchase,
            tickets_per_token=model.tickets_per_token,
            staking_bonus_percent=model.staking_bonus_percent,
            created_at=model.created_at,
        )

    def to_active(self) -> ActiveRaffle:
        return ActiveRaffle(
            raffle_id=self.id,
            token_address=self.ca,
            minimum_purchase=self.minimum_purchase,
            tickets_per_token=self.tickets_per_token,
            started=self.started,
            staking_bonus_percent=self.staking_bonus_percent,
        )


class RaffleRepository:
    """Repository for raffle descriptors."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_active(
        self,
        *,
        require_started: bool = False,
        now: datetime | None = None,
    ) -> RaffleDTO | None:
        """Get the newest active raffle that has not ended.

        Args:
            require_started: Also require the raffle to have been started.
            now: Reference time (defaults to the current UTC time).

        Returns:
            RaffleDTO or None if no raffle qualifies.
        """
        reference = now or datetime.now(UTC)
        stmt = select(RaffleModel).where(
            RaffleModel.status == RAFFLE_STATUS_ACTIVE,
            RaffleModel.end_time > reference,
        )
        if require_started:
            stmt = stmt.where(RaffleModel.started.is_(True))
        stmt = stmt.order_by(RaffleModel.created_at.desc()).limit(1)

        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return RaffleDTO.from_model(model) if model else None

    async def get(self, raffle_id: str) -> RaffleDTO | None:
        model = await self.session.get(RaffleModel, raffle_id)
        return RaffleDTO.from_model(model) if model else None

    async def create(
        self,
        *,
        ca: str,
        end_time: datetime,
        started: bool = True,
        status: str = RAFFLE_STATUS_ACTIVE,
        minimum_purchase: Decimal | None = None,
        tickets_per_token: Decimal | None = None,
        staking_bonus_percent: int | None = None,
        created_at: datetime | None = None,
    ) -> RaffleDTO:
        model = RaffleModel(
            ca=ca,
            end_time=end_time,
            started=started,
            status=status,
            minimum_purchase=minimum_purchase,
            tickets_per_token=tickets_per_token,
            staking_bonus_percent=staking_bonus_percent,
            created_at=created_at or datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return RaffleDTO.from_model(model)


@dataclass
class TradeEventDTO:
    """Data transfer object for detected trade events."""

    raffle_id: str
    side: str
    event_key: str
    tx_digest: str
    wallet_address: str
    token_amount: str
    amount_raw: str
    decimals: int
    ticket_count: int
    source: str
    timestamp: datetime
    processed: bool = False
    id: str | None = None

    @classmethod
    def from_model(cls, model: TradeEventModel) -> TradeEventDTO:
        return cls(
            id=model.id,
            raffle_id=model.raffle_id,
            side=model.side,
            event_key=model.event_key,
            tx_digest=model.tx_digest,
            wallet_address=model.wallet_address,
            token_amount=model.token_amount,
            amount_raw=model.amount_raw,
            decimals=model.decimals,
            ticket_count=model.ticket_count,
            source=model.source,
            timestamp=model.timestamp,
            processed=model.processed,
        )


class TradeEventRepository:
    """Repository for detected trade events (the idempotency record)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_by_key(self, side: str, event_key: str) -> TradeEventDTO | None:
        result = await self.session.execute(
            select(TradeEventModel).where(
                TradeEventModel.side == side,
                TradeEventModel.event_key == event_key,
            )
        )
        model = result.scalar_one_or_none()
        return TradeEventDTO.from_model(model) if model else None

    async def find_by_digest(self, side: str, tx_digest: str, *, raffle_id: str | None = None) -> list[TradeEventDTO]:
        """All records of one transaction, whatever source keyed them."""
        stmt = select(TradeEventModel).where(
            TradeEventModel.side == side,
            TradeEventModel.tx_digest == tx_digest,
        )
        if raffle_id is not None:
            stmt = stmt.where(TradeEventModel.raffle_id == raffle_id)
        result = await self.session.execute(stmt.order_by(TradeEventModel.created_at))
        return [TradeEventDTO.from_model(m) for m in result.scalars().all()]

    async def get(self, event_id: str) -> TradeEventDTO | None:
        model = await self.session.get(TradeEventModel, event_id)
        return TradeEventDTO.from_model(model) if model else None

    async def create(self, dto: TradeEventDTO) -> TradeEventDTO:
        """Insert a new trade event.

        Raises:
            sqlalchemy.exc.IntegrityError: If (side, event_key) already exists.
        """
        model = TradeEventModel(
            raffle_id=dto.raffle_id,
            side=dto.side,
            event_key=dto.event_key,
            tx_digest=dto.tx_digest,
            wallet_address=dto.wallet_address,
            token_amount=dto.token_amount,
            amount_raw=dto.amount_raw,
            decimals=dto.decimals,
            ticket_count=dto.ticket_count,
            source=dto.source,
            timestamp=dto.timestamp,
            processed=dto.processed,
        )
        self.session.add(model)
        await self.session.flush()
        return TradeEventDTO.from_model(model)

    async def update_ticket_count(self, event_id: str, ticket_count: int) -> None:
        await self.session.execute(
            update(TradeEventModel)
            .where(TradeEventModel.id == event_id)
            .values(ticket_count=ticket_count, updated_at=datetime.now(UTC))
        )

    async def mark_processed(self, event_id: str) -> None:
        await self.session.execute(
            update(TradeEventModel)
            .where(TradeEventModel.id == event_id)
            .values(processed=True, updated_at=datetime.now(UTC))
        )

    async def count_unprocessed(self) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(TradeEventModel).where(TradeEventModel.processed.is_(False))
        )
        return int(result.scalar_one())


@dataclass
class StakeEventDTO:
    """Data transfer object for detected staking events."""

    raffle_id: str
    stake_type: str
    event_key: str
    tx_digest: str
    wallet_address: str
    token_amount: str
    amount_raw: str
    decimals: int
    ticket_count: int
    timestamp: datetime
    staking_pool: str | None = None
    staking_account: str | None = None
    processed: bool = False
    id: str | None = None

    @classmethod
    def from_model(cls, model: StakeEventModel) -> StakeEventDTO:
        return cls(
            id=model.id,
            raffle_id=model.raffle_id,
            stake_type=model.stake_type,
            event_key=model.event_key,
            tx_digest=model.tx_digest,
            wallet_address=model.wallet_address,
            token_amount=model.token_amount,
            amount_raw=model.amount_raw,
            decimals=model.decimals,
            ticket_count=model.ticket_count,
            timestamp=model.timestamp,
            staking_pool=model.staking_pool,
            staking_account=model.staking_account,
            processed=model.processed,
        )


class StakeEventRepository:
    """Repository for detected stake and unstake events."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_by_key(self, event_key: str) -> StakeEventDTO | None:
        result = await self.session.execute(select(StakeEventModel).where(StakeEventModel.event_key == event_key))
        model = result.scalar_one_or_none()
        return StakeEventDTO.from_model(model) if model else None

    async def get(self, event_id: str) -> StakeEventDTO | None:
        model = await self.session.get(StakeEventModel, event_id)
        return StakeEventDTO.from_model(model) if model else None

    async def create(self, dto: StakeEventDTO) -> StakeEventDTO:
        """Insert a new stake event.

        Raises:
            sqlalchemy.exc.IntegrityError: If event_key already exists.
        """
        model = StakeEventModel(
            raffle_id=dto.raffle_id,
            stake_type=dto.stake_type,
            event_key=dto.event_key,
            tx_digest=dto.tx_digest,
            wallet_address=dto.wallet_address,
            token_amount=dto.token_amount,
            amount_raw=dto.amount_raw,
            decimals=dto.decimals,
            ticket_count=dto.ticket_count,
            staking_pool=dto.staking_pool,
            staking_account=dto.staking_account,
            timestamp=dto.timestamp,
            processed=dto.processed,
        )
        self.session.add(model)
        await self.session.flush()
        return StakeEventDTO.from_model(model)

    async def mark_processed(self, event_id: str) -> None:
        await self.session.execute(
            update(StakeEventModel)
            .where(StakeEventModel.id == event_id)
            .values(processed=True, updated_at=datetime.now(UTC))
        )


class TicketRepository:
    """Repository for per-wallet ticket balances."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, raffle_id: str, wallet_address: str) -> int:
        result = await self.session.execute(
            select(TicketModel.ticket_count).where(
                TicketModel.raffle_id == raffle_id,
                TicketModel.wallet_address == wallet_address,
            )
        )
        count = result.scalar_one_or_none()
        return int(count) if count is not None else 0

    async def has_balance(self, raffle_id: str, wallet_address: str) -> bool:
        result = await self.session.execute(
            select(TicketModel.id).where(
                TicketModel.raffle_id == raffle_id,
                TicketModel.wallet_address == wallet_address,
            )
        )
        return result.scalar_one_or_none() is not None

    async def increment(self, raffle_id: str, wallet_address: str, tickets: int) -> int:
        """Add tickets, creating the balance row if needed. Returns the new count."""
        now = datetime.now(UTC)
        stmt = _dialect_insert(self.session, TicketModel).values(
            raffle_id=raffle_id,
            wallet_address=wallet_address,
            ticket_count=tickets,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["raffle_id", "wallet_address"],
            set_={
                "ticket_count": TicketModel.ticket_count + stmt.excluded.ticket_count,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return await self.get(raffle_id, wallet_address)

    async def decrement_floor(self, raffle_id: str, wallet_address: str, tickets: int) -> int:
        """Remove tickets without going below zero. Returns the new count."""
        await self.session.execute(
            update(TicketModel)
            .where(
                TicketModel.raffle_id == raffle_id,
                TicketModel.wallet_address == wallet_address,
            )
            .values(
                ticket_count=sa.case(
                    (TicketModel.ticket_count > tickets, TicketModel.ticket_count - tickets),
                    else_=0,
                ),
                updated_at=datetime.now(UTC),
            )
        )
        await self.session.flush()
        return await self.get(raffle_id, wallet_address)


class LedgerApplicationRepository:
    """Repository recording which work-queue jobs have been applied."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def try_record(self, job_id: str, *, event_id: str, delta: int) -> bool:
        """Record a job as applied.

        Returns:
            True if this is the first application of job_id, False if it was
            already recorded.
        """
        stmt = _dialect_insert(self.session, LedgerApplicationModel).values(
            job_id=job_id,
            event_id=event_id,
            delta=delta,
            applied_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["job_id"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def is_applied(self, job_id: str) -> bool:
        result = await self.session.execute(
            select(LedgerApplicationModel.id).where(LedgerApplicationModel.job_id == job_id)
        )
        return result.scalar_one_or_none() is not None


class WalletUserRepository:
    """Read-only access to wallets linked to chat users."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def is_linked(self, wallet_address: str) -> bool:
        result = await self.session.execute(
            select(WalletUserModel.id).where(
                func.lower(WalletUserModel.wallet_address) == wallet_address.lower()
            )
        )
        return result.scalar_one_or_none() is not None

    async def link(self, wallet_address: str, telegram_user_id: str) -> None:
        self.session.add(WalletUserModel(wallet_address=wallet_address, telegram_user_id=telegram_user_id))
        await self.session.flush()
