"""SQLAlchemy models for persistent storage.

This module defines the record store schema: raffles, detected trade
events, staking events, per-wallet ticket balances, applied ledger jobs
and linked wallets.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class RaffleModel(Base):
    """A raffle and the token whose trades earn its tickets."""

    __tablename__ = "raffles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    ca: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    started: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    minimum_purchase: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    tickets_per_token: Mapped[Decimal | None] = mapped_column(Numeric(20, 6), nullable=True)
    staking_bonus_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_raffles_status_end", "status", "end_time"),)


class TradeEventModel(Base):
    """A detected buy or sell, keyed for idempotent publication."""

    __tablename__ = "trade_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    raffle_id: Mapped[str] = mapped_column(String(36), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)
    event_key: Mapped[str] = mapped_column(String(300), nullable=False)
    tx_digest: Mapped[str] = mapped_column(String(100), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(100), nullable=False)

    # Human-readable amount; amount_raw keeps the exact base-unit integer.
    token_amount: Mapped[str] = mapped_column(String(80), nullable=False)
    amount_raw: Mapped[str] = mapped_column(String(80), nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False)
    ticket_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    source: Mapped[str] = mapped_column(String(30), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("side", "event_key", name="uq_trade_events_side_key"),
        Index("idx_trade_events_raffle_wallet", "raffle_id", "wallet_address"),
        Index("idx_trade_events_side_digest", "side", "tx_digest"),
    )


class StakeEventModel(Base):
    """A detected stake or unstake, keyed for idempotent publication."""

    __tablename__ = "stake_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    raffle_id: Mapped[str] = mapped_column(String(36), nullable=False)
    stake_type: Mapped[str] = mapped_column(String(10), nullable=False)
    event_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    tx_digest: Mapped[str] = mapped_column(String(100), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(100), nullable=False)
    token_amount: Mapped[str] = mapped_column(String(80), nullable=False)
    amount_raw: Mapped[str] = mapped_column(String(80), nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False)
    ticket_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    staking_pool: Mapped[str | None] = mapped_column(String(100), nullable=True)
    staking_account: Mapped[str | None] = mapped_column(String(100), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("idx_stake_events_raffle_wallet", "raffle_id", "wallet_address"),)


class TicketModel(Base):
    """Current ticket balance of one wallet in one raffle."""

    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    raffle_id: Mapped[str] = mapped_column(String(36), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(100), nullable=False)
    ticket_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("raffle_id", "wallet_address", name="uq_tickets_raffle_wallet"),
    )


class LedgerApplicationModel(Base):
    """A work-queue job whose ticket change has been applied."""

    __tablename__ = "ledger_applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    event_id: Mapped[str] = mapped_column(String(36), nullable=False)
    delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class WalletUserModel(Base):
    """Wallet linked to a chat user (read only here)."""

    __tablename__ = "wallet_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    telegram_user_id: Mapped[str] = mapped_column(String(40), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
