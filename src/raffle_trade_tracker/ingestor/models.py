"""Data models for the ingestor module."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

# Source-specific payload as returned by one upstream source. No fixed schema.
RawRecord = Mapping[str, Any]


class TradeSide(str, Enum):
    """Direction of a trade relative to the monitored token."""

    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class SourcePage:
    """One page of raw records from a source, newest-first as delivered."""

    records: tuple[RawRecord, ...]
    next_cursor: str | None = None

    @classmethod
    def empty(cls) -> SourcePage:
        return cls(records=())

    @classmethod
    def of(cls, records: Sequence[RawRecord], next_cursor: str | None = None) -> SourcePage:
        return cls(records=tuple(records), next_cursor=next_cursor)

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class ActiveRaffle:
    """Immutable snapshot of the raffle whose token is being monitored."""

    raffle_id: str
    token_address: str
    minimum_purchase: Decimal | None = None
    tickets_per_token: Decimal | None = None
    started: bool = True
    staking_bonus_percent: int | None = None

    def identity(self) -> tuple[str, str]:
        """Fields whose change forces a cold start of the detectors."""
        return (self.raffle_id, self.token_address)


@dataclass(frozen=True)
class NormalizedTrade:
    """Canonical representation of a buy or sell, independent of its source.

    Attributes:
        tx_digest: Source transaction identifier.
        event_key: Deduplication identity, unique per token-raffle pair.
        timestamp_ms: Execution time in epoch milliseconds.
        wallet_address: Counterparty wallet (buyer or seller).
        amount_raw: Base-unit integer amount as a decimal string.
        coin_type: Coin type of the monitored token.
        side: Buy or sell.
        source: Name of the adapter that produced the record.
        decimals: Token decimals if the source reported them.
        recipient: Transfer recipient, when known.
    """

    tx_digest: str
    event_key: str
    timestamp_ms: int
    wallet_address: str
    amount_raw: str
    coin_type: str
    side: TradeSide
    source: str
    decimals: int | None = None
    recipient: str | None = None

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp_ms / 1000.0, tz=UTC)

    @property
    def is_buy(self) -> bool:
        return self.side == TradeSide.BUY

    @property
    def is_sell(self) -> bool:
        return self.side == TradeSide.SELL

    @property
    def is_self_transfer(self) -> bool:
        """True when the coins never left the wallet (e.g. coin consolidation)."""
        if not self.is_sell or self.recipient is None:
            return False
        return self.recipient.lower() == self.wallet_address.lower()

    @property
    def sender_pending(self) -> bool:
        """True for native transfers whose sender still has to be looked up."""
        return not self.wallet_address

    def with_wallet(self, wallet_address: str) -> NormalizedTrade:
        return replace(self, wallet_address=wallet_address)


@dataclass(frozen=True)
class TicketDelta:
    """Signed change to a wallet's ticket count caused by one trade."""

    raffle_id: str
    wallet_address: str
    tickets: int
    source_event_key: str

    @classmethod
    def for_trade(cls, trade: NormalizedTrade, raffle: ActiveRaffle, tickets: int) -> TicketDelta:
        signed = tickets if trade.is_buy else -tickets
        return cls(
            raffle_id=raffle.raffle_id,
            wallet_address=trade.wallet_address,
            tickets=signed,
            source_event_key=trade.event_key,
        )


class StakeKind(str, Enum):
    """Whether a staking event adds or removes a bonus."""

    STAKE = "stake"
    UNSTAKE = "unstake"


@dataclass(frozen=True)
class NormalizedStake:
    """A stake or unstake of the monitored token on the staking platform."""

    tx_digest: str
    event_key: str
    timestamp_ms: int
    wallet_address: str
    amount_raw: str
    kind: StakeKind
    staking_pool: str | None = None
    staking_account: str | None = None

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp_ms / 1000.0, tz=UTC)

    @property
    def is_stake(self) -> bool:
        return self.kind == StakeKind.STAKE
