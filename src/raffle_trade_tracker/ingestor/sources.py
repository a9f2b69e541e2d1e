"""Source adapter contract shared by the indexer and native-chain clients."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from raffle_trade_tracker.ingestor.models import SourcePage

DEFAULT_COIN_DECIMALS = 9


class SourceError(Exception):
    """Base exception for trade source errors."""


class SourceUnavailableError(SourceError):
    """Raised for transport, rate-limit and upstream failures (not "no data")."""


class SourceNotConfiguredError(SourceError):
    """Raised when a source is used without the credentials it needs."""


@runtime_checkable
class SourceAdapter(Protocol):
    """A place trades can be fetched from."""

    name: str

    async def fetch_since(self, token_address: str, cursor: str | None = None) -> SourcePage:
        """Fetch the latest page of raw records for a token.

        Returns an empty page when there is nothing new. Raises
        SourceUnavailableError on transport or rate-limit failures.
        """
        ...


@runtime_checkable
class DecimalsResolver(Protocol):
    async def resolve_coin_decimals(self, coin_type: str) -> int: ...


@runtime_checkable
class SenderResolver(Protocol):
    async def resolve_transaction_sender(self, tx_digest: str) -> str | None: ...


@runtime_checkable
class NativeChainSource(SourceAdapter, DecimalsResolver, SenderResolver, Protocol):
    """Native chain access: transfer events plus the lookups they need."""


@runtime_checkable
class TransactionSource(DecimalsResolver, Protocol):
    async def get_transaction(
        self,
        tx_digest: str,
        *,
        show_input: bool = False,
        show_balance_changes: bool = False,
        show_effects: bool = False,
    ) -> dict[str, Any]: ...


@runtime_checkable
class EventSource(DecimalsResolver, Protocol):
    async def query_events(self, move_event_type: str) -> list[dict[str, Any]]: ...
