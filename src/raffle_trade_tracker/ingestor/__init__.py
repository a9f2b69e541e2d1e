"""Data ingestion layer - Trade sources and normalization for the raffle token."""

from raffle_trade_tracker.ingestor.blockberry_client import (
    BlockberryClient,
    BlockberryClientError,
    BlockberryTransientError,
)
from raffle_trade_tracker.ingestor.models import (
    ActiveRaffle,
    NormalizedTrade,
    SourcePage,
    TicketDelta,
    TradeSide,
)
from raffle_trade_tracker.ingestor.normalizer import TradeNormalizer
from raffle_trade_tracker.ingestor.sources import (
    SourceAdapter,
    SourceError,
    SourceNotConfiguredError,
    SourceUnavailableError,
)
from raffle_trade_tracker.ingestor.sui_client import SuiClient, SuiRPCError, SuiTransportError

__all__ = [
    "ActiveRaffle",
    "BlockberryClient",
    "BlockberryClientError",
    "BlockberryTransientError",
    "NormalizedTrade",
    "SourceAdapter",
    "SourceError",
    "SourceNotConfiguredError",
    "SourcePage",
    "SourceUnavailableError",
    "SuiClient",
    "SuiRPCError",
    "SuiTransportError",
    "TicketDelta",
    "TradeNormalizer",
    "TradeSide",
]
