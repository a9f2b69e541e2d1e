"""Per-detector watermark and dedup state."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from raffle_trade_tracker.ingestor.extraction import now_ms
from raffle_trade_tracker.ingestor.models import NormalizedStake, NormalizedTrade

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_SEEN_KEYS_MAX = 200
DEFAULT_SEEN_KEYS_KEEP = 100


class DetectorPhase(Enum):
    STOPPED = "stopped"
    INITIALIZING = "initializing"
    STEADY = "steady"


# Anything with an event_key and a timestamp_ms
KeyedEvent = NormalizedTrade | NormalizedStake


class SkipReason(Enum):
    DUPLICATE = "duplicate"
    BEFORE_WATERMARK = "before_watermark"


@dataclass
class WatermarkState:
    """Where a detector has got to for the active raffle.

    seen_event_keys is a dict used as an insertion-ordered set so that
    compaction can keep the most recently remembered keys.
    """

    last_processed_ms: int = 0
    seen_event_keys: dict[str, None] = field(default_factory=dict)
    cursor: str | None = None
    decimals_cache: dict[str, int] = field(default_factory=dict)
    phase: DetectorPhase = DetectorPhase.STOPPED
    max_seen_keys: int = DEFAULT_SEEN_KEYS_MAX
    keep_seen_keys: int = DEFAULT_SEEN_KEYS_KEEP

    @property
    def is_steady(self) -> bool:
        return self.phase == DetectorPhase.STEADY

    def has_seen(self, event_key: str) -> bool:
        return event_key in self.seen_event_keys

    def remember(self, event_key: str) -> None:
        self.seen_event_keys[event_key] = None

    def skip_reason(self, trade: KeyedEvent) -> SkipReason | None:
        """Classify a candidate trade. Remembers keys of stale trades."""
        if self.has_seen(trade.event_key):
            return SkipReason.DUPLICATE
        if trade.timestamp_ms <= self.last_processed_ms:
            self.remember(trade.event_key)
            return SkipReason.BEFORE_WATERMARK
        return None

    def mark_processed(self, trade: KeyedEvent) -> None:
        self.remember(trade.event_key)
        self.last_processed_ms = max(self.last_processed_ms, trade.timestamp_ms)

    def seed(self, trades: Iterable[KeyedEvent], *, keys: Iterable[str] = ()) -> None:
        """Record existing history without emitting anything.

        The watermark is set to the newest timestamp seen, or to now when
        there is no history.
        """
        latest = 0
        for trade in trades:
            self.remember(trade.event_key)
            latest = max(latest, trade.timestamp_ms)
        for key in keys:
            self.remember(key)
        self.last_processed_ms = max(self.last_processed_ms, latest or now_ms())

    def seed_empty(self) -> None:
        self.last_processed_ms = max(self.last_processed_ms, now_ms())

    def compact(self) -> None:
        if len(self.seen_event_keys) <= self.max_seen_keys:
            return
        recent = list(self.seen_event_keys)[-self.keep_seen_keys :]
        logger.debug("Compacting seen keys from %d to %d", len(self.seen_event_keys), len(recent))
        self.seen_event_keys = dict.fromkeys(recent)

    def reset(self) -> None:
        """Forget keys, watermark, cursor and decimals (raffle or source change)."""
        self.last_processed_ms = 0
        self.seen_event_keys = {}
        self.cursor = None
        self.decimals_cache = {}
        self.phase = DetectorPhase.INITIALIZING
