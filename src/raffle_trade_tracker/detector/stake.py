"""Staking bonus detector.

Watches the staking platform's stake and unstake events for the active
raffle's token. A stake earns a bonus worth a percentage of the tickets a
buy of the same size would earn; an unstake takes the same bonus back.
Seeding and deduplication follow the trade detectors.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from raffle_trade_tracker.detector.tickets import (
    DEFAULT_STAKING_BONUS_PERCENT,
    DEFAULT_TICKETS_PER_TOKEN,
    TicketRatio,
    compute_stake_bonus,
)
from raffle_trade_tracker.detector.watermark import (
    DEFAULT_SEEN_KEYS_KEEP,
    DEFAULT_SEEN_KEYS_MAX,
    DetectorPhase,
    WatermarkState,
)
from raffle_trade_tracker.ingestor.models import ActiveRaffle, NormalizedStake, StakeKind
from raffle_trade_tracker.ingestor.normalizer import TradeNormalizer, native_event_key
from raffle_trade_tracker.ingestor.sources import DEFAULT_COIN_DECIMALS, EventSource, SourceError
from raffle_trade_tracker.ledger.publisher import PublishOutcome

if TYPE_CHECKING:
    from raffle_trade_tracker.ledger.publisher import LedgerPublisher

logger = logging.getLogger(__name__)

_MOONBAGS_STAKE_MODULE = "0x8f70ad5db84e1a99b542f86ccfb1a932ca7ba010a2fa12a1504d839ff4c111c6::moonbags_stake"
MOONBAGS_STAKE_EVENT = f"{_MOONBAGS_STAKE_MODULE}::StakeEvent"
MOONBAGS_UNSTAKE_EVENT = f"{_MOONBAGS_STAKE_MODULE}::UnstakeEvent"

DEFAULT_STAKE_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_STAKE_TICK_TIMEOUT_SECONDS = 60.0


@dataclass
class StakeStats:
    ticks: int = 0
    fetch_failures: int = 0
    events_seen: int = 0
    stakes_published: int = 0
    duplicates_skipped: int = 0
    publish_failures: int = 0


class StakeDetector:
    """Turns staking events for the active raffle's token into bonus jobs.

    Example:
        ```python
        detector = StakeDetector(native=sui, publisher=publisher)
        await detector.activate(raffle)
        await detector.run(stop_event)
        ```
    """

    def __init__(
        self,
        *,
        native: EventSource,
        publisher: LedgerPublisher,
        stake_event_type: str = MOONBAGS_STAKE_EVENT,
        unstake_event_type: str = MOONBAGS_UNSTAKE_EVENT,
        default_bonus_percent: int = DEFAULT_STAKING_BONUS_PERCENT,
        poll_interval_seconds: float = DEFAULT_STAKE_POLL_INTERVAL_SECONDS,
        tick_timeout_seconds: float = DEFAULT_STAKE_TICK_TIMEOUT_SECONDS,
        seen_keys_max: int = DEFAULT_SEEN_KEYS_MAX,
        seen_keys_keep: int = DEFAULT_SEEN_KEYS_KEEP,
    ) -> None:
        """Initialize the detector.

        Args:
            native: Native chain client queried for staking events.
            publisher: Ledger publisher receiving stake records.
            stake_event_type: Move event type of a stake.
            unstake_event_type: Move event type of an unstake.
            default_bonus_percent: Bonus percentage for raffles that set none.
            poll_interval_seconds: Delay between ticks.
            tick_timeout_seconds: Upper bound for a single tick.
            seen_keys_max: Seen-key count that triggers compaction.
            seen_keys_keep: Seen keys retained after compaction.
        """
        self._native = native
        self._publisher = publisher
        self._event_types = {
            StakeKind.STAKE: stake_event_type,
            StakeKind.UNSTAKE: unstake_event_type,
        }
        self._default_bonus_percent = default_bonus_percent
        self._poll_interval = poll_interval_seconds
        self._tick_timeout = tick_timeout_seconds
        self._seen_keys_max = seen_keys_max
        self._seen_keys_keep = seen_keys_keep

        self._raffle: ActiveRaffle | None = None
        self._normalizer: TradeNormalizer | None = None
        self.state = self._new_state()
        self.stats = StakeStats()
        self._lock = asyncio.Lock()

    def _new_state(self) -> WatermarkState:
        return WatermarkState(max_seen_keys=self._seen_keys_max, keep_seen_keys=self._seen_keys_keep)

    @property
    def raffle(self) -> ActiveRaffle | None:
        return self._raffle

    @property
    def phase(self) -> DetectorPhase:
        return self.state.phase

    async def update_raffle(self, raffle: ActiveRaffle | None) -> None:
        """Apply a freshly read raffle descriptor, waiting for any in-flight tick."""
        async with self._lock:
            if raffle is None:
                if self._raffle is not None:
                    logger.info("Deactivating stake detector for raffle %s", self._raffle.raffle_id)
                    self._raffle = None
                    self._normalizer = None
                    self.state = self._new_state()
                return

            if self._raffle is None or self._raffle.identity() != raffle.identity():
                await self._activate(raffle)
                return

            # Same raffle; pick up a changed bonus percentage or ratio
            self._raffle = raffle

    async def activate(self, raffle: ActiveRaffle) -> None:
        async with self._lock:
            await self._activate(raffle)

    async def _activate(self, raffle: ActiveRaffle) -> None:
        logger.info("Activating stake detector for raffle %s (token %s)", raffle.raffle_id, raffle.token_address)
        normalizer = TradeNormalizer(raffle.token_address)
        self._raffle = raffle
        self._normalizer = normalizer
        self.state = self._new_state()
        self.state.phase = DetectorPhase.INITIALIZING
        await self._seed(normalizer)
        self.state.phase = DetectorPhase.STEADY

    async def _seed(self, normalizer: TradeNormalizer) -> None:
        """Remember current staking history for both event types without emitting it."""
        stakes: list[NormalizedStake] = []
        keys: list[str] = []
        fetched = False
        for kind, event_type in self._event_types.items():
            try:
                events = await self._native.query_events(event_type)
            except SourceError as e:
                logger.error("Seeding fetch for %s events failed: %s", kind.value, e)
                continue
            fetched = True
            stakes.extend(normalizer.normalize_stakes(events, kind))
            keys.extend(key for key in (native_event_key(e) for e in events) if key)

        if fetched:
            self.state.seed(stakes, keys=keys)
        else:
            self.state.seed_empty()
        logger.debug(
            "Seeded stake detector with %d keys, watermark %d",
            len(self.state.seen_event_keys),
            self.state.last_processed_ms,
        )

    async def tick(self) -> int:
        """Run one poll cycle.

        Returns:
            Number of stake events handed to the ledger this tick.
        """
        async with self._lock:
            return await self._tick()

    async def _tick(self) -> int:
        raffle = self._raffle
        normalizer = self._normalizer
        if raffle is None or normalizer is None or self.state.phase != DetectorPhase.STEADY:
            return 0

        self.stats.ticks += 1
        stakes: list[NormalizedStake] = []
        for kind, event_type in self._event_types.items():
            try:
                events = await self._native.query_events(event_type)
            except SourceError as e:
                self.stats.fetch_failures += 1
                logger.error("Failed to query %s events: %s", kind.value, e)
                continue
            stakes.extend(normalizer.normalize_stakes(events, kind))

        published = await self._process(raffle, stakes)
        self.state.compact()
        return published

    async def _process(self, raffle: ActiveRaffle, stakes: Sequence[NormalizedStake]) -> int:
        published = 0
        for stake in sorted(stakes, key=lambda s: s.timestamp_ms):
            self.stats.events_seen += 1
            if self.state.skip_reason(stake) is not None:
                self.stats.duplicates_skipped += 1
                continue

            decimals = await self._resolve_decimals(raffle.token_address)
            tickets = self._compute_bonus(stake, raffle, decimals)

            try:
                outcome = await self._publisher.publish_stake(stake, raffle, tickets, decimals=decimals)
            except Exception as e:
                logger.error("Failed to publish %s %s: %s", stake.kind.value, stake.event_key, e)
                outcome = PublishOutcome.FAILED

            if outcome is PublishOutcome.PUBLISHED:
                published += 1
                self.stats.stakes_published += 1
            elif outcome is PublishOutcome.DUPLICATE:
                self.stats.duplicates_skipped += 1
            else:
                self.stats.publish_failures += 1
            self.state.mark_processed(stake)
        return published

    async def _resolve_decimals(self, coin_type: str) -> int:
        cached = self.state.decimals_cache.get(coin_type)
        if cached is not None:
            return cached
        try:
            decimals = await self._native.resolve_coin_decimals(coin_type)
        except Exception as e:
            logger.warning("Decimals lookup for %s failed, defaulting to %d: %s", coin_type, DEFAULT_COIN_DECIMALS, e)
            decimals = DEFAULT_COIN_DECIMALS
        self.state.decimals_cache[coin_type] = decimals
        return decimals

    def _compute_bonus(self, stake: NormalizedStake, raffle: ActiveRaffle, decimals: int) -> int:
        ratio = TicketRatio.from_value(raffle.tickets_per_token or DEFAULT_TICKETS_PER_TOKEN)
        percent = raffle.staking_bonus_percent
        if percent is None:
            percent = self._default_bonus_percent
        return compute_stake_bonus(stake.amount_raw, decimals, ratio, percent)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until stop_event is set."""
        logger.info("Stake detector loop started")
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(self.tick(), timeout=self._tick_timeout)
            except TimeoutError:
                logger.warning("Stake detector tick exceeded %.0fs", self._tick_timeout)
            except Exception as e:
                logger.error("Error in stake detector tick: %s", e, exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass
        logger.info("Stake detector loop stopped")
