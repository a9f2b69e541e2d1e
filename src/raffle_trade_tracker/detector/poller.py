"""Incremental poll cycle for one trade side (buys or sells).

This module provides the TradeDetector class that, for the active raffle:
- seeds its watermark from the current history without emitting anything
- polls the chosen source each tick and processes only new trades
- converts qualifying trades into ticket counts and hands them to the ledger
- fails over from the indexer to native chain events and back
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from raffle_trade_tracker.detector.failover import (
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_RECOVERY_PROBABILITY,
    FailoverController,
    SourceChoice,
)
from raffle_trade_tracker.detector.tickets import (
    DEFAULT_TICKETS_PER_TOKEN,
    TicketRatio,
    compute_ticket_delta,
)
from raffle_trade_tracker.detector.watermark import (
    DEFAULT_SEEN_KEYS_KEEP,
    DEFAULT_SEEN_KEYS_MAX,
    DetectorPhase,
    WatermarkState,
)
from raffle_trade_tracker.ingestor.models import (
    ActiveRaffle,
    NormalizedTrade,
    SourcePage,
    TradeSide,
)
from raffle_trade_tracker.ingestor.normalizer import TradeNormalizer, native_event_key
from raffle_trade_tracker.ingestor.sources import (
    DEFAULT_COIN_DECIMALS,
    NativeChainSource,
    SourceAdapter,
    SourceError,
)
from raffle_trade_tracker.ledger.publisher import PublishOutcome

if TYPE_CHECKING:
    from raffle_trade_tracker.ledger.publisher import LedgerPublisher

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_TICK_TIMEOUT_SECONDS = 60.0


@dataclass
class DetectorStats:
    """Counters for one detector instance."""

    ticks: int = 0
    fetch_failures: int = 0
    trades_seen: int = 0
    trades_published: int = 0
    duplicates_skipped: int = 0
    publish_failures: int = 0


class TradeDetector:
    """Polls one side of the market for the active raffle's token.

    A detector is STOPPED until a raffle is activated. Activation resets all
    state and seeds it from a single fetch (INITIALIZING); only then does it
    process new trades (STEADY). Changing raffle id or token address forces a
    fresh activation.

    Example:
        ```python
        detector = TradeDetector(
            TradeSide.BUY,
            indexer=blockberry,
            native=sui,
            publisher=publisher,
        )
        await detector.activate(raffle)
        await detector.run(stop_event)
        ```
    """

    def __init__(
        self,
        side: TradeSide,
        *,
        indexer: SourceAdapter | None,
        native: NativeChainSource,
        publisher: LedgerPublisher,
        indexer_configured: bool = True,
        tickets_per_token: Decimal = DEFAULT_TICKETS_PER_TOKEN,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        tick_timeout_seconds: float = DEFAULT_TICK_TIMEOUT_SECONDS,
        failover_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_probability: float = DEFAULT_RECOVERY_PROBABILITY,
        seen_keys_max: int = DEFAULT_SEEN_KEYS_MAX,
        seen_keys_keep: int = DEFAULT_SEEN_KEYS_KEEP,
        rng: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            side: Which trades this detector emits.
            indexer: Indexer source adapter, or None to use native events only.
            native: Native chain client (events, decimals, transaction senders).
            publisher: Ledger publisher receiving qualifying trades.
            indexer_configured: False when the indexer has no credentials.
            tickets_per_token: Buy-side ratio (sells use the raffle's own ratio).
            poll_interval_seconds: Delay between ticks.
            tick_timeout_seconds: Upper bound for a single tick.
            failover_threshold: Consecutive indexer failures before fallback.
            recovery_probability: Chance per tick of retrying the indexer in fallback.
            seen_keys_max: Seen-key count that triggers compaction.
            seen_keys_keep: Seen keys retained after compaction.
            rng: Random source for recovery attempts (tests inject one).
        """
        self.side = side
        self._native = native
        self._publisher = publisher
        self._buy_ratio = TicketRatio.from_value(tickets_per_token)
        self._poll_interval = poll_interval_seconds
        self._tick_timeout = tick_timeout_seconds
        self._seen_keys_max = seen_keys_max
        self._seen_keys_keep = seen_keys_keep

        failover_kwargs = {"rng": rng} if rng is not None else {}
        self.failover = FailoverController(
            indexer,
            native,
            indexer_configured=indexer_configured,
            threshold=failover_threshold,
            recovery_probability=recovery_probability,
            **failover_kwargs,
        )

        self._raffle: ActiveRaffle | None = None
        self._normalizer: TradeNormalizer | None = None
        self.state = self._new_state()
        self.stats = DetectorStats()
        # Held by ticks and raffle changes so neither sees the other's half-built state
        self._lock = asyncio.Lock()

        if not self.failover.indexer_enabled:
            logger.warning("Indexer not configured; %s detector will use native chain events only", side.value)

    def _new_state(self) -> WatermarkState:
        return WatermarkState(max_seen_keys=self._seen_keys_max, keep_seen_keys=self._seen_keys_keep)

    @property
    def raffle(self) -> ActiveRaffle | None:
        return self._raffle

    @property
    def phase(self) -> DetectorPhase:
        return self.state.phase

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def update_raffle(self, raffle: ActiveRaffle | None) -> None:
        """Apply a freshly read raffle descriptor.

        Waits for any in-flight tick, so a raffle change never lands between
        a tick's fetch and its cursor update.
        """
        async with self._lock:
            if raffle is None:
                if self._raffle is not None:
                    self._deactivate()
                return

            if self._raffle is None or self._raffle.identity() != raffle.identity():
                await self._activate(raffle)
                return

            # Same raffle; pick up edits such as minimum purchase or ratio
            self._raffle = raffle

    async def activate(self, raffle: ActiveRaffle) -> None:
        """Start monitoring a raffle from scratch."""
        async with self._lock:
            await self._activate(raffle)

    async def _activate(self, raffle: ActiveRaffle) -> None:
        logger.info(
            "Activating %s detector for raffle %s (token %s)",
            self.side.value,
            raffle.raffle_id,
            raffle.token_address,
        )
        normalizer = TradeNormalizer(raffle.token_address)
        self._raffle = raffle
        self._normalizer = normalizer
        self.failover.reset()
        self.state = self._new_state()
        self.state.phase = DetectorPhase.INITIALIZING
        await self._seed(raffle, normalizer, self.failover.choose())
        self.state.phase = DetectorPhase.STEADY

    def _deactivate(self) -> None:
        if self._raffle is not None:
            logger.info("Deactivating %s detector for raffle %s", self.side.value, self._raffle.raffle_id)
        self._raffle = None
        self._normalizer = None
        self.state = self._new_state()

    # ------------------------------------------------------------------
    # Fetching and normalization
    # ------------------------------------------------------------------

    async def _fetch(self, raffle: ActiveRaffle, choice: SourceChoice, *, seeding: bool) -> SourcePage:
        adapter = self.failover.adapter_for(choice)
        cursor = None if seeding or choice is SourceChoice.NATIVE else self.state.cursor
        return await adapter.fetch_since(raffle.token_address, cursor)

    def _normalize(self, normalizer: TradeNormalizer, choice: SourceChoice, page: SourcePage) -> list[NormalizedTrade]:
        if choice is SourceChoice.NATIVE:
            return normalizer.normalize_native(page.records, self.side, source=self._native.name)
        indexer_name = getattr(self.failover.indexer, "name", "indexer")
        return normalizer.normalize_indexer(page.records, self.side, source=indexer_name)

    def _seed_from_page(self, normalizer: TradeNormalizer, choice: SourceChoice, page: SourcePage) -> None:
        trades = self._normalize(normalizer, choice, page)
        keys: list[str] = []
        if choice is SourceChoice.NATIVE:
            keys = [key for key in (native_event_key(e) for e in page.records) if key]
        self.state.seed(trades, keys=keys)
        if choice is not SourceChoice.NATIVE and page.next_cursor:
            self.state.cursor = page.next_cursor
        logger.debug(
            "Seeded %s detector with %d keys, watermark %d",
            self.side.value,
            len(self.state.seen_event_keys),
            self.state.last_processed_ms,
        )

    async def _seed(self, raffle: ActiveRaffle, normalizer: TradeNormalizer, choice: SourceChoice) -> bool:
        """Seed state from one fetch. Falls back to "now" if the fetch fails."""
        try:
            page = await self._fetch(raffle, choice, seeding=True)
        except SourceError as e:
            logger.error("Seeding fetch for %s detector failed: %s", self.side.value, e)
            self.state.seed_empty()
            if choice is not SourceChoice.NATIVE:
                self.failover.record_failure(choice, e)
            return False

        if choice is not SourceChoice.NATIVE:
            self.failover.record_success(choice)
        self._seed_from_page(normalizer, choice, page)
        return True

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def tick(self) -> int:
        """Run one poll cycle.

        Returns:
            Number of trades handed to the ledger this tick.
        """
        async with self._lock:
            return await self._tick()

    async def _tick(self) -> int:
        raffle = self._raffle
        normalizer = self._normalizer
        if raffle is None or normalizer is None or self.state.phase != DetectorPhase.STEADY:
            return 0

        self.stats.ticks += 1
        choice = self.failover.choose()

        if choice is SourceChoice.RETRY_INDEXER:
            try:
                page = await self._fetch(raffle, choice, seeding=True)
            except SourceError as e:
                self.failover.record_failure(choice, e)
                choice = SourceChoice.NATIVE
            else:
                self.failover.record_success(choice)
                self._seed_from_page(normalizer, choice, page)
                return 0

        try:
            page = await self._fetch(raffle, choice, seeding=False)
        except SourceError as e:
            self.stats.fetch_failures += 1
            outcome = self.failover.record_failure(choice, e)
            if choice is SourceChoice.NATIVE:
                logger.error("Failed to query native chain events for %s: %s", self.side.value, e)
            if outcome.switched_to_fallback:
                self.state.reset()
                await self._seed(raffle, normalizer, SourceChoice.NATIVE)
                self.state.phase = DetectorPhase.STEADY
            return 0

        self.failover.record_success(choice)
        trades = self._normalize(normalizer, choice, page)
        published = await self._process(raffle, normalizer, trades)

        if choice is not SourceChoice.NATIVE and page.next_cursor:
            self.state.cursor = page.next_cursor
        self.state.compact()
        return published

    async def _process(
        self, raffle: ActiveRaffle, normalizer: TradeNormalizer, trades: Sequence[NormalizedTrade]
    ) -> int:
        published = 0

        for trade in sorted(trades, key=lambda t: t.timestamp_ms):
            self.stats.trades_seen += 1
            if self.state.skip_reason(trade) is not None:
                self.stats.duplicates_skipped += 1
                continue

            if trade.sender_pending:
                sender = await self._native.resolve_transaction_sender(trade.tx_digest)
                completed = normalizer.complete_sender(trade, sender)
                if completed is None:
                    self.state.remember(trade.event_key)
                    continue
                trade = completed

            decimals = await self._resolve_decimals(trade)
            tickets = self._compute_tickets(trade, raffle, decimals)

            try:
                outcome = await self._publisher.publish(trade, raffle, tickets, decimals=decimals)
            except Exception as e:
                logger.error("Failed to publish %s %s: %s", self.side.value, trade.event_key, e)
                outcome = PublishOutcome.FAILED

            if outcome is PublishOutcome.PUBLISHED:
                published += 1
                self.stats.trades_published += 1
            elif outcome is PublishOutcome.DUPLICATE:
                self.stats.duplicates_skipped += 1
            else:
                self.stats.publish_failures += 1
            self.state.mark_processed(trade)

        return published

    async def _resolve_decimals(self, trade: NormalizedTrade) -> int:
        if trade.decimals is not None:
            return trade.decimals
        cached = self.state.decimals_cache.get(trade.coin_type)
        if cached is not None:
            return cached
        try:
            decimals = await self._native.resolve_coin_decimals(trade.coin_type)
        except Exception as e:
            logger.warning("Decimals lookup for %s failed, defaulting to %d: %s", trade.coin_type, DEFAULT_COIN_DECIMALS, e)
            decimals = DEFAULT_COIN_DECIMALS
        self.state.decimals_cache[trade.coin_type] = decimals
        return decimals

    def _compute_tickets(self, trade: NormalizedTrade, raffle: ActiveRaffle, decimals: int) -> int:
        if trade.is_buy:
            return compute_ticket_delta(trade.amount_raw, decimals, self._buy_ratio, raffle.minimum_purchase)
        ratio = TicketRatio.from_value(raffle.tickets_per_token or DEFAULT_TICKETS_PER_TOKEN)
        return compute_ticket_delta(trade.amount_raw, decimals, ratio)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until stop_event is set. An in-flight tick is allowed to finish."""
        logger.info("%s detector loop started", self.side.value.capitalize())
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(self.tick(), timeout=self._tick_timeout)
            except TimeoutError:
                logger.warning("%s detector tick exceeded %.0fs", self.side.value, self._tick_timeout)
            except Exception as e:
                logger.error("Error in %s detector tick: %s", self.side.value, e, exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval)
            except TimeoutError:
                pass
        logger.info("%s detector loop stopped", self.side.value.capitalize())
