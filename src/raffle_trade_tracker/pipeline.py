"""Main pipeline orchestrator for the raffle trade tracker.

This module provides the Pipeline class that wires the buy and sell
detectors, the staking bonus detector, the active-raffle refresh loop and
the ticket ledger worker.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from raffle_trade_tracker.config import Settings, get_settings
from raffle_trade_tracker.detector.poller import TradeDetector
from raffle_trade_tracker.detector.stake import StakeDetector
from raffle_trade_tracker.ingestor.blockberry_client import BlockberryClient
from raffle_trade_tracker.ingestor.models import ActiveRaffle, TradeSide
from raffle_trade_tracker.ingestor.sui_client import SuiClient
from raffle_trade_tracker.ledger.publisher import LedgerPublisher
from raffle_trade_tracker.ledger.queue import RedisWorkQueue
from raffle_trade_tracker.ledger.verification import SellVerifier, VerificationResult
from raffle_trade_tracker.ledger.worker import LedgerWorker
from raffle_trade_tracker.storage.database import DatabaseManager
from raffle_trade_tracker.storage.repos import RaffleRepository

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    raffle_refreshes: int = 0
    raffle_refresh_errors: int = 0
    last_error: str | None = None


def build_sui_client(settings: Settings) -> SuiClient:
    return SuiClient(settings.sui.rpc_url, event_page_limit=settings.sui.event_page_limit)


def build_blockberry_client(settings: Settings) -> BlockberryClient:
    bb = settings.blockberry
    return BlockberryClient(
        api_key=bb.api_key.get_secret_value() if bb.api_key else None,
        base_url=bb.api_url,
        trades_path=bb.trades_path,
        limit=bb.poll_limit,
        filter_param=bb.filter_param,
        order_param=bb.order_param,
        cursor_param=bb.cursor_param,
    )


async def load_active_raffle(db: DatabaseManager, *, require_started: bool) -> ActiveRaffle | None:
    async with db.get_async_session() as session:
        raffle = await RaffleRepository(session).get_active(require_started=require_started)
    return raffle.to_active() if raffle else None


class Pipeline:
    """Main pipeline orchestrator.

    Pipeline flow (per side):
        Raffle refresh → Failover-selected source → Normalizer →
        Watermark/dedup → Ticket math → Ledger publisher → Work queue → Ledger worker

    Example:
        ```python
        from raffle_trade_tracker.config import get_settings
        from raffle_trade_tracker.pipeline import Pipeline

        pipeline = Pipeline(get_settings())
        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, detect without recording or enqueueing.
                Overrides settings.dry_run.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._publisher: LedgerPublisher | None = None
        self._worker: LedgerWorker | None = None
        self._detectors: dict[TradeSide, TradeDetector] = {}
        self._stake_detector: StakeDetector | None = None
        self._closeables: list[Any] = []

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def stats(self) -> PipelineStats:
        return self._stats

    @property
    def detectors(self) -> dict[TradeSide, TradeDetector]:
        return self._detectors

    @property
    def stake_detector(self) -> StakeDetector | None:
        return self._stake_detector

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")
        logger.info("Settings: %s", self._settings.redacted_summary())

        try:
            await self._initialize_components()
            await self._refresh_raffles()
            self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Detector loops finish their in-flight tick before exiting.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        settings = self._settings

        self._redis = Redis.from_url(settings.redis.url)
        self._db_manager = DatabaseManager(settings.database.url)
        queue = RedisWorkQueue(self._redis, prefix=settings.ledger.queue_prefix)
        self._publisher = LedgerPublisher(self._db_manager, queue, dry_run=self._dry_run)

        indexer_configured = settings.blockberry.is_configured
        for side in (TradeSide.BUY, TradeSide.SELL):
            # Each detector owns its adapters; nothing mutable is shared between them
            native = build_sui_client(settings)
            indexer = build_blockberry_client(settings) if indexer_configured else None
            self._closeables.extend(c for c in (native, indexer) if c is not None)
            self._detectors[side] = TradeDetector(
                side,
                indexer=indexer,
                native=native,
                publisher=self._publisher,
                indexer_configured=indexer_configured,
                tickets_per_token=settings.tickets.tickets_per_token,
                poll_interval_seconds=settings.effective_poll_interval_seconds(),
                failover_threshold=settings.poller.failover_threshold,
                recovery_probability=settings.poller.failover_recovery_probability,
                seen_keys_max=settings.poller.seen_keys_max,
                seen_keys_keep=settings.poller.seen_keys_keep,
            )

        if settings.stake.enabled:
            stake_native = build_sui_client(settings)
            self._closeables.append(stake_native)
            self._stake_detector = StakeDetector(
                native=stake_native,
                publisher=self._publisher,
                stake_event_type=settings.stake.stake_event_type,
                unstake_event_type=settings.stake.unstake_event_type,
                default_bonus_percent=settings.stake.bonus_percent,
                poll_interval_seconds=settings.stake.poll_interval_seconds,
                seen_keys_max=settings.poller.seen_keys_max,
                seen_keys_keep=settings.poller.seen_keys_keep,
            )

        if settings.ledger.worker_enabled and not self._dry_run:
            self._worker = LedgerWorker(
                self._db_manager,
                queue,
                dequeue_timeout_seconds=settings.ledger.dequeue_timeout_seconds,
            )

    def _start_background_services(self) -> None:
        if self._stop_event is None:
            raise RuntimeError("Background services need a stop event; call start()")
        self._tasks.append(asyncio.create_task(self._run_raffle_refresh_loop()))
        for detector in self._detectors.values():
            self._tasks.append(asyncio.create_task(detector.run(self._stop_event)))
        if self._stake_detector:
            self._tasks.append(asyncio.create_task(self._stake_detector.run(self._stop_event)))
        if self._worker:
            logger.debug("Starting ledger worker...")
            self._tasks.append(asyncio.create_task(self._worker.run(self._stop_event)))

    async def _refresh_raffles(self) -> None:
        """Read the active raffle for each side and apply it to its detector.

        A failed read keeps the previous descriptor until the next refresh.
        """
        if self._db_manager is None:
            return
        self._stats.raffle_refreshes += 1
        for side, detector in self._detectors.items():
            try:
                raffle = await load_active_raffle(self._db_manager, require_started=side == TradeSide.SELL)
            except Exception as e:
                self._stats.raffle_refresh_errors += 1
                self._stats.last_error = str(e)
                logger.error("Failed to read active raffle for %s detector: %s", side.value, e)
                continue
            await detector.update_raffle(raffle)

        if self._stake_detector is not None:
            try:
                raffle = await load_active_raffle(self._db_manager, require_started=True)
            except Exception as e:
                self._stats.raffle_refresh_errors += 1
                self._stats.last_error = str(e)
                logger.error("Failed to read active raffle for stake detector: %s", e)
                return
            await self._stake_detector.update_raffle(raffle)

    async def _run_raffle_refresh_loop(self) -> None:
        if not self._stop_event:
            return

        interval = self._settings.poller.raffle_refresh_interval_seconds
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break
                except TimeoutError:
                    pass
                await self._refresh_raffles()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Raffle refresh loop error: %s", e)

    async def _stop_background_services(self) -> None:
        # Detector and worker loops exit on the stop event after their current unit of work
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=self._settings.poller.poll_interval_seconds * 2)
            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._tasks = []

    async def _cleanup(self) -> None:
        for closeable in self._closeables:
            try:
                await closeable.aclose()
            except Exception as e:
                logger.warning("Failed to close %s client: %s", getattr(closeable, "name", closeable), e)
        self._closeables = []
        self._detectors = {}
        self._stake_detector = None

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    def request_stop(self) -> None:
        """Ask run() to return; safe to call from a signal handler."""
        if self._stop_event:
            self._stop_event.set()

    async def run(self) -> None:
        """Start the pipeline and run until interrupted."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()


async def verify_sell(tx_digest: str, settings: Settings | None = None) -> VerificationResult:
    """Manually verify a sell transaction against the active raffle."""
    settings = settings or get_settings()
    redis = Redis.from_url(settings.redis.url)
    db = DatabaseManager(settings.database.url)
    sui = build_sui_client(settings)
    try:
        publisher = LedgerPublisher(db, RedisWorkQueue(redis, prefix=settings.ledger.queue_prefix))

        async def raffle_provider() -> ActiveRaffle | None:
            return await load_active_raffle(db, require_started=True)

        verifier = SellVerifier(sui, publisher, raffle_provider)
        return await verifier.verify(tx_digest)
    finally:
        await sui.aclose()
        await db.dispose_async()
        await redis.aclose()
