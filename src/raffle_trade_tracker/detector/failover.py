"""Indexer/native-chain source selection with strike-based failover."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from raffle_trade_tracker.ingestor.sources import SourceAdapter

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RECOVERY_PROBABILITY = 0.1


class SourceChoice(Enum):
    INDEXER = "indexer"
    RETRY_INDEXER = "retry_indexer"
    NATIVE = "native"


@dataclass
class FailoverState:
    using_primary: bool = True
    consecutive_failures: int = 0
    fallback_active: bool = False


@dataclass(frozen=True)
class FailureOutcome:
    """What the caller must do after an indexer failure."""

    switched_to_fallback: bool
    consecutive_failures: int


class FailoverController:
    """Chooses which source a detector polls on each tick.

    The indexer is preferred while configured. After `threshold` consecutive
    failures the controller switches to the native chain and the caller must
    reset its watermark. While in fallback it retries the indexer with
    probability `recovery_probability` per tick; a retry runs in seeding mode
    and, if it succeeds, the indexer is used again from the next tick.

    Example:
        ```python
        controller = FailoverController(blockberry, sui)
        choice = controller.choose()
        if choice is SourceChoice.INDEXER:
            ...
        ```
    """

    def __init__(
        self,
        indexer: SourceAdapter | None,
        native: SourceAdapter,
        *,
        indexer_configured: bool = True,
        threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_probability: float = DEFAULT_RECOVERY_PROBABILITY,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.indexer = indexer
        self.native = native
        self._indexer_configured = indexer is not None and indexer_configured
        self._threshold = threshold
        self._recovery_probability = recovery_probability
        self._rng = rng
        self.state = FailoverState(using_primary=self._indexer_configured)

    @property
    def indexer_enabled(self) -> bool:
        return self._indexer_configured

    @property
    def fallback_active(self) -> bool:
        return self.state.fallback_active

    def choose(self) -> SourceChoice:
        if not self._indexer_configured:
            return SourceChoice.NATIVE
        if not self.state.fallback_active:
            return SourceChoice.INDEXER
        if self._rng() < self._recovery_probability:
            return SourceChoice.RETRY_INDEXER
        return SourceChoice.NATIVE

    def adapter_for(self, choice: SourceChoice) -> SourceAdapter:
        if choice is SourceChoice.NATIVE or self.indexer is None:
            return self.native
        return self.indexer

    def record_success(self, choice: SourceChoice) -> bool:
        """Record a successful fetch. Returns True if the indexer just recovered."""
        if choice is SourceChoice.NATIVE:
            return False
        recovered = self.state.fallback_active
        self.state.consecutive_failures = 0
        self.state.fallback_active = False
        self.state.using_primary = True
        if recovered:
            logger.info("Indexer recovered; switching back from native chain events")
        return recovered

    def record_failure(self, choice: SourceChoice, error: Exception) -> FailureOutcome:
        if choice is SourceChoice.NATIVE:
            return FailureOutcome(False, self.state.consecutive_failures)

        if choice is SourceChoice.RETRY_INDEXER:
            logger.debug("Indexer still unavailable, continuing with native chain events: %s", error)
            return FailureOutcome(False, self.state.consecutive_failures)

        self.state.consecutive_failures += 1
        if self.state.consecutive_failures < self._threshold:
            logger.warning(
                "Indexer fetch failed (%d/%d): %s",
                self.state.consecutive_failures,
                self._threshold,
                error,
            )
            return FailureOutcome(False, self.state.consecutive_failures)

        logger.warning(
            "Indexer has failed %d times, falling back to native chain event stream",
            self.state.consecutive_failures,
        )
        self.state.fallback_active = True
        self.state.using_primary = False
        return FailureOutcome(True, self.state.consecutive_failures)

    def reset(self) -> None:
        self.state = FailoverState(using_primary=self._indexer_configured)
