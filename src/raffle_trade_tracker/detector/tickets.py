"""Ticket math: converts base-unit token amounts into raffle tickets.

All arithmetic is integer-only. The tickets-per-token ratio is held as a
fixed-point value with six fractional digits so that fractional ratios
(e.g. 2.5 tickets per token) stay exact.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation

from raffle_trade_tracker.ingestor.extraction import format_amount

logger = logging.getLogger(__name__)

MAX_SAFE_INTEGER = 2**53 - 1
RATIO_PRECISION = 10**6
DEFAULT_TICKETS_PER_TOKEN = Decimal("100")
DEFAULT_STAKING_BONUS_PERCENT = 25


@dataclass(frozen=True)
class TicketRatio:
    """Tickets per whole token, as numerator / denominator."""

    numerator: int
    denominator: int = RATIO_PRECISION

    @classmethod
    def from_value(cls, value: Decimal | int | str | float) -> TicketRatio:
        """Build a ratio, flooring anything finer than six fractional digits."""
        try:
            scaled = (Decimal(str(value)) * RATIO_PRECISION).to_integral_value(rounding=ROUND_FLOOR)
        except InvalidOperation as e:
            raise ValueError(f"Invalid tickets-per-token ratio: {value!r}") from e
        if not scaled.is_finite():
            raise ValueError(f"Invalid tickets-per-token ratio: {value!r}")
        if scaled < 0:
            raise ValueError(f"Tickets-per-token ratio must not be negative: {value!r}")
        return cls(numerator=int(scaled))

    def as_decimal(self) -> Decimal:
        return Decimal(self.numerator) / Decimal(self.denominator)

    def __float__(self) -> float:
        return self.numerator / self.denominator


DEFAULT_RATIO = TicketRatio.from_value(DEFAULT_TICKETS_PER_TOKEN)


def _float_fallback(raw_amount: str, decimals: int, ratio: TicketRatio) -> int:
    try:
        human = float(format_amount(raw_amount, max(decimals, 0)))
        tickets = math.floor(human * float(ratio))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(tickets, MAX_SAFE_INTEGER))


def compute_ticket_delta(
    raw_amount: str,
    decimals: int,
    ratio: TicketRatio = DEFAULT_RATIO,
    minimum_purchase: Decimal | None = None,
) -> int:
    """Compute tickets for a trade amount.

    Args:
        raw_amount: Base-unit integer amount as a string.
        decimals: Token decimals.
        ratio: Tickets per whole token.
        minimum_purchase: Minimum human-readable amount for any tickets
            (buy side only).

    Returns:
        Non-negative ticket count. Never raises.

    Example:
        >>> compute_ticket_delta("1500000000", 9)
        150
    """
    try:
        raw = int(raw_amount)
        if decimals < 0:
            raise ValueError(f"negative decimals: {decimals}")
        scale = 10**decimals

        if minimum_purchase is not None and minimum_purchase > 0:
            # raw / scale < minimum, compared without leaving integers
            if Decimal(raw) < minimum_purchase * scale:
                logger.info(
                    "Purchase %s tokens is below minimum %s tokens, no tickets awarded",
                    format_amount(raw_amount, decimals),
                    minimum_purchase,
                )
                return 0

        tickets = (raw * ratio.numerator) // (scale * ratio.denominator)
    except (TypeError, ValueError, ArithmeticError) as e:
        logger.warning("Falling back to float-based ticket calculation for %r: %s", raw_amount, e)
        return _float_fallback(raw_amount, decimals, ratio)

    if tickets > MAX_SAFE_INTEGER:
        logger.warning("Calculated ticket count %d exceeds safe integer range", tickets)
        return MAX_SAFE_INTEGER
    return max(0, tickets)


def compute_stake_bonus(
    raw_amount: str,
    decimals: int,
    ratio: TicketRatio = DEFAULT_RATIO,
    bonus_percent: int | None = None,
) -> int:
    """Compute bonus tickets for staking: a percentage of what a buy of the same size earns.

    Example:
        >>> compute_stake_bonus("1500000000", 9)
        37
    """
    percent = DEFAULT_STAKING_BONUS_PERCENT if bonus_percent is None else max(0, bonus_percent)
    bonus_ratio = TicketRatio(numerator=ratio.numerator * percent // 100, denominator=ratio.denominator)
    return compute_ticket_delta(raw_amount, decimals, bonus_ratio)
