"""Manual sell verification by transaction digest."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from raffle_trade_tracker.detector.tickets import (
    DEFAULT_TICKETS_PER_TOKEN,
    TicketRatio,
    compute_ticket_delta,
)
from raffle_trade_tracker.ingestor.extraction import parse_raw_amount, parse_timestamp_ms
from raffle_trade_tracker.ingestor.models import ActiveRaffle, NormalizedTrade, TradeSide
from raffle_trade_tracker.ingestor.normalizer import normalize_coin_type
from raffle_trade_tracker.ingestor.sources import SourceError, TransactionSource
from raffle_trade_tracker.ledger.publisher import LedgerPublisher, ReconcileOutcome

logger = logging.getLogger(__name__)

RaffleProvider = Callable[[], Awaitable[ActiveRaffle | None]]


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    message: str
    tickets_removed: int | None = None
    wallet: str | None = None


def find_sell_change(
    balance_changes: list[dict[str, Any]], token_address: str
) -> tuple[int, dict[str, Any], int] | None:
    """Find the first negative balance change of the raffle token."""
    target = normalize_coin_type(token_address)
    for index, change in enumerate(balance_changes):
        coin_type = str(change.get("coinType") or "")
        amount = parse_raw_amount(change.get("amount"))
        if amount is None or amount >= 0:
            continue
        if target in normalize_coin_type(coin_type):
            return index, change, amount
    return None


class SellVerifier:
    """Re-derives a sell from a transaction's balance changes and reconciles it.

    Example:
        ```python
        verifier = SellVerifier(sui, publisher, raffle_provider)
        result = await verifier.verify("8dJk...")
        print(result.message)
        ```
    """

    def __init__(self, sui: TransactionSource, publisher: LedgerPublisher, raffle_provider: RaffleProvider) -> None:
        self._sui = sui
        self._publisher = publisher
        self._raffle_provider = raffle_provider

    async def verify(self, tx_digest: str) -> VerificationResult:
        raffle = await self._raffle_provider()
        if raffle is None:
            return VerificationResult(False, "No active raffle")

        try:
            tx = await self._sui.get_transaction(tx_digest, show_balance_changes=True, show_effects=True)
        except SourceError as e:
            logger.error("Error verifying sell %s: %s", tx_digest, e)
            return VerificationResult(False, f"Error: {e}")

        balance_changes = [c for c in tx.get("balanceChanges") or [] if isinstance(c, dict)]
        if not balance_changes:
            return VerificationResult(False, "No balance changes found in transaction")

        found = find_sell_change(balance_changes, raffle.token_address)
        if found is None:
            return VerificationResult(
                False,
                f"No sell (negative balance change) found for token {raffle.token_address}",
            )
        change_index, change, amount = found

        owner = change.get("owner")
        if not isinstance(owner, dict) or "AddressOwner" not in owner:
            return VerificationResult(False, "Sell owner is not a wallet address")
        wallet = str(owner["AddressOwner"])
        if not wallet.startswith("0x"):
            wallet = f"0x{wallet}"

        coin_type = str(change.get("coinType") or raffle.token_address)
        decimals = await self._sui.resolve_coin_decimals(coin_type)
        ratio = TicketRatio.from_value(raffle.tickets_per_token or DEFAULT_TICKETS_PER_TOKEN)
        amount_raw = str(-amount)
        tickets = compute_ticket_delta(amount_raw, decimals, ratio)

        trade = NormalizedTrade(
            tx_digest=tx_digest,
            event_key=f"{tx_digest}:{change_index}",
            timestamp_ms=parse_timestamp_ms(tx.get("timestampMs")),
            wallet_address=wallet,
            amount_raw=amount_raw,
            coin_type=coin_type,
            side=TradeSide.SELL,
            source="manual",
            decimals=decimals,
        )

        result = await self._publisher.reconcile_sell(trade, raffle, tickets, decimals=decimals)
        if result.outcome is ReconcileOutcome.CREATED:
            return VerificationResult(
                True, f"Processed new sell event. Removed {tickets} tickets.", tickets, wallet
            )
        if result.outcome is ReconcileOutcome.UPDATED:
            return VerificationResult(
                True,
                f"Updated sell event. Removed additional {result.tickets_enqueued} tickets (Total: {tickets}).",
                result.tickets_enqueued,
                wallet,
            )
        if result.outcome is ReconcileOutcome.UNCHANGED:
            return VerificationResult(
                False,
                f"Sell event already processed with {result.recorded_tickets} tickets removed.",
            )
        return VerificationResult(False, "Error: could not record the sell")
