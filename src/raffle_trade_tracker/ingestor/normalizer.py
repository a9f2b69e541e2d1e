"""Normalize raw indexer and native-chain records into NormalizedTrade."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from raffle_trade_tracker.ingestor.extraction import (
    AMOUNT_IN,
    AMOUNT_OUT,
    BALANCE_CHANGE_OWNER,
    BUYER,
    COIN_IN,
    COIN_OUT,
    DECIMALS_IN,
    DECIMALS_OUT,
    DIGEST,
    DIRECTION,
    EVENT_SEQ,
    SELLER,
    TIMESTAMP,
    extract_amount,
    extract_recipient,
    get_nested_value,
    parse_raw_amount,
    parse_timestamp_ms,
    pick_number,
    pick_string,
)
from raffle_trade_tracker.ingestor.models import (
    NormalizedStake,
    NormalizedTrade,
    RawRecord,
    StakeKind,
    TradeSide,
)

logger = logging.getLogger(__name__)

CONTENT_HASH_CHARS = 16


def normalize_coin_type(coin_type: str) -> str:
    """Lowercase and drop a leading 0x so address spellings compare equal."""
    value = coin_type.strip().lower()
    return value[2:] if value.startswith("0x") else value


def coin_matches(candidate: str | None, target: str) -> bool:
    if not candidate:
        return False
    return normalize_coin_type(target) in normalize_coin_type(candidate)


def content_hash(*parts: str) -> str:
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:CONTENT_HASH_CHARS]


def native_event_key(event: RawRecord) -> str | None:
    """Key for a chain event: transaction digest plus event sequence."""
    tx_digest = get_nested_value(event, "id.txDigest")
    event_seq = get_nested_value(event, "id.eventSeq")
    if not tx_digest or event_seq is None:
        return None
    return f"{tx_digest}:{event_seq}"


def _parse_direction(value: str | None) -> TradeSide | None:
    if value is None:
        return None
    lowered = value.lower()
    if lowered == TradeSide.BUY.value:
        return TradeSide.BUY
    if lowered == TradeSide.SELL.value:
        return TradeSide.SELL
    return None


class TradeNormalizer:
    """Turns source-specific records into canonical trades for one token.

    Indexer records are classified by, in order: an explicit direction field,
    balance changes of the target coin, an exact match of the target coin
    against the declared out/in coin, then substring containment. Records
    that fit none of these are dropped.

    Native transfer events carry no sender, so sell trades from them come
    back with an empty wallet (see NormalizedTrade.sender_pending) and must be
    finished with complete_sender() once the transaction has been looked up.
    """

    def __init__(self, target_coin: str) -> None:
        self.target_coin = target_coin.strip()

    # ------------------------------------------------------------------
    # Indexer records
    # ------------------------------------------------------------------

    def normalize_indexer(
        self,
        records: Iterable[RawRecord],
        side: TradeSide,
        source: str = "blockberry",
    ) -> list[NormalizedTrade]:
        results: list[NormalizedTrade] = []
        for record in records:
            try:
                results.extend(self._normalize_indexer_record(record, side, source))
            except Exception as e:
                logger.debug("Failed to normalize %s record: %s", source, e)
        return results

    def _normalize_indexer_record(
        self, record: RawRecord, side: TradeSide, source: str
    ) -> list[NormalizedTrade]:
        tx_digest = DIGEST.pick_string(record)
        if not tx_digest:
            logger.debug("Indexer record missing tx digest: %s", record)
            return []

        timestamp_ms = self._record_timestamp(record)

        direction = _parse_direction(DIRECTION.pick_string(record))
        if direction is not None and direction != side:
            return []

        changes = self._target_balance_changes(record)
        if changes:
            trades = [
                trade
                for trade in (
                    self._trade_from_balance_change(record, tx_digest, timestamp_ms, idx, change, amount, side, source)
                    for idx, change, amount in changes
                )
                if trade is not None
            ]
            if trades or direction is None:
                return trades

        if direction is None:
            direction = self._direction_from_coin_types(record)
            if direction is None:
                logger.debug("Unclassifiable indexer record %s", tx_digest)
                return []
            if direction != side:
                return []

        trade = self._trade_from_swap(record, tx_digest, timestamp_ms, side, source)
        return [trade] if trade is not None else []

    def _record_timestamp(self, record: RawRecord) -> int:
        numeric = TIMESTAMP.pick_number(record)
        if numeric is not None:
            return parse_timestamp_ms(numeric)
        return parse_timestamp_ms(TIMESTAMP.pick_string(record))

    def _target_balance_changes(self, record: RawRecord) -> list[tuple[int, Mapping[str, Any], int]]:
        changes = get_nested_value(record, "balanceChanges")
        if not isinstance(changes, Sequence) or isinstance(changes, str):
            return []

        matched = []
        for idx, change in enumerate(changes):
            if not isinstance(change, Mapping):
                continue
            if not coin_matches(pick_string(change, ("coinType",)), self.target_coin):
                continue
            amount = parse_raw_amount(pick_string(change, ("amount",)))
            if amount is None:
                logger.debug("Balance change has non-numeric amount: %s", change)
                continue
            matched.append((idx, change, amount))
        return matched

    def _trade_from_balance_change(
        self,
        record: RawRecord,
        tx_digest: str,
        timestamp_ms: int,
        change_index: int,
        change: Mapping[str, Any],
        amount: int,
        side: TradeSide,
        source: str,
    ) -> NormalizedTrade | None:
        if side == TradeSide.BUY and amount <= 0:
            return None
        if side == TradeSide.SELL and amount >= 0:
            return None

        owner = BALANCE_CHANGE_OWNER.pick_string(change)
        if side == TradeSide.BUY:
            if not owner:
                logger.debug("Balance change missing wallet address: %s", change)
                return None
            wallet = owner
            event_key = f"{tx_digest}:{wallet}:{change_index}"
        else:
            wallet = owner or SELLER.pick_string(record)
            if not wallet:
                logger.debug("Sell balance change missing wallet address: %s", change)
                return None
            event_key = f"{tx_digest}:{change_index}"

        decimals = pick_number(change, ("decimals",))
        return NormalizedTrade(
            tx_digest=tx_digest,
            event_key=event_key,
            timestamp_ms=timestamp_ms,
            wallet_address=wallet,
            amount_raw=str(abs(amount)),
            coin_type=pick_string(change, ("coinType",)) or self.target_coin,
            side=side,
            source=source,
            decimals=int(decimals) if decimals is not None else None,
        )

    def _direction_from_coin_types(self, record: RawRecord) -> TradeSide | None:
        target = normalize_coin_type(self.target_coin)
        coin_out = COIN_OUT.pick_string(record)
        coin_in = COIN_IN.pick_string(record)
        out_norm = normalize_coin_type(coin_out) if coin_out else None
        in_norm = normalize_coin_type(coin_in) if coin_in else None

        if out_norm == target:
            return TradeSide.BUY
        if in_norm == target:
            return TradeSide.SELL
        if out_norm and target in out_norm:
            return TradeSide.BUY
        if in_norm and target in in_norm:
            return TradeSide.SELL
        return None

    def _trade_from_swap(
        self,
        record: RawRecord,
        tx_digest: str,
        timestamp_ms: int,
        side: TradeSide,
        source: str,
    ) -> NormalizedTrade | None:
        if side == TradeSide.BUY:
            wallet_rule, amount_rule, decimals_rule, coin_rule = BUYER, AMOUNT_OUT, DECIMALS_OUT, COIN_OUT
        else:
            wallet_rule, amount_rule, decimals_rule, coin_rule = SELLER, AMOUNT_IN, DECIMALS_IN, COIN_IN

        wallet = wallet_rule.pick_string(record)
        if not wallet:
            logger.debug("Indexer trade %s missing wallet address", tx_digest)
            return None

        amount = parse_raw_amount(amount_rule.pick_string(record))
        if amount is None or amount == 0:
            logger.debug("Indexer trade %s missing base-unit amount", tx_digest)
            return None
        amount_raw = str(abs(amount))

        coin_type = coin_rule.pick_string(record) or self.target_coin
        event_seq = EVENT_SEQ.pick_string(record)
        if event_seq is not None:
            event_key = f"{tx_digest}:{event_seq}"
        else:
            event_key = f"{tx_digest}:{content_hash(wallet.lower(), amount_raw, coin_type.lower())}"

        return NormalizedTrade(
            tx_digest=tx_digest,
            event_key=event_key,
            timestamp_ms=timestamp_ms,
            wallet_address=wallet,
            amount_raw=amount_raw,
            coin_type=coin_type,
            side=side,
            source=source,
            decimals=decimals_rule.pick_int(record),
        )

    # ------------------------------------------------------------------
    # Native chain events
    # ------------------------------------------------------------------

    def normalize_native(
        self,
        events: Iterable[RawRecord],
        side: TradeSide,
        source: str = "sui",
    ) -> list[NormalizedTrade]:
        results = []
        for event in events:
            trade = self.normalize_native_event(event, side, source)
            if trade is not None:
                results.append(trade)
        return results

    def normalize_native_event(
        self, event: RawRecord, side: TradeSide, source: str = "sui"
    ) -> NormalizedTrade | None:
        """Normalize one coin TransferEvent.

        Buys credit the recipient. Sells leave the wallet empty until the
        transaction sender is known.
        """
        event_key = native_event_key(event)
        if event_key is None:
            return None

        timestamp_ms = parse_timestamp_ms(event.get("timestampMs"))
        parsed = event.get("parsedJson") or {}
        recipient = extract_recipient(parsed)
        amount = parse_raw_amount(extract_amount(parsed))

        if amount is None:
            logger.debug("Skipping transfer event %s without amount", event_key)
            return None
        if side == TradeSide.BUY and not recipient:
            logger.debug("Skipping transfer event %s without recipient", event_key)
            return None

        return NormalizedTrade(
            tx_digest=str(get_nested_value(event, "id.txDigest")),
            event_key=event_key,
            timestamp_ms=timestamp_ms,
            wallet_address=recipient if side == TradeSide.BUY and recipient else "",
            amount_raw=str(abs(amount)),
            coin_type=self.target_coin,
            side=side,
            source=source,
            recipient=recipient,
        )

    @staticmethod
    def complete_sender(trade: NormalizedTrade, sender: str | None) -> NormalizedTrade | None:
        """Attach the resolved sender; drop trades without one and self-transfers."""
        if not sender:
            logger.debug("Dropping %s: transaction sender unavailable", trade.event_key)
            return None
        completed = trade.with_wallet(sender)
        if completed.is_self_transfer:
            logger.debug("Dropping self-transfer %s", trade.event_key)
            return None
        return completed

    # ------------------------------------------------------------------
    # Staking events
    # ------------------------------------------------------------------

    def normalize_stakes(self, events: Iterable[RawRecord], kind: StakeKind) -> list[NormalizedStake]:
        results = []
        for event in events:
            stake = self.normalize_stake_event(event, kind)
            if stake is not None:
                results.append(stake)
        return results

    def normalize_stake_event(self, event: RawRecord, kind: StakeKind) -> NormalizedStake | None:
        """Normalize one staking-platform StakeEvent or UnstakeEvent.

        Events for other tokens, and events without a wallet or amount,
        are dropped.
        """
        event_key = native_event_key(event)
        if event_key is None:
            return None

        parsed = event.get("parsedJson") or {}
        if not coin_matches(pick_string(parsed, ("token_address",)), self.target_coin):
            return None

        wallet = pick_string(parsed, ("staker",) if kind == StakeKind.STAKE else ("unstaker",))
        amount = parse_raw_amount(pick_string(parsed, ("amount",)))
        if not wallet or amount is None or amount == 0:
            logger.debug("Skipping %s event %s without wallet or amount", kind.value, event_key)
            return None

        return NormalizedStake(
            tx_digest=str(get_nested_value(event, "id.txDigest")),
            event_key=event_key,
            timestamp_ms=parse_timestamp_ms(event.get("timestampMs")),
            wallet_address=wallet,
            amount_raw=str(abs(amount)),
            kind=kind,
            staking_pool=pick_string(parsed, ("staking_pool",)),
            staking_account=pick_string(parsed, ("staking_account",)),
        )
