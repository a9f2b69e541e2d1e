"""Tolerant field extraction for loosely-typed upstream records.

Upstream sources disagree on field names and nesting. Each semantic field is
described by a FieldRule: an ordered tuple of dot-separated key paths, where a
numeric segment indexes into a list. The first present, non-empty value wins.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Timestamp magnitude thresholds (values above are ms already, below are seconds)
MILLISECONDS_FLOOR = 1e15
SECONDS_CEILING = 1e12

RECIPIENT_KEYS = (
    "recipient",
    "to",
    "toAddress",
    "to_addr",
    "to_address",
    "dst_addr",
    "receiver",
    "destination",
)
AMOUNT_KEYS = ("amount", "quantity", "value", "coinAmount")


def now_ms() -> int:
    return int(time.time() * 1000)


def get_nested_value(source: Any, path: str) -> Any:
    """Resolve a dot-separated path against nested mappings and lists.

    Args:
        source: Record to read from.
        path: Key path such as "coinsOut.0.coinType".

    Returns:
        The value at the path, or None if any segment is missing.
    """
    value = source
    for segment in path.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(segment)
        elif isinstance(value, Sequence) and not isinstance(value, str | bytes):
            if not segment.isdigit():
                return None
            index = int(segment)
            value = value[index] if index < len(value) else None
        else:
            return None
    return value


def pick_string(source: Any, paths: Iterable[str]) -> str | None:
    """Return the first non-empty string (or number rendered as one) found."""
    for path in paths:
        value = get_nested_value(source, path)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, str):
            trimmed = value.strip()
            if trimmed:
                return trimmed
            continue
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float) and math.isfinite(value):
            return str(int(value)) if value.is_integer() else str(value)
    return None


def pick_number(source: Any, paths: Iterable[str]) -> float | int | None:
    """Return the first value that is, or parses as, a finite number."""
    for path in paths:
        value = get_nested_value(source, path)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if math.isfinite(value):
                return value
            continue
        if isinstance(value, str):
            try:
                parsed = float(value.strip())
            except ValueError:
                continue
            if math.isfinite(parsed):
                return int(parsed) if parsed.is_integer() else parsed
    return None


@dataclass(frozen=True)
class FieldRule:
    """Ordered key paths for one semantic field."""

    name: str
    paths: tuple[str, ...]

    def pick_string(self, record: Any) -> str | None:
        return pick_string(record, self.paths)

    def pick_number(self, record: Any) -> float | int | None:
        return pick_number(record, self.paths)

    def pick_int(self, record: Any) -> int | None:
        value = self.pick_number(record)
        if value is None:
            return None
        return int(value)


DIGEST = FieldRule(
    "digest",
    (
        "txDigest",
        "transactionDigest",
        "digest",
        "txHash",
        "tx_hash",
        "transactionHash",
        "transaction_block",
        "transactionBlock",
    ),
)

TIMESTAMP = FieldRule(
    "timestamp",
    (
        "timestampMs",
        "timestamp",
        "time",
        "executedAt",
        "executed_at",
        "blockTimestamp",
        "checkpointTimestampMs",
        "createdAt",
        "created_at",
    ),
)

DIRECTION = FieldRule("direction", ("direction", "side", "tradeSide", "swapSide", "orderSide"))

COIN_OUT = FieldRule(
    "coin_out",
    (
        "outCoin.coinType",
        "outCoin.type",
        "coinTypeOut",
        "coin_type_out",
        "tokenOut.coinType",
        "tokenOutType",
        "coinOut.coin_type",
        "coinsOut.0.coinType",
        "coins_out.0.coin_type",
        "coins.0.coinType",
        "balanceChanges.0.coinType",
    ),
)

COIN_IN = FieldRule(
    "coin_in",
    (
        "inCoin.coinType",
        "inCoin.type",
        "coinTypeIn",
        "coin_type_in",
        "tokenIn.coinType",
        "tokenInType",
        "coinIn.coin_type",
        "coinsIn.0.coinType",
        "coins_in.0.coin_type",
        "coins.1.coinType",
    ),
)

BUYER = FieldRule(
    "buyer",
    (
        "buyerAddress",
        "buyer",
        "accountAddress",
        "walletAddress",
        "traderAddress",
        "trader",
        "recipientAddress",
        "toAddress",
        "owner",
        "userAddress",
        "address",
        "ownerAddress",
        "owner.addressOwner",
    ),
)

SELLER = FieldRule(
    "seller",
    (
        "senderAddress",
        "sellerAddress",
        "seller",
        "accountAddress",
        "walletAddress",
        "traderAddress",
        "trader",
        "sender",
        "owner",
        "userAddress",
        "address",
        "ownerAddress",
        "owner.addressOwner",
    ),
)

AMOUNT_OUT = FieldRule(
    "amount_out",
    (
        "outCoin.amount",
        "outCoin.amount_raw",
        "amountOut",
        "amount_out",
        "tokenOutAmount",
        "outAmount",
        "amount",
        "receivedAmount",
        "amountReceived",
        "coin.amount",
        "coinsOut.0.amount",
        "coins_out.0.amount_raw",
        "coins.0.amount",
        "balanceChanges.0.amount",
    ),
)

AMOUNT_IN = FieldRule(
    "amount_in",
    (
        "inCoin.amount",
        "inCoin.amount_raw",
        "amountIn",
        "amount_in",
        "tokenInAmount",
        "inAmount",
        "amount",
        "soldAmount",
        "amountSold",
        "coinsIn.0.amount",
        "coins_in.0.amount_raw",
        "coins.1.amount",
    ),
)

DECIMALS_OUT = FieldRule(
    "decimals_out",
    (
        "outCoin.decimals",
        "coin.decimals",
        "decimals",
        "tokenOutDecimals",
        "decimalsOut",
        "coinsOut.0.decimals",
        "coins_out.0.decimals",
        "coins.0.decimals",
    ),
)

DECIMALS_IN = FieldRule(
    "decimals_in",
    (
        "inCoin.decimals",
        "coin.decimals",
        "decimals",
        "tokenInDecimals",
        "decimalsIn",
        "coinsIn.0.decimals",
        "coins_in.0.decimals",
        "coins.1.decimals",
    ),
)

EVENT_SEQ = FieldRule(
    "event_seq",
    (
        "eventSeq",
        "eventIndex",
        "event_index",
        "seq",
        "sequence",
        "swapIndex",
        "swap_index",
        "id",
    ),
)

BALANCE_CHANGE_OWNER = FieldRule(
    "balance_change_owner",
    ("owner.addressOwner", "owner.AddressOwner", "ownerAddress", "addressOwner"),
)


def extract_recipient(data: Any) -> str | None:
    """Find the transfer recipient, descending into a nested "fields" object."""
    if not isinstance(data, Mapping):
        return None
    for key in RECIPIENT_KEYS:
        value = data.get(key)
        if value:
            return str(value)
    return extract_recipient(data.get("fields"))


def extract_amount(data: Any) -> str | None:
    if not isinstance(data, Mapping):
        return None
    for key in AMOUNT_KEYS:
        value = data.get(key)
        if value is not None and not isinstance(value, bool):
            return str(value)
    return extract_amount(data.get("fields"))


def parse_timestamp_ms(value: Any, default_ms: int | None = None) -> int:
    """Normalize a source timestamp to epoch milliseconds.

    Numbers above 1e15 are taken as milliseconds, numbers below 1e12 as
    seconds, anything between as milliseconds. Digit-only strings are numeric,
    other strings are parsed as ISO-8601. Unparseable input yields "now".
    """
    fallback = default_ms if default_ms is not None else now_ms()
    if value is None or isinstance(value, bool):
        return fallback

    numeric: float | None = None
    if isinstance(value, int | float):
        numeric = float(value)
    elif isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return fallback
        if trimmed.isdigit():
            numeric = float(trimmed)
        else:
            try:
                parsed = datetime.fromisoformat(trimmed.replace("Z", "+00:00"))
            except ValueError:
                logger.debug("Unparseable timestamp %r, using current time", value)
                return fallback
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return int(parsed.timestamp() * 1000)

    if numeric is None or not math.isfinite(numeric):
        return fallback
    if numeric > MILLISECONDS_FLOOR:
        return int(numeric)
    if numeric < SECONDS_CEILING:
        return int(numeric * 1000)
    return int(numeric)


def parse_raw_amount(value: str | None) -> int | None:
    """Parse a base-unit integer amount; reject fractional or non-numeric input."""
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def format_amount(raw_amount: str, decimals: int) -> str:
    """Render a base-unit amount as a human-readable decimal string.

    Uses integer arithmetic only. Invalid input is returned unchanged.

    Example:
        >>> format_amount("1500000000", 9)
        '1.5'
    """
    try:
        raw = int(raw_amount)
        if decimals < 0:
            raise ValueError(f"negative decimals: {decimals}")
    except (TypeError, ValueError) as e:
        logger.warning("Failed to format amount %r, returning raw value: %s", raw_amount, e)
        return raw_amount

    if decimals == 0:
        return str(raw)

    sign = "-" if raw < 0 else ""
    whole, remainder = divmod(abs(raw), 10**decimals)
    if remainder == 0:
        return f"{sign}{whole}"
    fraction = str(remainder).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{fraction}"
