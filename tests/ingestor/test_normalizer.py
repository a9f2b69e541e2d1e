"""Tests for the trade normalizer."""

from __future__ import annotations

import pytest

from conftest import BUYER, SELLER, TOKEN
from raffle_trade_tracker.ingestor.models import StakeKind, TradeSide
from raffle_trade_tracker.ingestor.normalizer import (
    TradeNormalizer,
    coin_matches,
    content_hash,
    native_event_key,
    normalize_coin_type,
)

SUI = "0x2::sui::SUI"
TS_MS = 1_700_000_000_000


@pytest.fixture
def normalizer() -> TradeNormalizer:
    return TradeNormalizer(TOKEN)


# ============================================================================
# Helpers
# ============================================================================


class TestCoinHelpers:
    def test_normalize_coin_type(self) -> None:
        assert normalize_coin_type(" 0xABC::x::Y ") == "abc::x::y"
        assert normalize_coin_type("abc::x::y") == "abc::x::y"

    def test_coin_matches_ignores_prefix_and_case(self) -> None:
        assert coin_matches("0xABC123::pepe::PEPE", TOKEN)
        assert coin_matches("abc123::pepe::pepe", TOKEN)

    def test_coin_matches_containment(self) -> None:
        assert coin_matches(f"0x3::wrapper::W<{TOKEN}>", TOKEN)

    def test_coin_matches_rejects_others(self) -> None:
        assert not coin_matches(SUI, TOKEN)
        assert not coin_matches(None, TOKEN)
        assert not coin_matches("", TOKEN)

    def test_content_hash_is_stable_and_short(self) -> None:
        first = content_hash("a", "b")
        assert first == content_hash("a", "b")
        assert first != content_hash("a", "c")
        assert len(first) == 16

    def test_native_event_key(self) -> None:
        assert native_event_key({"id": {"txDigest": "T", "eventSeq": "3"}}) == "T:3"
        assert native_event_key({"id": {"txDigest": "T", "eventSeq": 0}}) == "T:0"
        assert native_event_key({"id": {"txDigest": "T"}}) is None
        assert native_event_key({}) is None


# ============================================================================
# Indexer records
# ============================================================================


class TestExplicitDirection:
    def record(self) -> dict:
        return {
            "txDigest": "D1",
            "direction": "BUY",
            "buyerAddress": BUYER,
            "amountOut": "1500000000",
            "outCoin": {"coinType": TOKEN, "decimals": 9},
            "eventSeq": 0,
            "timestampMs": TS_MS,
        }

    def test_buy_record(self, normalizer: TradeNormalizer) -> None:
        trades = normalizer.normalize_indexer([self.record()], TradeSide.BUY)

        assert len(trades) == 1
        trade = trades[0]
        assert trade.tx_digest == "D1"
        assert trade.event_key == "D1:0"
        assert trade.wallet_address == BUYER
        assert trade.amount_raw == "1500000000"
        assert trade.decimals == 9
        assert trade.timestamp_ms == TS_MS
        assert trade.coin_type == TOKEN
        assert trade.source == "blockberry"
        assert trade.is_buy

    def test_direction_mismatch_drops_record(self, normalizer: TradeNormalizer) -> None:
        assert normalizer.normalize_indexer([self.record()], TradeSide.SELL) == []

    def test_direction_beats_balance_changes(self, normalizer: TradeNormalizer) -> None:
        record = {
            "txDigest": "D1",
            "side": "sell",
            "balanceChanges": [{"coinType": TOKEN, "amount": "10", "owner": {"AddressOwner": BUYER}}],
        }
        assert normalizer.normalize_indexer([record], TradeSide.BUY) == []

    def test_seconds_timestamp_scaled(self, normalizer: TradeNormalizer) -> None:
        record = self.record()
        record["timestampMs"] = 1_700_000_000
        trade = normalizer.normalize_indexer([record], TradeSide.BUY)[0]
        assert trade.timestamp_ms == TS_MS


class TestBalanceChanges:
    def test_buy_from_positive_change(self, normalizer: TradeNormalizer) -> None:
        record = {
            "txDigest": "D2",
            "timestamp": 1_700_000_000,
            "balanceChanges": [
                {"coinType": SUI, "amount": "-5000", "owner": {"AddressOwner": BUYER}},
                {"coinType": "0xABC123::pepe::PEPE", "amount": "2000000000", "owner": {"AddressOwner": BUYER}},
            ],
        }

        trades = normalizer.normalize_indexer([record], TradeSide.BUY)

        assert len(trades) == 1
        assert trades[0].event_key == f"D2:{BUYER}:1"
        assert trades[0].amount_raw == "2000000000"
        assert trades[0].wallet_address == BUYER

    def test_buy_without_owner_is_dropped(self, normalizer: TradeNormalizer) -> None:
        record = {"txDigest": "D2", "balanceChanges": [{"coinType": TOKEN, "amount": "10"}]}
        assert normalizer.normalize_indexer([record], TradeSide.BUY) == []

    def test_sell_from_negative_change(self, normalizer: TradeNormalizer) -> None:
        record = {
            "txDigest": "D3",
            "balanceChanges": [
                {"coinType": TOKEN, "amount": "-3000000000", "owner": {"addressOwner": SELLER}},
            ],
        }

        trades = normalizer.normalize_indexer([record], TradeSide.SELL)

        assert len(trades) == 1
        assert trades[0].event_key == "D3:0"
        assert trades[0].amount_raw == "3000000000"
        assert trades[0].wallet_address == SELLER
        assert trades[0].is_sell

    def test_sell_owner_falls_back_to_record_sender(self, normalizer: TradeNormalizer) -> None:
        record = {
            "txDigest": "D3",
            "sender": SELLER,
            "balanceChanges": [{"coinType": TOKEN, "amount": "-1"}],
        }
        trades = normalizer.normalize_indexer([record], TradeSide.SELL)
        assert trades[0].wallet_address == SELLER

    def test_positive_change_is_not_a_sell(self, normalizer: TradeNormalizer) -> None:
        record = {
            "txDigest": "D2",
            "balanceChanges": [{"coinType": TOKEN, "amount": "10", "owner": {"AddressOwner": BUYER}}],
        }
        assert normalizer.normalize_indexer([record], TradeSide.SELL) == []

    def test_one_trade_per_matching_change(self, normalizer: TradeNormalizer) -> None:
        other = "0x" + "c" * 64
        record = {
            "txDigest": "D9",
            "balanceChanges": [
                {"coinType": TOKEN, "amount": "10", "owner": {"AddressOwner": BUYER}},
                {"coinType": TOKEN, "amount": "20", "owner": {"AddressOwner": other}},
            ],
        }

        trades = normalizer.normalize_indexer([record], TradeSide.BUY)

        assert [t.event_key for t in trades] == [f"D9:{BUYER}:0", f"D9:{other}:1"]


class TestCoinTypeDirection:
    def test_exact_out_coin_is_buy(self, normalizer: TradeNormalizer) -> None:
        record = {
            "txDigest": "D4",
            "coinTypeOut": TOKEN,
            "coinTypeIn": SUI,
            "buyerAddress": BUYER,
            "amountOut": "100",
        }

        trades = normalizer.normalize_indexer([record], TradeSide.BUY)

        assert len(trades) == 1
        assert trades[0].event_key == f"D4:{content_hash(BUYER.lower(), '100', TOKEN.lower())}"
        assert normalizer.normalize_indexer([record], TradeSide.SELL) == []

    def test_content_key_is_stable_across_polls(self, normalizer: TradeNormalizer) -> None:
        record = {"txDigest": "D4", "coinTypeOut": TOKEN, "buyerAddress": BUYER, "amountOut": "100"}

        first = normalizer.normalize_indexer([record], TradeSide.BUY)[0]
        second = normalizer.normalize_indexer([dict(record)], TradeSide.BUY)[0]

        assert first.event_key == second.event_key

    def test_exact_in_coin_is_sell(self, normalizer: TradeNormalizer) -> None:
        record = {
            "txDigest": "D5",
            "coinTypeIn": TOKEN,
            "coinTypeOut": SUI,
            "senderAddress": SELLER,
            "amountIn": "-700",
            "eventSeq": "2",
        }

        trades = normalizer.normalize_indexer([record], TradeSide.SELL)

        assert len(trades) == 1
        assert trades[0].event_key == "D5:2"
        assert trades[0].amount_raw == "700"
        assert trades[0].wallet_address == SELLER

    def test_containment_fallback(self, normalizer: TradeNormalizer) -> None:
        record = {
            "txDigest": "D6",
            "coinTypeOut": f"0x3::wrapper::W<{TOKEN}>",
            "buyerAddress": BUYER,
            "amountOut": "5",
        }
        assert len(normalizer.normalize_indexer([record], TradeSide.BUY)) == 1


class TestDroppedRecords:
    def test_unclassifiable(self, normalizer: TradeNormalizer) -> None:
        record = {"txDigest": "D7", "coinTypeOut": SUI, "buyerAddress": BUYER, "amountOut": "5"}
        assert normalizer.normalize_indexer([record], TradeSide.BUY) == []

    def test_missing_digest(self, normalizer: TradeNormalizer) -> None:
        record = {"coinTypeOut": TOKEN, "buyerAddress": BUYER, "amountOut": "5"}
        assert normalizer.normalize_indexer([record], TradeSide.BUY) == []

    def test_zero_amount(self, normalizer: TradeNormalizer) -> None:
        record = {"txDigest": "D8", "coinTypeOut": TOKEN, "buyerAddress": BUYER, "amountOut": "0"}
        assert normalizer.normalize_indexer([record], TradeSide.BUY) == []

    def test_fractional_amount(self, normalizer: TradeNormalizer) -> None:
        record = {"txDigest": "D8", "coinTypeOut": TOKEN, "buyerAddress": BUYER, "amountOut": "1.5"}
        assert normalizer.normalize_indexer([record], TradeSide.BUY) == []

    def test_missing_wallet(self, normalizer: TradeNormalizer) -> None:
        record = {"txDigest": "D8", "coinTypeOut": TOKEN, "amountOut": "5"}
        assert normalizer.normalize_indexer([record], TradeSide.BUY) == []

    def test_bad_record_does_not_stop_batch(self, normalizer: TradeNormalizer) -> None:
        good = {"txDigest": "D4", "coinTypeOut": TOKEN, "buyerAddress": BUYER, "amountOut": "1", "eventSeq": 1}
        trades = normalizer.normalize_indexer([{"junk": True}, good], TradeSide.BUY)
        assert [t.event_key for t in trades] == ["D4:1"]


# ============================================================================
# Native transfer events
# ============================================================================


def transfer_event(**parsed) -> dict:
    return {
        "id": {"txDigest": "N1", "eventSeq": "0"},
        "timestampMs": str(TS_MS),
        "parsedJson": parsed,
    }


class TestNativeEvents:
    def test_buy_credits_recipient(self, normalizer: TradeNormalizer) -> None:
        event = transfer_event(recipient=BUYER, amount="1500000000")

        trade = normalizer.normalize_native_event(event, TradeSide.BUY)

        assert trade is not None
        assert trade.event_key == "N1:0"
        assert trade.tx_digest == "N1"
        assert trade.wallet_address == BUYER
        assert trade.recipient == BUYER
        assert trade.timestamp_ms == TS_MS
        assert trade.source == "sui"
        assert not trade.sender_pending
        assert not trade.is_self_transfer

    @pytest.mark.parametrize(
        "raw",
        [str(TS_MS // 1000), "2023-11-14T22:13:20Z"],
        ids=["seconds", "iso"],
    )
    def test_timestamp_is_normalized(self, normalizer: TradeNormalizer, raw: str) -> None:
        event = transfer_event(recipient=BUYER, amount="1")
        event["timestampMs"] = raw

        trade = normalizer.normalize_native_event(event, TradeSide.BUY)

        assert trade is not None
        assert trade.timestamp_ms == TS_MS

    def test_buy_without_recipient_is_dropped(self, normalizer: TradeNormalizer) -> None:
        assert normalizer.normalize_native_event(transfer_event(amount="1"), TradeSide.BUY) is None

    def test_missing_amount_is_dropped(self, normalizer: TradeNormalizer) -> None:
        assert normalizer.normalize_native_event(transfer_event(recipient=BUYER), TradeSide.BUY) is None

    def test_missing_id_is_dropped(self, normalizer: TradeNormalizer) -> None:
        event = transfer_event(recipient=BUYER, amount="1")
        del event["id"]
        assert normalizer.normalize_native_event(event, TradeSide.BUY) is None

    def test_nested_fields(self, normalizer: TradeNormalizer) -> None:
        event = transfer_event(fields={"to": BUYER, "value": "42"})
        trade = normalizer.normalize_native_event(event, TradeSide.BUY)
        assert trade is not None
        assert trade.amount_raw == "42"

    def test_sell_waits_for_sender(self, normalizer: TradeNormalizer) -> None:
        event = transfer_event(recipient=BUYER, amount="900")

        trade = normalizer.normalize_native_event(event, TradeSide.SELL)

        assert trade is not None
        assert trade.sender_pending
        assert trade.recipient == BUYER

    def test_normalize_native_filters_batch(self, normalizer: TradeNormalizer) -> None:
        events = [transfer_event(recipient=BUYER, amount="1"), transfer_event(amount="2")]
        assert len(normalizer.normalize_native(events, TradeSide.BUY)) == 1


class TestCompleteSender:
    def sell(self, normalizer: TradeNormalizer):
        trade = normalizer.normalize_native_event(transfer_event(recipient=BUYER, amount="900"), TradeSide.SELL)
        assert trade is not None
        return trade

    def test_sender_becomes_wallet(self, normalizer: TradeNormalizer) -> None:
        completed = TradeNormalizer.complete_sender(self.sell(normalizer), SELLER)
        assert completed is not None
        assert completed.wallet_address == SELLER
        assert not completed.sender_pending

    def test_self_transfer_is_dropped(self, normalizer: TradeNormalizer) -> None:
        assert TradeNormalizer.complete_sender(self.sell(normalizer), BUYER.upper().replace("0X", "0x")) is None

    def test_unknown_sender_is_dropped(self, normalizer: TradeNormalizer) -> None:
        assert TradeNormalizer.complete_sender(self.sell(normalizer), None) is None


# ============================================================================
# Staking events
# ============================================================================


def stake_event(seq: str = "0", **parsed) -> dict:
    fields = {
        "amount": "2000000000",
        "staking_pool": "0xpool",
        "staking_account": "0xaccount",
        "token_address": "abc123::pepe::PEPE",
    }
    fields.update(parsed)
    return {
        "id": {"txDigest": "STK", "eventSeq": seq},
        "timestampMs": str(TS_MS),
        "parsedJson": fields,
    }


class TestStakeEvents:
    def test_stake(self, normalizer: TradeNormalizer) -> None:
        stake = normalizer.normalize_stake_event(stake_event(staker=BUYER), StakeKind.STAKE)

        assert stake is not None
        assert stake.event_key == "STK:0"
        assert stake.tx_digest == "STK"
        assert stake.wallet_address == BUYER
        assert stake.amount_raw == "2000000000"
        assert stake.timestamp_ms == TS_MS
        assert stake.staking_pool == "0xpool"
        assert stake.staking_account == "0xaccount"
        assert stake.is_stake

    def test_unstake_reads_unstaker(self, normalizer: TradeNormalizer) -> None:
        event = stake_event(unstaker=SELLER, staker=BUYER)

        stake = normalizer.normalize_stake_event(event, StakeKind.UNSTAKE)

        assert stake is not None
        assert stake.wallet_address == SELLER
        assert stake.kind is StakeKind.UNSTAKE

    def test_other_token_is_dropped(self, normalizer: TradeNormalizer) -> None:
        event = stake_event(staker=BUYER, token_address="0xdef::other::OTHER")
        assert normalizer.normalize_stake_event(event, StakeKind.STAKE) is None

    @pytest.mark.parametrize(
        "parsed",
        [
            {"token_address": None},
            {"amount": None},
            {"amount": "0"},
        ],
    )
    def test_incomplete_event_is_dropped(self, normalizer: TradeNormalizer, parsed: dict) -> None:
        event = stake_event(staker=BUYER, **parsed)
        assert normalizer.normalize_stake_event(event, StakeKind.STAKE) is None

    def test_missing_wallet_is_dropped(self, normalizer: TradeNormalizer) -> None:
        assert normalizer.normalize_stake_event(stake_event(), StakeKind.STAKE) is None

    def test_normalize_stakes_filters(self, normalizer: TradeNormalizer) -> None:
        events = [
            stake_event("0", staker=BUYER),
            stake_event("1", staker=BUYER, token_address="0xdef::other::OTHER"),
            {"parsedJson": {"staker": BUYER}},
        ]

        stakes = normalizer.normalize_stakes(events, StakeKind.STAKE)

        assert [s.event_key for s in stakes] == ["STK:0"]
