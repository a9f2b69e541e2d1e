"""Tests for field extraction rules and amount/timestamp normalization."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from raffle_trade_tracker.ingestor.extraction import (
    AMOUNT_OUT,
    BUYER,
    COIN_IN,
    COIN_OUT,
    DIGEST,
    DIRECTION,
    EVENT_SEQ,
    TIMESTAMP,
    extract_amount,
    extract_recipient,
    format_amount,
    get_nested_value,
    parse_raw_amount,
    parse_timestamp_ms,
    pick_number,
    pick_string,
)

NOW_MS = 1_700_000_123_456


class TestGetNestedValue:
    def test_top_level_key(self) -> None:
        assert get_nested_value({"a": 1}, "a") == 1

    def test_nested_mapping(self) -> None:
        assert get_nested_value({"owner": {"addressOwner": "0x1"}}, "owner.addressOwner") == "0x1"

    def test_list_index_segment(self) -> None:
        record = {"coinsOut": [{"coinType": "0x2::sui::SUI"}, {"coinType": "other"}]}
        assert get_nested_value(record, "coinsOut.0.coinType") == "0x2::sui::SUI"
        assert get_nested_value(record, "coinsOut.1.coinType") == "other"

    def test_missing_segments_return_none(self) -> None:
        assert get_nested_value({"a": {"b": 1}}, "a.c") is None
        assert get_nested_value({"a": [1]}, "a.5") is None
        assert get_nested_value({"a": [1]}, "a.x") is None
        assert get_nested_value({"a": "str"}, "a.b") is None


class TestPickString:
    def test_first_present_value_wins(self) -> None:
        assert pick_string({"b": "second", "a": "first"}, ["a", "b"]) == "first"

    def test_skips_empty_and_whitespace(self) -> None:
        assert pick_string({"a": "  ", "b": "", "c": " x "}, ["a", "b", "c"]) == "x"

    def test_numbers_are_rendered(self) -> None:
        assert pick_string({"a": 42}, ["a"]) == "42"
        assert pick_string({"a": 3.0}, ["a"]) == "3"

    def test_booleans_and_objects_are_skipped(self) -> None:
        assert pick_string({"a": True, "b": {"x": 1}, "c": "ok"}, ["a", "b", "c"]) == "ok"

    def test_nothing_found(self) -> None:
        assert pick_string({}, ["a", "b"]) is None


class TestPickNumber:
    def test_numeric_string(self) -> None:
        assert pick_number({"a": "9"}, ["a"]) == 9

    def test_skips_non_numeric(self) -> None:
        assert pick_number({"a": "nine", "b": 6}, ["a", "b"]) == 6

    def test_float_value(self) -> None:
        assert pick_number({"a": 1.5}, ["a"]) == 1.5


class TestFieldRules:
    def test_digest_rule_order(self) -> None:
        record = {"digest": "D2", "txDigest": "D1"}
        assert DIGEST.pick_string(record) == "D1"

    def test_digest_alternate_names(self) -> None:
        assert DIGEST.pick_string({"transactionBlock": "TB"}) == "TB"
        assert DIGEST.pick_string({"tx_hash": "H"}) == "H"

    def test_timestamp_rule_prefers_ms_field(self) -> None:
        assert TIMESTAMP.pick_string({"timestamp": "1", "timestampMs": "2"}) == "2"

    def test_direction_rule(self) -> None:
        assert DIRECTION.pick_string({"tradeSide": "BUY"}) == "BUY"

    def test_coin_out_from_list(self) -> None:
        assert COIN_OUT.pick_string({"coinsOut": [{"coinType": "0xabc::t::T"}]}) == "0xabc::t::T"

    def test_coin_in_second_coin(self) -> None:
        record = {"coins": [{"coinType": "first"}, {"coinType": "second"}]}
        assert COIN_IN.pick_string(record) == "second"
        assert COIN_OUT.pick_string(record) == "first"

    def test_buyer_falls_back_to_owner_address(self) -> None:
        assert BUYER.pick_string({"owner": {"addressOwner": "0xowner"}}) == "0xowner"

    def test_amount_out_prefers_out_coin(self) -> None:
        assert AMOUNT_OUT.pick_string({"amount": "1", "outCoin": {"amount": "2"}}) == "2"

    def test_event_seq_numeric(self) -> None:
        assert EVENT_SEQ.pick_string({"eventSeq": 3}) == "3"


class TestRecipientAndAmount:
    def test_recipient_top_level(self) -> None:
        assert extract_recipient({"recipient": "0xr"}) == "0xr"

    def test_recipient_alternate_keys(self) -> None:
        assert extract_recipient({"dst_addr": "0xd"}) == "0xd"
        assert extract_recipient({"destination": "0xe"}) == "0xe"

    def test_recipient_nested_fields(self) -> None:
        assert extract_recipient({"fields": {"to": "0xnested"}}) == "0xnested"

    def test_recipient_missing(self) -> None:
        assert extract_recipient({"amount": "1"}) is None
        assert extract_recipient(None) is None

    def test_amount_keys_in_order(self) -> None:
        assert extract_amount({"value": "2", "amount": "1"}) == "1"
        assert extract_amount({"coinAmount": 7}) == "7"

    def test_amount_zero_is_present(self) -> None:
        assert extract_amount({"amount": 0}) == "0"

    def test_amount_nested_fields(self) -> None:
        assert extract_amount({"fields": {"quantity": "5"}}) == "5"


class TestParseTimestamp:
    def test_milliseconds_kept(self) -> None:
        assert parse_timestamp_ms(1_700_000_000_000, NOW_MS) == 1_700_000_000_000

    def test_seconds_scaled(self) -> None:
        assert parse_timestamp_ms(1_700_000_000, NOW_MS) == 1_700_000_000_000

    def test_above_ms_threshold_kept(self) -> None:
        assert parse_timestamp_ms(2_000_000_000_000_000, NOW_MS) == 2_000_000_000_000_000

    def test_digit_string(self) -> None:
        assert parse_timestamp_ms("1700000000", NOW_MS) == 1_700_000_000_000

    def test_iso_string(self) -> None:
        expected = int(datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC).timestamp() * 1000)
        assert parse_timestamp_ms("2024-01-02T03:04:05Z", NOW_MS) == expected

    def test_naive_iso_is_utc(self) -> None:
        expected = int(datetime(2024, 1, 2, tzinfo=UTC).timestamp() * 1000)
        assert parse_timestamp_ms("2024-01-02T00:00:00", NOW_MS) == expected

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, float("nan")])
    def test_garbage_is_now(self, value: object) -> None:
        assert parse_timestamp_ms(value, NOW_MS) == NOW_MS


class TestFormatAmount:
    def test_fractional(self) -> None:
        assert format_amount("1500000000", 9) == "1.5"

    def test_whole(self) -> None:
        assert format_amount("2000000000", 9) == "2"

    def test_small_fraction_is_padded(self) -> None:
        assert format_amount("1", 9) == "0.000000001"

    def test_zero_decimals(self) -> None:
        assert format_amount("123", 0) == "123"

    def test_invalid_returned_unchanged(self) -> None:
        assert format_amount("abc", 9) == "abc"
        assert format_amount("12", -1) == "12"


class TestParseRawAmount:
    def test_integer_string(self) -> None:
        assert parse_raw_amount(" -25 ") == -25

    def test_fractional_rejected(self) -> None:
        assert parse_raw_amount("1.5") is None

    def test_none(self) -> None:
        assert parse_raw_amount(None) is None
