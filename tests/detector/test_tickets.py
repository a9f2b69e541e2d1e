"""Tests for ticket math."""

from decimal import Decimal

import pytest

from raffle_trade_tracker.detector.tickets import (
    DEFAULT_RATIO,
    MAX_SAFE_INTEGER,
    TicketRatio,
    compute_stake_bonus,
    compute_ticket_delta,
)


class TestTicketRatio:
    """Tests for TicketRatio."""

    def test_whole_ratio(self) -> None:
        ratio = TicketRatio.from_value(Decimal("100"))

        assert ratio.numerator == 100_000_000
        assert ratio.denominator == 1_000_000
        assert ratio.as_decimal() == Decimal("100")

    def test_fractional_ratio(self) -> None:
        ratio = TicketRatio.from_value("2.5")
        assert ratio.numerator == 2_500_000
        assert float(ratio) == 2.5

    def test_finer_than_six_digits_is_floored(self) -> None:
        assert TicketRatio.from_value("0.0000019").numerator == 1

    def test_default_ratio(self) -> None:
        assert DEFAULT_RATIO.as_decimal() == Decimal("100")

    @pytest.mark.parametrize("value", ["abc", "-1", "NaN", "Infinity"])
    def test_invalid_values(self, value: str) -> None:
        with pytest.raises(ValueError):
            TicketRatio.from_value(value)


class TestComputeTicketDelta:
    """Tests for compute_ticket_delta."""

    def test_one_and_a_half_tokens(self) -> None:
        """Test 1.5 tokens at 100 tickets per token."""
        assert compute_ticket_delta("1500000000", 9) == 150

    def test_floors_partial_tickets(self) -> None:
        """Test that 0.999999999 tokens gives 99 tickets, not 100."""
        assert compute_ticket_delta("999999999", 9) == 99

    def test_zero_decimals(self) -> None:
        assert compute_ticket_delta("3", 0) == 300

    def test_fractional_ratio(self) -> None:
        ratio = TicketRatio.from_value("2.5")
        assert compute_ticket_delta("3000000000", 9, ratio) == 7

    def test_huge_amount_is_exact(self) -> None:
        """Test that integer math stays exact beyond float precision."""
        raw = str(10**17 + 1)
        assert compute_ticket_delta(raw, 18, TicketRatio.from_value(1)) == 0
        assert compute_ticket_delta(str(123_456_789 * 10**18), 18, TicketRatio.from_value(1)) == 123_456_789

    def test_minimum_purchase_below(self) -> None:
        """Test that half a token with a minimum of one token earns nothing."""
        assert compute_ticket_delta("500000000", 9, minimum_purchase=Decimal("1")) == 0

    def test_minimum_purchase_met_exactly(self) -> None:
        assert compute_ticket_delta("1000000000", 9, minimum_purchase=Decimal("1")) == 100

    def test_minimum_purchase_fractional(self) -> None:
        assert compute_ticket_delta("400000000", 9, minimum_purchase=Decimal("0.5")) == 0
        assert compute_ticket_delta("600000000", 9, minimum_purchase=Decimal("0.5")) == 60

    def test_zero_minimum_is_ignored(self) -> None:
        assert compute_ticket_delta("10000000", 9, minimum_purchase=Decimal("0")) == 1

    def test_clamped_to_max_safe_integer(self) -> None:
        assert compute_ticket_delta(str(10**30), 0) == MAX_SAFE_INTEGER

    def test_negative_amount_is_zero(self) -> None:
        assert compute_ticket_delta("-1500000000", 9) == 0

    def test_malformed_amount_never_raises(self) -> None:
        assert compute_ticket_delta("not-a-number", 9) == 0

    def test_negative_decimals_uses_float_fallback(self) -> None:
        """Test that invalid decimals fall back to an approximation instead of raising."""
        assert compute_ticket_delta("15", -1) == 1500


class TestComputeStakeBonus:
    def test_default_quarter_of_buy_tickets(self) -> None:
        # 1.5 tokens at 100 tickets/token is 150; a quarter of that floors to 37
        assert compute_stake_bonus("1500000000", 9) == 37

    def test_custom_percent_and_ratio(self) -> None:
        assert compute_stake_bonus("2000000000", 9, TicketRatio.from_value("2.5"), bonus_percent=50) == 2

    def test_zero_percent(self) -> None:
        assert compute_stake_bonus("1500000000", 9, bonus_percent=0) == 0

    def test_malformed_amount_never_raises(self) -> None:
        assert compute_stake_bonus("lots", 9) == 0
