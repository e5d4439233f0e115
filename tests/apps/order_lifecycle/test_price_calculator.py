"""
Unit tests for exit price level calculation.

Tests cover:
- Buy and sell level formulas
- Half-up rounding to the price increment
- Rounding idempotence
- Input validation
"""

from decimal import Decimal

import pytest

from apps.order_lifecycle.exceptions import InvalidInputError
from apps.order_lifecycle.models import PriceLevels
from apps.order_lifecycle.price_calculator import compute_price_levels, round_to_increment


class TestComputePriceLevels:
    """Tests for compute_price_levels."""

    def test_buy_levels_for_aapl_example(self):
        """Buy at 150.00 with 5% target and 2% stop gives 157.50 / 147.00."""
        levels = compute_price_levels(Decimal("150.00"), "buy", Decimal("5"), Decimal("2"))

        assert levels == PriceLevels(
            target_price=Decimal("157.50"), stop_price=Decimal("147.00")
        )

    def test_sell_levels_invert(self):
        """Sell places the target below and the stop above the reference."""
        levels = compute_price_levels(Decimal("150.00"), "sell", Decimal("5"), Decimal("2"))

        assert levels.target_price == Decimal("142.50")
        assert levels.stop_price == Decimal("153.00")

    @pytest.mark.parametrize(
        ("reference", "target_pct", "stop_pct"),
        [
            (Decimal("0.87"), Decimal("3"), Decimal("1.5")),
            (Decimal("12.34"), Decimal("0.5"), Decimal("0.25")),
            (Decimal("150.00"), Decimal("5"), Decimal("2")),
            (Decimal("4321.09"), Decimal("12.5"), Decimal("7")),
        ],
    )
    def test_levels_bracket_reference(self, reference, target_pct, stop_pct):
        """Positive percentages put buy target above and stop below; sell inverts."""
        buy = compute_price_levels(reference, "buy", target_pct, stop_pct)
        sell = compute_price_levels(reference, "sell", target_pct, stop_pct)

        assert buy.target_price > reference
        assert buy.stop_price < reference
        assert sell.target_price < reference
        assert sell.stop_price > reference

    def test_zero_percentages_return_reference(self):
        """Zero distances put both levels at the reference price."""
        levels = compute_price_levels(Decimal("99.99"), "buy", Decimal("0"), Decimal("0"))

        assert levels.target_price == Decimal("99.99")
        assert levels.stop_price == Decimal("99.99")

    def test_rounds_half_up(self):
        """A level exactly between two cents rounds up."""
        # 100.10 * 1.05 = 105.105
        levels = compute_price_levels(Decimal("100.10"), "buy", Decimal("5"), Decimal("0"))

        assert levels.target_price == Decimal("105.11")

    def test_custom_increment(self):
        """Levels snap to a coarser increment."""
        levels = compute_price_levels(
            Decimal("100"), "buy", Decimal("1.03"), Decimal("1"), increment=Decimal("0.05")
        )

        assert levels.target_price == Decimal("101.05")
        assert levels.stop_price == Decimal("99.00")

    def test_accepts_int_and_str_inputs(self):
        """Non-Decimal numerics are converted."""
        levels = compute_price_levels(150, "buy", 5, "2")

        assert levels.target_price == Decimal("157.50")
        assert levels.stop_price == Decimal("147.00")

    @pytest.mark.parametrize("reference", [Decimal("0"), Decimal("-1")])
    def test_rejects_non_positive_reference(self, reference):
        with pytest.raises(InvalidInputError):
            compute_price_levels(reference, "buy", Decimal("5"), Decimal("2"))

    def test_rejects_negative_percentage(self):
        with pytest.raises(InvalidInputError) as exc_info:
            compute_price_levels(Decimal("150"), "buy", Decimal("-1"), Decimal("2"))

        assert exc_info.value.details["target_percentage"] == "-1"

    def test_rejects_unknown_direction(self):
        with pytest.raises(InvalidInputError):
            compute_price_levels(Decimal("150"), "short", Decimal("5"), Decimal("2"))

    def test_rejects_stop_at_or_below_zero(self):
        """A 100% stop on a long position would be a zero stop price."""
        with pytest.raises(InvalidInputError):
            compute_price_levels(Decimal("150"), "buy", Decimal("5"), Decimal("100"))


class TestRoundToIncrement:
    """Tests for round_to_increment."""

    @pytest.mark.parametrize(
        ("price", "expected"),
        [
            (Decimal("157.505"), Decimal("157.51")),
            (Decimal("157.504"), Decimal("157.50")),
            (Decimal("0.005"), Decimal("0.01")),
            (Decimal("147"), Decimal("147.00")),
        ],
    )
    def test_half_up_to_cent(self, price, expected):
        assert round_to_increment(price) == expected

    @pytest.mark.parametrize(
        "price", [Decimal("157.505"), Decimal("1.999"), Decimal("42"), Decimal("0.125")]
    )
    def test_idempotent(self, price):
        """Rounding an already rounded price returns the same value."""
        once = round_to_increment(price)

        assert round_to_increment(once) == once

    def test_rejects_non_positive_increment(self):
        with pytest.raises(InvalidInputError):
            round_to_increment(Decimal("1.00"), Decimal("0"))
