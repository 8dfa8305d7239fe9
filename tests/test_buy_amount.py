"""Tests for tranche sizing."""

import pytest
from decimal import Decimal

from cyclebot.services.buy_amount import BuyAmountCalculator, floor_to_precision


@pytest.fixture
def calculator():
    return BuyAmountCalculator()


class TestInitialBuyAmount:

    def test_even_split(self, calculator):
        assert calculator.calculate_initial_buy_amount(Decimal("300"), 10, Decimal("0")) == Decimal("30")

    def test_floors_to_eight_decimals(self, calculator):
        amount = calculator.calculate_initial_buy_amount(Decimal("100"), 3, Decimal("10"))
        assert amount == Decimal("33.33333333")

    def test_below_minimum_raises(self, calculator):
        with pytest.raises(ValueError, match="below minimum"):
            calculator.calculate_initial_buy_amount(Decimal("50"), 10, Decimal("10"))

    def test_requires_positive_capital(self, calculator):
        with pytest.raises(ValueError, match="Capital"):
            calculator.calculate_initial_buy_amount(Decimal("0"), 10, Decimal("0"))

    def test_requires_positive_max_purchases(self, calculator):
        with pytest.raises(ValueError, match="Max purchases"):
            calculator.calculate_initial_buy_amount(Decimal("100"), 0, Decimal("0"))


class TestNextBuyAmount:

    def test_regular_tranche_uses_stored_amount(self, calculator, cycle_factory):
        state = cycle_factory(purchases_remaining=3, buy_amount=Decimal("30"), capital_available=Decimal("90"))
        assert calculator.calculate_buy_amount(state) == Decimal("30")

    def test_last_tranche_uses_all_capital(self, calculator, cycle_factory):
        state = cycle_factory(
            purchases_remaining=1,
            buy_amount=Decimal("30"),
            capital_available=Decimal("31.123456789"),
        )
        # Exactly the remaining capital, no flooring
        assert calculator.calculate_buy_amount(state) == Decimal("31.123456789")

    def test_no_purchases_remaining_raises(self, calculator, cycle_factory):
        with pytest.raises(ValueError, match="No purchases remaining"):
            calculator.calculate_buy_amount(cycle_factory(purchases_remaining=0))

    def test_unset_buy_amount_raises(self, calculator, cycle_factory):
        with pytest.raises(ValueError, match="not set"):
            calculator.calculate_buy_amount(cycle_factory(purchases_remaining=2, buy_amount=None))

    def test_purchase_decision_flags_last_and_skip(self, calculator, cycle_factory):
        state = cycle_factory(purchases_remaining=1, capital_available=Decimal("5"))
        decision = calculator.get_purchase_decision(state, Decimal("10"))

        assert decision.amount == Decimal("5")
        assert decision.is_last_purchase is True
        assert decision.should_skip is True
        assert "below minimum" in decision.skip_reason


class TestMinimums:

    def test_skip_below_min_buy(self, calculator):
        assert calculator.should_skip_purchase(Decimal("9.99"), Decimal("10")) is True
        assert calculator.should_skip_purchase(Decimal("10"), Decimal("10")) is False

    def test_exchange_minimum_wins_when_higher(self, calculator):
        reason = calculator.get_skip_reason(Decimal("12"), Decimal("10"), Decimal("15"))
        assert "exchange minimum" in reason

    def test_extract_min_notional(self):
        info = {"filters": [
            {"filterType": "PRICE_FILTER", "tickSize": "0.01"},
            {"filterType": "NOTIONAL", "minNotional": "5.00000000"},
        ]}
        assert BuyAmountCalculator.extract_min_notional(info) == Decimal("5")

    @pytest.mark.parametrize("raw", ["abc", "-3", "NaN", None])
    def test_extract_min_notional_bad_values(self, raw):
        info = {"filters": [{"filterType": "MIN_NOTIONAL", "minNotional": raw}]}
        assert BuyAmountCalculator.extract_min_notional(info) == Decimal("0")

    def test_extract_min_notional_missing_filter(self):
        assert BuyAmountCalculator.extract_min_notional({"filters": []}) == Decimal("0")


def test_floor_to_precision():
    assert floor_to_precision(Decimal("1.999999999")) == Decimal("1.99999999")
    assert floor_to_precision(Decimal("2.5"), 0) == Decimal("2")
