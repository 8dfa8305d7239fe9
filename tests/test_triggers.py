"""Tests for buy and sell trigger detection."""

import pytest
from decimal import Decimal

from cyclebot.models import CycleStatus
from cyclebot.services.buy_trigger import BuyTriggerDetector, calculate_buy_threshold
from cyclebot.services.exchange import BalanceSnapshot
from cyclebot.services.sell_trigger import SellTriggerDetector, calculate_sell_threshold


def balances(usdt="1000", btc="0") -> BalanceSnapshot:
    return BalanceSnapshot(usdt=Decimal(usdt), btc=Decimal(btc))


@pytest.fixture
def buy_detector(strategy_config):
    return BuyTriggerDetector(strategy_config)


@pytest.fixture
def sell_detector(strategy_config):
    return SellTriggerDetector(strategy_config)


@pytest.fixture
def holding_state(cycle_factory):
    return cycle_factory(
        status=CycleStatus.HOLDING,
        capital_available=Decimal("800"),
        btc_accumulated=Decimal("0.01"),
        cost_accum_usdt=Decimal("500"),
        btc_accum_net=Decimal("0.01"),
        purchases_remaining=4,
        reference_price=Decimal("50000"),
    )


class TestBuyTrigger:
    """Reference 50000 with a 5% drop gives a 47500 threshold."""

    def test_triggers_at_threshold(self, buy_detector, cycle_factory, candle_factory):
        result = buy_detector.check_buy_trigger(cycle_factory(), candle_factory("47500"), balances())

        assert result.should_buy is True
        assert result.buy_amount == Decimal("200")
        assert all(result.validations.values())

    def test_price_above_threshold(self, buy_detector, cycle_factory, candle_factory):
        result = buy_detector.check_buy_trigger(cycle_factory(), candle_factory("47501"), balances())

        assert result.should_buy is False
        assert result.validations["price_condition"] is False
        assert "above buy threshold" in result.reason

    def test_paused_never_buys(self, buy_detector, cycle_factory, candle_factory):
        state = cycle_factory(status=CycleStatus.PAUSED)
        result = buy_detector.check_buy_trigger(state, candle_factory("40000"), balances())

        assert result.should_buy is False
        assert result.reason == "Strategy is PAUSED"

    def test_no_purchases_remaining(self, buy_detector, cycle_factory, candle_factory):
        result = buy_detector.check_buy_trigger(
            cycle_factory(purchases_remaining=0), candle_factory("40000"), balances()
        )
        assert result.reason == "No purchases remaining"

    def test_missing_reference_price(self, buy_detector, cycle_factory, candle_factory):
        result = buy_detector.check_buy_trigger(
            cycle_factory(reference_price=None), candle_factory("40000"), balances()
        )
        assert result.reason == "Reference price is not set"

    def test_insufficient_capital(self, buy_detector, cycle_factory, candle_factory):
        state = cycle_factory(capital_available=Decimal("100"))
        result = buy_detector.check_buy_trigger(state, candle_factory("47000"), balances(usdt="100"))

        assert result.should_buy is False
        assert "Insufficient capital" in result.reason

    def test_usdt_drift_at_threshold_blocks(self, buy_detector, cycle_factory, candle_factory):
        result = buy_detector.check_buy_trigger(cycle_factory(), candle_factory("47000"), balances(usdt="1005"))

        assert result.should_buy is False
        assert result.validations["usdt_drift_ok"] is False
        assert "USDT drift" in result.reason

    def test_usdt_drift_below_threshold_passes(self, buy_detector, cycle_factory, candle_factory):
        result = buy_detector.check_buy_trigger(cycle_factory(), candle_factory("47000"), balances(usdt="1004.9"))
        assert result.should_buy is True

    def test_last_tranche_spends_remaining_capital(self, buy_detector, cycle_factory, candle_factory):
        state = cycle_factory(purchases_remaining=1, capital_available=Decimal("150"))
        result = buy_detector.check_buy_trigger(state, candle_factory("47000"), balances(usdt="150"))

        assert result.should_buy is True
        assert result.buy_amount == Decimal("150")

    def test_tranche_below_minimum_skipped(self, buy_detector, cycle_factory, candle_factory):
        state = cycle_factory(purchases_remaining=1, capital_available=Decimal("5"))
        result = buy_detector.check_buy_trigger(state, candle_factory("47000"), balances(usdt="5"))

        assert result.should_buy is False
        assert result.validations["above_minimum"] is False
        assert "below minimum" in result.reason

    def test_thresholds(self, buy_detector, cycle_factory):
        assert calculate_buy_threshold(Decimal("50000"), Decimal("0.05")) == Decimal("47500")
        assert buy_detector.get_next_buy_threshold(cycle_factory()) == Decimal("47500")
        assert buy_detector.would_trigger_at_price(cycle_factory(), Decimal("47499")) is True
        assert buy_detector.would_trigger_at_price(cycle_factory(), Decimal("47501")) is False


class TestSellTrigger:
    """Reference 50000 with a 5% rise gives a 52500 threshold."""

    def test_triggers_at_threshold_and_sells_everything(self, sell_detector, holding_state, candle_factory):
        result = sell_detector.check_sell_trigger(
            holding_state, candle_factory("52500"), balances(usdt="800", btc="0.01")
        )

        assert result.should_sell is True
        assert result.sell_amount == holding_state.btc_accumulated

    def test_price_below_threshold(self, sell_detector, holding_state, candle_factory):
        result = sell_detector.check_sell_trigger(
            holding_state, candle_factory("52499"), balances(usdt="800", btc="0.01")
        )
        assert result.should_sell is False
        assert "below sell threshold" in result.reason

    def test_nothing_to_sell(self, sell_detector, cycle_factory, candle_factory):
        result = sell_detector.check_sell_trigger(cycle_factory(), candle_factory("60000"), balances())
        assert result.reason == "No BTC accumulated to sell"

    def test_small_shortfall_reports_insufficient_balance(self, sell_detector, holding_state, candle_factory):
        result = sell_detector.check_sell_trigger(
            holding_state, candle_factory("53000"), balances(usdt="800", btc="0.00999")
        )
        assert result.validations["sufficient_balance"] is False
        assert result.reason.startswith("Insufficient BTC balance")

    def test_moderate_shortfall_reports_drift(self, sell_detector, holding_state, candle_factory):
        result = sell_detector.check_sell_trigger(
            holding_state, candle_factory("53000"), balances(usdt="800", btc="0.0099")
        )
        assert result.reason.startswith("BTC drift")

    def test_major_shortfall_reports_insufficient_balance(self, sell_detector, holding_state, candle_factory):
        result = sell_detector.check_sell_trigger(
            holding_state, candle_factory("53000"), balances(usdt="800", btc="0.005")
        )
        assert result.reason.startswith("Insufficient BTC balance")

    def test_surplus_beyond_threshold_blocks(self, sell_detector, holding_state, candle_factory):
        result = sell_detector.check_sell_trigger(
            holding_state, candle_factory("53000"), balances(usdt="800", btc="0.0101")
        )
        assert result.validations["sufficient_balance"] is True
        assert result.validations["btc_drift_ok"] is False

    def test_below_min_notional(self, strategy_config, cycle_factory, candle_factory):
        detector = SellTriggerDetector(strategy_config.merged({"exchange_min_notional": "10"}))
        state = cycle_factory(
            status=CycleStatus.HOLDING,
            btc_accumulated=Decimal("0.0001"),
            cost_accum_usdt=Decimal("5"),
            btc_accum_net=Decimal("0.0001"),
        )
        result = detector.check_sell_trigger(state, candle_factory("52500"), balances(btc="0.0001"))

        assert result.should_sell is False
        assert "Notional value" in result.reason

    def test_thresholds(self, sell_detector, holding_state, cycle_factory):
        assert calculate_sell_threshold(Decimal("50000"), Decimal("0.05")) == Decimal("52500")
        assert sell_detector.get_sell_threshold(holding_state) == Decimal("52500")
        assert sell_detector.get_sell_threshold(cycle_factory()) is None
