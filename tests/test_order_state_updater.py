"""Tests for applying exchange fills to the cycle state."""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from cyclebot.models import CycleStatus, EventType, parse_event_metadata
from cyclebot.services.exchange import OrderResult, OrderSide, OrderStatus
from cyclebot.services.order_state_updater import (
    FillValidationError,
    OrderStateUpdater,
    calculate_buy_updates,
    calculate_sell_updates,
)
from cyclebot.services.state_transactions import VersionConflictError

BOT_ID = "test-bot"


def make_order(side, qty, quote, price, fee_usdt="0", fee_btc="0", client_order_id="cb-test") -> OrderResult:
    return OrderResult(
        order_id="1",
        client_order_id=client_order_id,
        symbol="BTCUSDT",
        side=side,
        status=OrderStatus.FILLED,
        executed_qty=Decimal(qty),
        cummulative_quote_qty=Decimal(quote),
        avg_price=Decimal(price),
        fee_usdt=Decimal(fee_usdt),
        fee_btc=Decimal(fee_btc),
    )


@pytest.fixture
def holding_state(cycle_factory):
    return cycle_factory(
        status=CycleStatus.HOLDING,
        capital_available=Decimal("800"),
        btc_accumulated=Decimal("0.004"),
        cost_accum_usdt=Decimal("200"),
        btc_accum_net=Decimal("0.004"),
        purchases_remaining=4,
        reference_price=Decimal("50000"),
        pending_order_id="cb-test",
    )


class TestBuyUpdates:

    def test_first_buy_starts_holding(self, cycle_factory):
        updates = calculate_buy_updates(cycle_factory(), make_order(OrderSide.BUY, "0.004", "200", "50000"))

        assert updates == {
            "btc_accumulated": Decimal("0.004"),
            "cost_accum_usdt": Decimal("200"),
            "btc_accum_net": Decimal("0.004"),
            "capital_available": Decimal("800"),
            "purchases_remaining": 4,
            "reference_price": Decimal("50000"),
            "status": CycleStatus.HOLDING,
            "pending_order_id": None,
        }

    def test_usdt_fee_is_paid_from_capital_and_raises_reference(self, cycle_factory):
        order = make_order(OrderSide.BUY, "0.004", "200", "50000", fee_usdt="0.2")

        updates = calculate_buy_updates(cycle_factory(), order)

        assert updates["capital_available"] == Decimal("799.8")
        assert updates["cost_accum_usdt"] == Decimal("200.2")
        assert updates["reference_price"] == Decimal("50050")

    def test_btc_fee_reduces_position(self, cycle_factory):
        order = make_order(OrderSide.BUY, "0.004", "200", "50000", fee_btc="0.000004")

        updates = calculate_buy_updates(cycle_factory(), order)

        assert updates["btc_accumulated"] == Decimal("0.003996")
        assert updates["capital_available"] == Decimal("800")
        assert updates["cost_accum_usdt"] == Decimal("200.2")
        assert updates["reference_price"] == Decimal("200.2") / Decimal("0.003996")

    def test_second_buy_averages_down(self, holding_state):
        order = make_order(OrderSide.BUY, "0.00421", "199.975", "47500")

        updates = calculate_buy_updates(holding_state, order)

        assert updates["btc_accumulated"] == Decimal("0.00821")
        assert updates["purchases_remaining"] == 3
        assert updates["status"] == CycleStatus.HOLDING
        assert updates["reference_price"] == Decimal("399.975") / Decimal("0.00821")
        assert updates["reference_price"] < Decimal("50000")

    def test_no_purchases_remaining(self, cycle_factory):
        with pytest.raises(FillValidationError, match="no purchases remaining"):
            calculate_buy_updates(
                cycle_factory(purchases_remaining=0), make_order(OrderSide.BUY, "0.004", "200", "50000")
            )

    def test_empty_fill(self, cycle_factory):
        with pytest.raises(FillValidationError, match="nothing filled"):
            calculate_buy_updates(cycle_factory(), make_order(OrderSide.BUY, "0", "0", "50000"))

    def test_fill_larger_than_capital(self, cycle_factory):
        with pytest.raises(FillValidationError, match="Insufficient capital"):
            calculate_buy_updates(
                cycle_factory(capital_available=Decimal("100")), make_order(OrderSide.BUY, "0.004", "200", "50000")
            )


class TestSellUpdates:

    def test_full_sell_resets_cycle(self, holding_state):
        order = make_order(OrderSide.SELL, "0.004", "210", "52500", fee_usdt="0.21")

        updates = calculate_sell_updates(holding_state, order, max_purchases=5)

        assert updates == {
            "btc_accumulated": Decimal("0"),
            "cost_accum_usdt": Decimal("0"),
            "btc_accum_net": Decimal("0"),
            "capital_available": Decimal("1009.79"),
            "purchases_remaining": 5,
            "reference_price": Decimal("50000"),
            "buy_amount": Decimal("201"),
            "status": CycleStatus.READY,
            "pending_order_id": None,
        }

    def test_btc_fee_valued_at_fill_price(self, holding_state):
        order = make_order(OrderSide.SELL, "0.004", "210", "52500", fee_btc="0.000001")

        updates = calculate_sell_updates(holding_state, order, max_purchases=5)

        assert updates["capital_available"] == Decimal("1009.9475")

    def test_dust_remainder_counts_as_complete(self, holding_state):
        order = make_order(OrderSide.SELL, "0.00399999999", "210", "52500")

        updates = calculate_sell_updates(holding_state, order, max_purchases=5)

        assert updates["btc_accumulated"] == Decimal("0")
        assert updates["status"] == CycleStatus.READY

    def test_partial_sell_keeps_holding(self, holding_state):
        order = make_order(OrderSide.SELL, "0.002", "105", "52500")

        updates = calculate_sell_updates(holding_state, order, max_purchases=5)

        assert updates == {
            "btc_accumulated": Decimal("0.002"),
            "capital_available": Decimal("905"),
            "status": CycleStatus.HOLDING,
            "pending_order_id": None,
        }

    def test_nothing_held(self, cycle_factory):
        with pytest.raises(FillValidationError, match="no BTC accumulated"):
            calculate_sell_updates(cycle_factory(), make_order(OrderSide.SELL, "0.004", "210", "52500"), 5)

    def test_oversell(self, holding_state):
        with pytest.raises(FillValidationError, match="Cannot sell more than accumulated"):
            calculate_sell_updates(holding_state, make_order(OrderSide.SELL, "0.005", "262.5", "52500"), 5)


class TestScenarios:
    """Worked examples: 0.01 BTC bought for 500 USDT, then sold for 550."""

    def test_buy_scenario(self, cycle_factory):
        state = cycle_factory(buy_amount=Decimal("500"), purchases_remaining=5)

        updates = calculate_buy_updates(state, make_order(OrderSide.BUY, "0.01", "500", "50000"))

        assert updates["capital_available"] == Decimal("500")
        assert updates["btc_accumulated"] == Decimal("0.01")
        assert updates["purchases_remaining"] == 4
        assert updates["status"] == CycleStatus.HOLDING
        assert updates["reference_price"] == Decimal("50000")

    def test_sell_scenario(self, cycle_factory):
        state = cycle_factory(
            status=CycleStatus.HOLDING,
            capital_available=Decimal("500"),
            btc_accumulated=Decimal("0.01"),
            cost_accum_usdt=Decimal("500"),
            btc_accum_net=Decimal("0.01"),
            purchases_remaining=4,
        )

        updates = calculate_sell_updates(state, make_order(OrderSide.SELL, "0.01", "550", "55000"), 5)

        assert updates["capital_available"] == Decimal("1050")
        assert updates["purchases_remaining"] == 5
        assert updates["status"] == CycleStatus.READY
        assert updates["buy_amount"] == Decimal("210")


class TestOrderStateUpdater:

    @pytest.fixture
    def updater(self, state_manager):
        return OrderStateUpdater(state_manager)

    @pytest.mark.asyncio
    async def test_buy_then_sell_completes_cycle(self, updater, initialized_state):
        bought = await updater.apply_buy_fill(make_order(OrderSide.BUY, "0.004", "200", "50000"))

        assert bought.cycle_complete is False
        assert bought.state.status == CycleStatus.HOLDING
        assert bought.state.capital_available == Decimal("800")
        assert bought.state.reference_price == Decimal("50000")
        assert bought.summary["btc_bought"] == Decimal("0.004")

        sold = await updater.apply_sell_fill(make_order(OrderSide.SELL, "0.004", "210", "52500"))

        assert sold.cycle_complete is True
        assert sold.state.status == CycleStatus.READY
        assert sold.state.capital_available == Decimal("1010")
        assert sold.state.buy_amount == Decimal("202")
        assert sold.state.purchases_remaining == 5
        # No ATH recorded yet, so there is no reference until the next candle
        assert sold.state.reference_price is None
        assert sold.summary["profit"] == Decimal("10")

        events = await updater.event_log.get_events(BOT_ID)
        kinds = [e.event_type for e in events]
        assert EventType.BUY_EXECUTED in kinds
        assert EventType.CYCLE_COMPLETE in kinds

        complete = [e for e in events if e.event_type == EventType.CYCLE_COMPLETE][0]
        assert parse_event_metadata(complete.event_metadata).profit == Decimal("10")

    @pytest.mark.asyncio
    async def test_losing_cycle_reports_negative_profit(self, updater, initialized_state):
        await updater.apply_buy_fill(make_order(OrderSide.BUY, "0.004", "200", "50000"))

        sold = await updater.apply_sell_fill(make_order(OrderSide.SELL, "0.004", "190", "47500"))

        assert sold.summary["profit"] == Decimal("-10")
        assert sold.state.capital_available == Decimal("990")

    @pytest.mark.asyncio
    async def test_partial_sell_has_no_profit(self, updater, initialized_state):
        await updater.apply_buy_fill(make_order(OrderSide.BUY, "0.004", "200", "50000"))

        sold = await updater.apply_sell_fill(make_order(OrderSide.SELL, "0.001", "52.5", "52500"))

        assert sold.cycle_complete is False
        assert sold.summary["profit"] is None
        assert sold.state.btc_accumulated == Decimal("0.003")
        assert await updater.event_log.get_events(BOT_ID, EventType.CYCLE_COMPLETE) == []

    @pytest.mark.asyncio
    async def test_wrong_side_rejected(self, updater, initialized_state):
        with pytest.raises(FillValidationError):
            await updater.apply_buy_fill(make_order(OrderSide.SELL, "0.004", "210", "52500"))
        with pytest.raises(FillValidationError):
            await updater.apply_sell_fill(make_order(OrderSide.BUY, "0.004", "200", "50000"))

    @pytest.mark.asyncio
    async def test_concurrent_write_is_not_overwritten(self, updater, initialized_state, transactions):
        real_apply = updater.state_manager.apply_update
        interleaved = []

        async def apply_after_other_writer(updates, critical=None, expected_version=None):
            if not interleaved:
                interleaved.append(await transactions.update_state_atomic(
                    BOT_ID, {"capital_available": Decimal("1500")}
                ))
            return await real_apply(updates, critical=critical, expected_version=expected_version)

        with patch.object(updater.state_manager, "apply_update", side_effect=apply_after_other_writer):
            bought = await updater.apply_buy_fill(make_order(OrderSide.BUY, "0.004", "200", "50000"))

        # Recomputed from the other writer's capital, not from the stale read
        assert bought.state.capital_available == Decimal("1300")
        assert bought.state.btc_accumulated == Decimal("0.004")
        assert bought.state.purchases_remaining == 4
        assert bought.state.version == 3

    @pytest.mark.asyncio
    async def test_gives_up_when_every_attempt_conflicts(self, state_manager, initialized_state):
        updater = OrderStateUpdater(state_manager, max_attempts=2)
        conflict = VersionConflictError(1, 2)

        with patch.object(state_manager, "apply_update", AsyncMock(side_effect=conflict)) as apply_update:
            with pytest.raises(VersionConflictError):
                await updater.apply_buy_fill(make_order(OrderSide.BUY, "0.004", "200", "50000"))

        assert apply_update.await_count == 2
        assert await updater.event_log.get_events(BOT_ID, EventType.BUY_EXECUTED) == []
