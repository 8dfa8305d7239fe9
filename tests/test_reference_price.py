"""Tests for the fee-inclusive reference price."""

import pytest
from decimal import Decimal

from cyclebot.services.reference_price import Purchase, ReferencePriceCalculator


def make_purchase(usdt_spent="100", btc_filled="0.002", fee_usdt="0", fee_btc="0", fill_price="50000") -> Purchase:
    return Purchase(
        usdt_spent=Decimal(usdt_spent),
        btc_filled=Decimal(btc_filled),
        fee_usdt=Decimal(fee_usdt),
        fee_btc=Decimal(fee_btc),
        fill_price=Decimal(fill_price),
    )


class TestReferencePriceFormula:
    """cost / net BTC over every purchase of the cycle."""

    def test_single_purchase_without_fees(self):
        calc = ReferencePriceCalculator()
        calc.add_purchase(make_purchase(usdt_spent="500", btc_filled="0.01"))

        assert calc.get_current_reference_price() == Decimal("50000")

    def test_usdt_fee_raises_cost_basis(self):
        calc = ReferencePriceCalculator()
        calc.add_purchase(make_purchase(usdt_spent="500", btc_filled="0.01", fee_usdt="0.5"))

        assert calc.get_current_reference_price() == Decimal("50050")

    def test_btc_fee_counts_as_cost_and_reduces_net(self):
        purchase = make_purchase(usdt_spent="500", btc_filled="0.01", fee_btc="0.00001")

        assert purchase.cost == Decimal("500.5")
        assert purchase.net_btc == Decimal("0.00999")

        calc = ReferencePriceCalculator()
        calc.add_purchase(purchase)
        assert calc.get_current_reference_price() == Decimal("500.5") / Decimal("0.00999")

    def test_incremental_matches_batch(self):
        purchases = [
            make_purchase(usdt_spent="100", btc_filled="0.002", fee_usdt="0.1", fill_price="50000"),
            make_purchase(usdt_spent="100", btc_filled="0.0021", fee_btc="0.0000021", fill_price="47619.04"),
            make_purchase(usdt_spent="100", btc_filled="0.00222", fee_usdt="0.1", fill_price="45045.05"),
        ]

        calc = ReferencePriceCalculator()
        for purchase in purchases:
            calc.add_purchase(purchase)

        assert calc.purchase_count == 3
        assert calc.get_current_reference_price() == ReferencePriceCalculator.calculate_reference_price(purchases)

    def test_from_accumulators_continues_running_totals(self):
        calc = ReferencePriceCalculator.from_accumulators(Decimal("500"), Decimal("0.01"))
        calc.add_purchase(make_purchase(usdt_spent="450", btc_filled="0.01", fill_price="45000"))

        assert calc.total_cost == Decimal("950")
        assert calc.total_net_btc == Decimal("0.02")
        assert calc.get_current_reference_price() == Decimal("47500")


class TestFallbackAndErrors:

    def test_ath_used_when_nothing_bought(self):
        calc = ReferencePriceCalculator(ath_price=Decimal("69000"))
        assert calc.get_current_reference_price() == Decimal("69000")

    def test_no_purchases_and_no_ath_raises(self):
        calc = ReferencePriceCalculator()
        with pytest.raises(ValueError, match="no ATH price"):
            calc.get_current_reference_price()

    def test_negative_field_rejected(self):
        calc = ReferencePriceCalculator()
        with pytest.raises(ValueError, match="fee_usdt"):
            calc.add_purchase(make_purchase(fee_usdt="-1"))
        assert calc.purchase_count == 0

    def test_batch_rejects_empty_list(self):
        with pytest.raises(ValueError, match="empty"):
            ReferencePriceCalculator.calculate_reference_price([])

    def test_batch_rejects_zero_net_btc(self):
        with pytest.raises(ValueError, match="Net BTC is zero"):
            ReferencePriceCalculator.calculate_reference_price([
                make_purchase(btc_filled="0.001", fee_btc="0.001"),
            ])

    def test_reset_clears_accumulators(self):
        calc = ReferencePriceCalculator()
        calc.add_purchase(make_purchase())
        calc.reset(ath_price=Decimal("60000"))

        assert calc.total_cost == Decimal("0")
        assert calc.total_net_btc == Decimal("0")
        assert calc.purchase_count == 0
        assert calc.get_current_reference_price() == Decimal("60000")

    def test_set_ath_requires_positive_price(self):
        calc = ReferencePriceCalculator()
        with pytest.raises(ValueError):
            calc.set_ath_price(Decimal("0"))
