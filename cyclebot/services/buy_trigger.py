"""Buy trigger detection.

Pure decision logic: given the cycle state, the latest closed candle and
current balances, decide whether to buy and how much. Checks run in a fixed
order and stop at the first failure.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from ..models.cycle_state import CycleState, CycleStatus
from .buy_amount import BuyAmountCalculator
from .config import StrategyConfig
from .drift_detector import USDT_EPSILON, calculate_drift
from .exchange import BalanceSnapshot, Candle

logger = logging.getLogger(__name__)

ONE = Decimal("1")


@dataclass
class BuyTriggerResult:
    """Decision for one candle."""
    should_buy: bool
    buy_amount: Optional[Decimal] = None
    reason: Optional[str] = None
    validations: Dict[str, bool] = field(default_factory=dict)


def calculate_buy_threshold(reference_price: Decimal, drop_percentage: Decimal) -> Decimal:
    """Price at or below which a dip buy triggers."""
    return reference_price * (ONE - drop_percentage)


class BuyTriggerDetector:
    """Decides dip buys."""

    def __init__(
        self,
        config: StrategyConfig,
        buy_amount_calculator: Optional[BuyAmountCalculator] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.buy_amount_calculator = buy_amount_calculator or BuyAmountCalculator()
        self.logger = logger or logging.getLogger(__name__)

    def check_buy_trigger(
        self,
        state: CycleState,
        candle: Candle,
        balances: BalanceSnapshot,
    ) -> BuyTriggerResult:
        validations: Dict[str, bool] = {}

        def reject(reason: str) -> BuyTriggerResult:
            self.logger.debug(f"Buy not triggered: {reason}")
            return BuyTriggerResult(should_buy=False, reason=reason, validations=validations)

        validations["not_paused"] = state.status != CycleStatus.PAUSED
        if not validations["not_paused"]:
            return reject("Strategy is PAUSED")

        validations["has_purchases_remaining"] = state.purchases_remaining > 0
        if not validations["has_purchases_remaining"]:
            return reject("No purchases remaining")

        validations["reference_price_set"] = state.reference_price is not None
        if not validations["reference_price_set"]:
            return reject("Reference price is not set")

        buy_threshold = calculate_buy_threshold(state.reference_price, self.config.drop_percentage)
        validations["price_condition"] = candle.close <= buy_threshold
        if not validations["price_condition"]:
            return reject(f"Price {candle.close:.2f} above buy threshold {buy_threshold:.2f}")

        try:
            buy_amount = self.buy_amount_calculator.calculate_buy_amount(state)
            validations["buy_amount_calculated"] = True
        except ValueError as e:
            validations["buy_amount_calculated"] = False
            return reject(f"Failed to calculate buy amount: {e}")

        validations["sufficient_capital"] = state.capital_available >= buy_amount
        if not validations["sufficient_capital"]:
            return reject(f"Insufficient capital: {state.capital_available:.2f} < {buy_amount:.2f} USDT")

        usdt_drift = calculate_drift(balances.usdt, state.capital_available, USDT_EPSILON)
        validations["usdt_drift_ok"] = usdt_drift < self.config.drift_threshold_pct
        if not validations["usdt_drift_ok"]:
            return reject(
                f"USDT drift {usdt_drift * 100:.3f}% exceeds threshold "
                f"{self.config.drift_threshold_pct * 100:.1f}%"
            )

        skip_reason = self.buy_amount_calculator.get_skip_reason(
            buy_amount, self.config.min_buy_usdt, self.config.exchange_min_notional
        )
        validations["above_minimum"] = skip_reason is None
        if skip_reason is not None:
            return reject(skip_reason)

        self.logger.info(
            f"Buy triggered: close={candle.close} threshold={buy_threshold:.2f} amount={buy_amount}"
        )
        return BuyTriggerResult(should_buy=True, buy_amount=buy_amount, validations=validations)

    def would_trigger_at_price(self, state: CycleState, price: Decimal) -> bool:
        """Price condition only; ignores capital, drift and minimums."""
        if state.status == CycleStatus.PAUSED or state.purchases_remaining <= 0:
            return False
        if state.reference_price is None:
            return False
        return price <= calculate_buy_threshold(state.reference_price, self.config.drop_percentage)

    def get_next_buy_threshold(self, state: CycleState) -> Optional[Decimal]:
        if state.reference_price is None or state.purchases_remaining <= 0:
            return None
        return calculate_buy_threshold(state.reference_price, self.config.drop_percentage)
