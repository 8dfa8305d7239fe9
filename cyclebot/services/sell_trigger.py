"""Sell trigger detection.

The whole accumulated position is sold once the close reaches
``reference_price * (1 + rise_percentage)``.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from ..models.cycle_state import CycleState, CycleStatus
from .config import StrategyConfig
from .drift_detector import BTC_EPSILON, calculate_drift
from .exchange import BalanceSnapshot, Candle

logger = logging.getLogger(__name__)

ONE = Decimal("1")
ZERO = Decimal("0")

# Shortfalls above this are reported as missing balance rather than drift
MAJOR_SHORTFALL_DRIFT = Decimal("0.1")


@dataclass
class SellTriggerResult:
    should_sell: bool
    sell_amount: Optional[Decimal] = None
    reason: Optional[str] = None
    validations: Dict[str, bool] = field(default_factory=dict)


def calculate_sell_threshold(reference_price: Decimal, rise_percentage: Decimal) -> Decimal:
    """Price at or above which the position is sold."""
    return reference_price * (ONE + rise_percentage)


class SellTriggerDetector:
    """Decides the cycle-closing sell."""

    def __init__(self, config: StrategyConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

    def _drift_reason(self, drift: Decimal) -> str:
        return (
            f"BTC drift {drift * 100:.3f}% exceeds threshold "
            f"{self.config.drift_threshold_pct * 100:.1f}%"
        )

    def check_sell_trigger(
        self,
        state: CycleState,
        candle: Candle,
        balances: BalanceSnapshot,
    ) -> SellTriggerResult:
        validations: Dict[str, bool] = {}

        def reject(reason: str) -> SellTriggerResult:
            self.logger.debug(f"Sell not triggered: {reason}")
            return SellTriggerResult(should_sell=False, reason=reason, validations=validations)

        validations["not_paused"] = state.status != CycleStatus.PAUSED
        if not validations["not_paused"]:
            return reject("Strategy is PAUSED")

        validations["has_btc"] = state.btc_accumulated > ZERO
        if not validations["has_btc"]:
            return reject("No BTC accumulated to sell")

        validations["reference_price_set"] = state.reference_price is not None
        if not validations["reference_price_set"]:
            return reject("Reference price is not set")

        sell_threshold = calculate_sell_threshold(state.reference_price, self.config.rise_percentage)
        validations["price_condition"] = candle.close >= sell_threshold
        if not validations["price_condition"]:
            return reject(f"Price {candle.close:.2f} below sell threshold {sell_threshold:.2f}")

        btc_drift = calculate_drift(balances.btc, state.btc_accumulated, BTC_EPSILON)
        drift_exceeded = btc_drift >= self.config.drift_threshold_pct

        validations["sufficient_balance"] = balances.btc >= state.btc_accumulated
        if not validations["sufficient_balance"]:
            validations["btc_drift_ok"] = not drift_exceeded
            insufficient = f"Insufficient BTC balance: {balances.btc:.8f} < {state.btc_accumulated:.8f}"
            if drift_exceeded and btc_drift > MAJOR_SHORTFALL_DRIFT:
                return reject(insufficient)
            if drift_exceeded:
                return reject(self._drift_reason(btc_drift))
            return reject(insufficient)

        validations["btc_drift_ok"] = not drift_exceeded
        if drift_exceeded:
            return reject(self._drift_reason(btc_drift))

        notional = state.btc_accumulated * candle.close
        validations["above_min_notional"] = notional >= self.config.exchange_min_notional
        if not validations["above_min_notional"]:
            return reject(
                f"Notional value {notional:.2f} below minimum {self.config.exchange_min_notional:.2f}"
            )

        self.logger.info(
            f"Sell triggered: close={candle.close} threshold={sell_threshold:.2f} "
            f"amount={state.btc_accumulated}"
        )
        return SellTriggerResult(should_sell=True, sell_amount=state.btc_accumulated, validations=validations)

    def would_trigger_at_price(self, state: CycleState, price: Decimal) -> bool:
        if state.status == CycleStatus.PAUSED or state.btc_accumulated <= ZERO:
            return False
        if state.reference_price is None:
            return False
        return price >= calculate_sell_threshold(state.reference_price, self.config.rise_percentage)

    def get_sell_threshold(self, state: CycleState) -> Optional[Decimal]:
        if state.reference_price is None or state.btc_accumulated <= ZERO:
            return None
        return calculate_sell_threshold(state.reference_price, self.config.rise_percentage)
