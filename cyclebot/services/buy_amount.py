"""Buy amount (tranche size) calculation."""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, InvalidOperation
from typing import Any, Dict, Optional

from ..models.cycle_state import CycleState

logger = logging.getLogger(__name__)

USDT_PRECISION_DECIMALS = 8
ZERO = Decimal("0")


def floor_to_precision(value: Decimal, decimals: int = USDT_PRECISION_DECIMALS) -> Decimal:
    """Floor a Decimal to a fixed number of decimal places."""
    return value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_FLOOR)


@dataclass
class PurchaseDecision:
    """Outcome of sizing the next purchase."""
    amount: Decimal
    should_skip: bool
    is_last_purchase: bool
    skip_reason: Optional[str] = None


class BuyAmountCalculator:
    """Sizes the fixed tranches of a cycle."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def calculate_initial_buy_amount(
        self,
        capital: Decimal,
        max_purchases: int,
        min_buy_usdt: Decimal,
    ) -> Decimal:
        """Tranche size for a new cycle: floor(capital / max_purchases) to 8 dp.

        Raises:
            ValueError: If capital or max_purchases is not positive, or the
                tranche is below min_buy_usdt.
        """
        if capital <= ZERO:
            raise ValueError(f"Capital must be greater than zero, got {capital}")
        if max_purchases <= 0:
            raise ValueError(f"Max purchases must be greater than zero, got {max_purchases}")

        amount = floor_to_precision(capital / Decimal(max_purchases))

        if amount < min_buy_usdt:
            raise ValueError(
                f"Buy amount {amount} is below minimum {min_buy_usdt} USDT "
                f"(capital={capital}, max_purchases={max_purchases})"
            )

        self.logger.debug(f"Initial buy amount: {amount} (capital={capital}, max_purchases={max_purchases})")
        return amount

    def calculate_buy_amount(self, state: CycleState) -> Decimal:
        """Amount for the next purchase of the cycle.

        The last tranche spends all remaining capital so rounding dust is not
        stranded; every other tranche uses the stored buy amount.

        Raises:
            ValueError: If no purchases remain or buy_amount is unset.
        """
        if state.purchases_remaining <= 0:
            raise ValueError("No purchases remaining")

        if state.purchases_remaining == 1:
            self.logger.debug(f"Last purchase, using all remaining capital: {state.capital_available}")
            return state.capital_available

        if state.buy_amount is None:
            raise ValueError("Buy amount not set on cycle state")

        return floor_to_precision(state.buy_amount)

    def should_skip_purchase(
        self,
        amount: Decimal,
        min_buy_usdt: Decimal,
        exchange_min_notional: Decimal = ZERO,
    ) -> bool:
        """True when the amount is below the effective minimum order size."""
        return amount < max(min_buy_usdt, exchange_min_notional)

    def get_skip_reason(
        self,
        amount: Decimal,
        min_buy_usdt: Decimal,
        exchange_min_notional: Decimal = ZERO,
    ) -> Optional[str]:
        if not self.should_skip_purchase(amount, min_buy_usdt, exchange_min_notional):
            return None
        if exchange_min_notional > min_buy_usdt:
            return f"Amount {amount} is below exchange minimum {exchange_min_notional} USDT"
        return f"Amount {amount} is below minimum {min_buy_usdt} USDT"

    def get_purchase_decision(
        self,
        state: CycleState,
        min_buy_usdt: Decimal,
        exchange_min_notional: Decimal = ZERO,
    ) -> PurchaseDecision:
        """Size the next purchase and decide whether it has to be skipped.

        Raises:
            ValueError: Propagated from calculate_buy_amount.
        """
        amount = self.calculate_buy_amount(state)
        should_skip = self.should_skip_purchase(amount, min_buy_usdt, exchange_min_notional)
        return PurchaseDecision(
            amount=amount,
            should_skip=should_skip,
            is_last_purchase=state.purchases_remaining == 1,
            skip_reason=self.get_skip_reason(amount, min_buy_usdt, exchange_min_notional),
        )

    @staticmethod
    def extract_min_notional(symbol_info: Dict[str, Any]) -> Decimal:
        """Read the minimum notional from exchange symbol filters.

        Looks for a MIN_NOTIONAL or NOTIONAL filter; returns 0 when absent
        or unparsable.
        """
        for symbol_filter in symbol_info.get("filters", []):
            if symbol_filter.get("filterType") not in ("MIN_NOTIONAL", "NOTIONAL"):
                continue
            raw = symbol_filter.get("minNotional")
            if raw is None:
                return ZERO
            try:
                value = Decimal(str(raw))
            except InvalidOperation:
                return ZERO
            if not value.is_finite():
                return ZERO
            return max(ZERO, value)
        return ZERO
