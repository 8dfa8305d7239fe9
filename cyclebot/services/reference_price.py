"""Reference price calculation.

The reference price is the fee-inclusive cost basis of the current cycle:

    cost    = sum(usdt_spent + fee_usdt + fee_btc * fill_price)
    net_btc = sum(btc_filled - fee_btc)
    ref     = cost / net_btc

When nothing has been bought yet the ATH price is used instead. All
arithmetic is Decimal; nothing is quantized here.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class Purchase:
    """A single filled buy."""
    usdt_spent: Decimal
    btc_filled: Decimal
    fee_usdt: Decimal
    fee_btc: Decimal
    fill_price: Decimal

    def validate(self) -> None:
        """Raise ValueError if any field is negative."""
        for name in ("usdt_spent", "btc_filled", "fee_usdt", "fee_btc", "fill_price"):
            if getattr(self, name) < ZERO:
                raise ValueError(f"Purchase {name} cannot be negative: {getattr(self, name)}")

    @property
    def cost(self) -> Decimal:
        """Fee-inclusive USDT cost of this purchase."""
        return self.usdt_spent + self.fee_usdt + self.fee_btc * self.fill_price

    @property
    def net_btc(self) -> Decimal:
        """BTC actually received after BTC-denominated fees."""
        return self.btc_filled - self.fee_btc


class ReferencePriceCalculator:
    """Running reference price for one cycle."""

    def __init__(self, ath_price: Optional[Decimal] = None, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._total_cost = ZERO
        self._total_net_btc = ZERO
        self._purchase_count = 0
        self._ath_price = ath_price

    @classmethod
    def from_accumulators(
        cls,
        cost_accum_usdt: Decimal,
        btc_accum_net: Decimal,
        ath_price: Optional[Decimal] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "ReferencePriceCalculator":
        """Restore a calculator from the accumulators persisted on a cycle."""
        calculator = cls(ath_price=ath_price, logger=logger)
        calculator._total_cost = cost_accum_usdt or ZERO
        calculator._total_net_btc = btc_accum_net or ZERO
        return calculator

    def add_purchase(self, purchase: Purchase) -> None:
        """Fold a filled buy into the running totals.

        Raises:
            ValueError: If any purchase field is negative.
        """
        purchase.validate()

        self._total_cost += purchase.cost
        self._total_net_btc += purchase.net_btc
        self._purchase_count += 1

        self.logger.debug(
            f"Purchase added: cost={purchase.cost} net_btc={purchase.net_btc} "
            f"total_cost={self._total_cost} total_net_btc={self._total_net_btc}"
        )

    def get_current_reference_price(self) -> Decimal:
        """Return cost / net BTC, or the ATH price when nothing is held.

        Raises:
            ValueError: If there are no purchases and no ATH price.
        """
        if self._total_net_btc > ZERO:
            return self._total_cost / self._total_net_btc

        if self._ath_price is None:
            raise ValueError("No purchases made and no ATH price available")

        return self._ath_price

    def set_ath_price(self, ath_price: Decimal) -> None:
        if ath_price <= ZERO:
            raise ValueError(f"ATH price must be positive: {ath_price}")
        self._ath_price = ath_price

    def reset(self, ath_price: Optional[Decimal] = None) -> None:
        """Clear the accumulators for a new cycle."""
        self._total_cost = ZERO
        self._total_net_btc = ZERO
        self._purchase_count = 0
        self._ath_price = ath_price
        self.logger.debug(f"Reference price calculator reset (ath_price={ath_price})")

    @property
    def total_cost(self) -> Decimal:
        return self._total_cost

    @property
    def total_net_btc(self) -> Decimal:
        return self._total_net_btc

    @property
    def purchase_count(self) -> int:
        return self._purchase_count

    @property
    def ath_price(self) -> Optional[Decimal]:
        return self._ath_price

    @staticmethod
    def calculate_reference_price(purchases: Iterable[Purchase]) -> Decimal:
        """Batch form of the reference price over an ordered list of purchases.

        Raises:
            ValueError: On an empty list, a negative field, or zero net BTC.
        """
        purchases = list(purchases)
        if not purchases:
            raise ValueError("Cannot calculate reference price from an empty purchase list")

        total_cost = ZERO
        total_net_btc = ZERO
        for purchase in purchases:
            purchase.validate()
            total_cost += purchase.cost
            total_net_btc += purchase.net_btc

        if total_net_btc == ZERO:
            raise ValueError("Net BTC is zero, reference price is undefined")

        return total_cost / total_net_btc
