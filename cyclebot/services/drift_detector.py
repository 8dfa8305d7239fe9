"""Balance drift detection.

Drift is the relative difference between what the exchange reports and what
the cycle state believes we hold:

    drift = |spot - expected| / max(expected, epsilon)

Drift at or above the threshold is reported as ``exceeded``.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_DRIFT_THRESHOLD = Decimal("0.005")
USDT_EPSILON = Decimal("1")
BTC_EPSILON = Decimal("0.00000001")


class DriftStatus(str, Enum):
    OK = "ok"
    EXCEEDED = "exceeded"


@dataclass
class DriftResult:
    """Drift check for one asset."""
    asset: str
    status: DriftStatus
    drift: Decimal
    spot_balance: Decimal
    expected_balance: Decimal
    threshold: Decimal

    @property
    def exceeded(self) -> bool:
        return self.status == DriftStatus.EXCEEDED


@dataclass
class CombinedDriftResult:
    usdt: DriftResult
    btc: DriftResult

    @property
    def has_exceeded(self) -> bool:
        return self.usdt.exceeded or self.btc.exceeded

    @property
    def exceeded_results(self):
        return [result for result in (self.usdt, self.btc) if result.exceeded]


def calculate_drift(spot: Decimal, expected: Decimal, epsilon: Decimal) -> Decimal:
    """Relative drift of spot against expected, floored denominator at epsilon."""
    return abs(spot - expected) / max(expected, epsilon)


class DriftDetector:
    """Compares exchange balances with the cycle state."""

    def __init__(self, threshold: Decimal = DEFAULT_DRIFT_THRESHOLD, logger: Optional[logging.Logger] = None):
        if threshold <= 0:
            raise ValueError(f"Drift threshold must be positive, got {threshold}")
        self.threshold = threshold
        self.logger = logger or logging.getLogger(__name__)

    def _check(self, asset: str, spot: Decimal, expected: Decimal, epsilon: Decimal) -> DriftResult:
        if not (spot.is_finite() and expected.is_finite()):
            self.logger.warning(f"{asset} drift check received non-finite input: spot={spot} expected={expected}")
            return DriftResult(
                asset=asset,
                status=DriftStatus.EXCEEDED,
                drift=Decimal("Infinity"),
                spot_balance=spot,
                expected_balance=expected,
                threshold=self.threshold,
            )

        drift = calculate_drift(spot, expected, epsilon)
        status = DriftStatus.EXCEEDED if drift >= self.threshold else DriftStatus.OK

        if status == DriftStatus.EXCEEDED:
            self.logger.warning(
                f"{asset} drift {drift:.6f} exceeds threshold {self.threshold} "
                f"(spot={spot}, expected={expected})"
            )

        return DriftResult(
            asset=asset,
            status=status,
            drift=drift,
            spot_balance=spot,
            expected_balance=expected,
            threshold=self.threshold,
        )

    def check_usdt_drift(self, spot_balance: Decimal, capital_available: Decimal) -> DriftResult:
        return self._check("USDT", spot_balance, capital_available, USDT_EPSILON)

    def check_btc_drift(self, spot_balance: Decimal, btc_accumulated: Decimal) -> DriftResult:
        return self._check("BTC", spot_balance, btc_accumulated, BTC_EPSILON)

    def check_drift(
        self,
        usdt_spot: Decimal,
        capital_available: Decimal,
        btc_spot: Decimal,
        btc_accumulated: Decimal,
    ) -> CombinedDriftResult:
        """Check both assets at once."""
        return CombinedDriftResult(
            usdt=self.check_usdt_drift(usdt_spot, capital_available),
            btc=self.check_btc_drift(btc_spot, btc_accumulated),
        )
