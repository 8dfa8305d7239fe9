"""Cycle State Invariant Validation

Validates the cycle state after every load and every update. A violation
means the persisted state can no longer be trusted: the caller pauses the
strategy and records the violations. Nothing here corrects data.

Design principles:
- Fail fast: ``validate`` raises on the first call that finds anything
- Complete: every violated field is reported, not only the first
- Read-only: No data modification
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

from ..models.cycle_state import CycleState, CycleStatus

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# ============================================================================
# Exception Hierarchy
# ============================================================================

class CycleStateError(Exception):
    """Base class for cycle state errors."""
    pass


class CycleValidationError(CycleStateError):
    """Cycle state violates one or more invariants."""

    def __init__(self, violations: List["InvariantViolation"]):
        self.violations = violations
        fields = ", ".join(v.field for v in violations)
        super().__init__(f"Cycle state invariant violated: {fields}")


@dataclass
class InvariantViolation:
    field: str
    error: str
    value: Any = None


# ============================================================================
# Cycle Invariant Service
# ============================================================================

class CycleInvariantService:
    """Checks cycle state invariants.

    1. Monetary fields are non-negative
    2. 0 <= purchases_remaining <= max_purchases
    3. status is a known status
    4. reference_price is set while BTC is held
    5. cost/net accumulators are jointly zero or jointly non-zero, and zero when flat
    6. buy_amount is at least min_buy_usdt when set
    """

    def __init__(self, max_purchases: int, min_buy_usdt: Decimal, logger: Optional[logging.Logger] = None):
        self.max_purchases = max_purchases
        self.min_buy_usdt = min_buy_usdt
        self.logger = logger or logging.getLogger(__name__)

    def get_violations(self, state: CycleState) -> List[InvariantViolation]:
        violations: List[InvariantViolation] = []

        for name in ("capital_available", "btc_accumulated", "cost_accum_usdt", "btc_accum_net"):
            value = getattr(state, name)
            if value is None:
                violations.append(InvariantViolation(name, "must not be null"))
            elif value < ZERO:
                violations.append(InvariantViolation(name, "must be non-negative", value))

        if state.reference_price is not None and state.reference_price < ZERO:
            violations.append(InvariantViolation("reference_price", "must be non-negative", state.reference_price))

        if state.purchases_remaining is None:
            violations.append(InvariantViolation("purchases_remaining", "must not be null"))
        elif not 0 <= state.purchases_remaining <= self.max_purchases:
            violations.append(InvariantViolation(
                "purchases_remaining",
                f"must be between 0 and {self.max_purchases}",
                state.purchases_remaining,
            ))

        try:
            CycleStatus(state.status)
        except ValueError:
            violations.append(InvariantViolation("status", "must be READY, HOLDING or PAUSED", state.status))

        btc = state.btc_accumulated
        if btc is not None and btc > ZERO and state.reference_price is None:
            violations.append(InvariantViolation("reference_price", "must be set while BTC is held"))

        cost = state.cost_accum_usdt
        net = state.btc_accum_net
        if cost is not None and net is not None:
            if (cost == ZERO) != (net == ZERO):
                violations.append(InvariantViolation(
                    "cost_accum_usdt",
                    "cost and net BTC accumulators must be jointly zero or non-zero",
                    cost,
                ))
            elif btc is not None and btc == ZERO and cost != ZERO:
                violations.append(InvariantViolation(
                    "btc_accum_net",
                    "accumulators must be zero when no BTC is held",
                    net,
                ))

        if state.buy_amount is not None and state.buy_amount < self.min_buy_usdt:
            violations.append(InvariantViolation(
                "buy_amount",
                f"must be at least {self.min_buy_usdt}",
                state.buy_amount,
            ))

        return violations

    def is_valid(self, state: CycleState) -> bool:
        return not self.get_violations(state)

    def validate(self, state: CycleState) -> None:
        """Raise if the state violates any invariant.

        Raises:
            CycleValidationError: Listing every violated field.
        """
        violations = self.get_violations(state)
        if violations:
            for violation in violations:
                self.logger.error(
                    f"Cycle {state.id} invariant violated: {violation.field} {violation.error} "
                    f"(value={violation.value})"
                )
            raise CycleValidationError(violations)
