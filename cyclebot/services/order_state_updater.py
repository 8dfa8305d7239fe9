"""Applies exchange fills to the cycle state.

Buy fill:  accumulators grow, capital shrinks by what was paid, one tranche
           is used up, READY becomes HOLDING, the reference price is recomputed.
Sell fill: when the whole position is gone the cycle resets: accumulators
           zeroed, capital credited with net proceeds, tranches restored,
           reference price falls back to the ATH, tranche size recomputed.
           A partial sell only credits capital and reduces BTC.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Callable, Dict, Optional, Tuple

from ..models import CycleState, CycleStatus, EventType
from ..models.event_metadata import TradeMetadata
from .cycle_state_manager import CycleStateManager
from .event_log import EventLogService
from .exchange import OrderResult, OrderSide
from .reference_price import Purchase, ReferencePriceCalculator
from .state_transactions import VersionConflictError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
BTC_DUST = Decimal("0.00000001")


class FillValidationError(Exception):
    """The fill cannot be applied to the current cycle state."""
    pass


@dataclass
class FillOutcome:
    state: CycleState
    cycle_complete: bool = False
    summary: Dict[str, Any] = field(default_factory=dict)


def calculate_buy_updates(state: CycleState, order: OrderResult) -> Dict[str, Any]:
    """State changes for a filled buy.

    Raises:
        FillValidationError: If no purchases remain or capital cannot cover the fill.
    """
    if state.purchases_remaining <= 0:
        raise FillValidationError("Cannot apply buy: no purchases remaining")
    if order.executed_qty <= ZERO:
        raise FillValidationError(f"Cannot apply buy: nothing filled for order {order.order_id}")

    usdt_paid = order.cummulative_quote_qty + order.fee_usdt
    if usdt_paid > state.capital_available:
        raise FillValidationError(
            f"Insufficient capital: available {state.capital_available}, needed {usdt_paid}"
        )

    purchase = Purchase(
        usdt_spent=order.cummulative_quote_qty,
        btc_filled=order.executed_qty,
        fee_usdt=order.fee_usdt,
        fee_btc=order.fee_btc,
        fill_price=order.avg_price,
    )
    calculator = ReferencePriceCalculator.from_accumulators(
        state.cost_accum_usdt, state.btc_accum_net, state.ath_price
    )
    calculator.add_purchase(purchase)

    return {
        "btc_accumulated": state.btc_accumulated + purchase.net_btc,
        "cost_accum_usdt": calculator.total_cost,
        "btc_accum_net": calculator.total_net_btc,
        "capital_available": state.capital_available - usdt_paid,
        "purchases_remaining": state.purchases_remaining - 1,
        "reference_price": calculator.get_current_reference_price(),
        "status": CycleStatus.HOLDING if state.status == CycleStatus.READY else state.status,
        "pending_order_id": None,
    }


def calculate_sell_updates(state: CycleState, order: OrderResult, max_purchases: int) -> Dict[str, Any]:
    """State changes for a filled sell.

    Raises:
        FillValidationError: If nothing is held or more was sold than held.
    """
    if state.btc_accumulated <= ZERO:
        raise FillValidationError("Cannot apply sell: no BTC accumulated")
    if order.executed_qty > state.btc_accumulated:
        raise FillValidationError(
            f"Cannot sell more than accumulated: have {state.btc_accumulated}, sold {order.executed_qty}"
        )

    net_proceeds = order.cummulative_quote_qty - order.fee_usdt - order.fee_btc * order.avg_price
    new_capital = state.capital_available + net_proceeds
    remaining_btc = state.btc_accumulated - order.executed_qty

    if remaining_btc < BTC_DUST:
        return {
            "btc_accumulated": ZERO,
            "cost_accum_usdt": ZERO,
            "btc_accum_net": ZERO,
            "capital_available": new_capital,
            "purchases_remaining": max_purchases,
            "reference_price": state.ath_price,
            "buy_amount": (new_capital / Decimal(max_purchases)).quantize(Decimal("1"), rounding=ROUND_FLOOR),
            "status": CycleStatus.READY,
            "pending_order_id": None,
        }

    return {
        "btc_accumulated": remaining_btc,
        "capital_available": new_capital,
        "status": CycleStatus.HOLDING,
        "pending_order_id": None,
    }


class OrderStateUpdater:
    """Commits fill-derived updates through the cycle state manager.

    Updates are computed from a fresh read and written fenced on that
    read's version. If another writer commits in between, the fill is
    recomputed from the new state, up to ``max_attempts`` times.
    """

    def __init__(
        self,
        state_manager: CycleStateManager,
        event_log: Optional[EventLogService] = None,
        logger: Optional[logging.Logger] = None,
        max_attempts: Optional[int] = None,
    ):
        self.state_manager = state_manager
        self.event_log = event_log or state_manager.event_log
        self.logger = logger or logging.getLogger(__name__)
        self.max_attempts = max_attempts or state_manager.transactions.settings.max_retries

    @property
    def bot_id(self) -> str:
        return self.state_manager.bot_id

    async def _commit_fill(
        self,
        compute: Callable[[CycleState], Dict[str, Any]],
    ) -> Tuple[CycleState, Dict[str, Any], CycleState]:
        """Read, compute and write under a version fence.

        Returns:
            (state the updates were computed from, the updates, committed state)

        Raises:
            VersionConflictError: If every attempt lost a race.
        """
        for attempt in range(1, self.max_attempts + 1):
            current = await self.state_manager.refresh()
            updates = compute(current)
            try:
                state = await self.state_manager.apply_update(updates, expected_version=current.version)
            except VersionConflictError as e:
                if attempt == self.max_attempts:
                    raise
                self.logger.warning(
                    f"Bot {self.bot_id}: State changed while applying fill, recomputing "
                    f"(attempt {attempt}/{self.max_attempts}): {e}"
                )
                continue
            return current, updates, state

    async def apply_buy_fill(self, order: OrderResult) -> FillOutcome:
        if order.side != OrderSide.BUY:
            raise FillValidationError(f"Expected a BUY fill, got {order.side.value}")

        _, _, state = await self._commit_fill(lambda current: calculate_buy_updates(current, order))

        await self.event_log.record(
            self.bot_id,
            EventType.BUY_EXECUTED,
            f"Bought {order.executed_qty} BTC at {order.avg_price}",
            TradeMetadata(
                side="BUY",
                client_order_id=order.client_order_id,
                order_id=order.order_id,
                quantity=order.executed_qty,
                quote_quantity=order.cummulative_quote_qty,
                avg_price=order.avg_price,
                fee_usdt=order.fee_usdt,
                fee_btc=order.fee_btc,
            ),
        )
        self.logger.info(
            f"Bot {self.bot_id}: Buy applied: +{order.executed_qty} BTC for {order.cummulative_quote_qty} USDT, "
            f"capital={state.capital_available} purchases_remaining={state.purchases_remaining} "
            f"reference_price={state.reference_price}"
        )
        return FillOutcome(state=state, summary={
            "btc_bought": order.executed_qty,
            "usdt_spent": order.cummulative_quote_qty,
            "reference_price": state.reference_price,
        })

    async def apply_sell_fill(self, order: OrderResult) -> FillOutcome:
        if order.side != OrderSide.SELL:
            raise FillValidationError(f"Expected a SELL fill, got {order.side.value}")

        current, updates, state = await self._commit_fill(
            lambda current: calculate_sell_updates(current, order, self.state_manager.config.max_purchases)
        )
        cycle_complete = updates["btc_accumulated"] == ZERO

        net_proceeds = updates["capital_available"] - current.capital_available
        profit = net_proceeds - current.cost_accum_usdt if cycle_complete else None

        summary = {
            "btc_sold": order.executed_qty,
            "net_proceeds": net_proceeds,
            "profit": profit,
            "capital_available": state.capital_available,
            "buy_amount": state.buy_amount,
        }

        if cycle_complete:
            await self.event_log.record(
                self.bot_id,
                EventType.CYCLE_COMPLETE,
                f"Cycle complete: sold {order.executed_qty} BTC, profit {profit}",
                TradeMetadata(
                    side="SELL",
                    client_order_id=order.client_order_id,
                    order_id=order.order_id,
                    quantity=order.executed_qty,
                    quote_quantity=order.cummulative_quote_qty,
                    avg_price=order.avg_price,
                    fee_usdt=order.fee_usdt,
                    fee_btc=order.fee_btc,
                    profit=profit,
                ),
            )
            self.logger.info(
                f"Bot {self.bot_id}: Cycle complete: sold {order.executed_qty} BTC, net {net_proceeds} USDT, "
                f"profit {profit}, new capital {state.capital_available}, buy_amount {state.buy_amount}"
            )
        else:
            self.logger.warning(
                f"Bot {self.bot_id}: Partial sell: sold {order.executed_qty} BTC, "
                f"{state.btc_accumulated} BTC still held"
            )

        return FillOutcome(state=state, cycle_complete=cycle_complete, summary=summary)
