"""Trading engine: drives one bot's cycle one closed candle at a time."""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from ..models import CycleState, CycleStatus, EventType, PauseType, init_db
from ..models.event_metadata import AthUpdatedMetadata, to_jsonable
from .config import PauseSettings, StrategyConfig, TransactionSettings
from .cycle_invariants import CycleValidationError
from .cycle_state_manager import CycleStateManager
from .drift_detector import CombinedDriftResult, DriftDetector
from .event_log import EventLogService
from .exchange import Candle, ExchangeClient, OrderResult, OrderSide, OrderType, TimeInForce
from .logging_service import BotLoggingService, TradeLogEntry
from .notifications import Notifier, NullNotifier
from .order_state_updater import FillOutcome, OrderStateUpdater
from .pause_mechanism import PauseReason, StrategyPauseMechanism
from .buy_trigger import BuyTriggerDetector
from .sell_trigger import SellTriggerDetector
from .state_transactions import RecoveryResult, StateTransactionManager, VersionConflictError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")


class TradeExecutionError(Exception):
    """An order could not be prepared or came back unusable."""
    pass


class OrderStage(str, Enum):
    PREPARED = "prepared"
    SUBMITTED = "submitted"
    FILLED = "filled"
    COMPLETED = "completed"


@dataclass
class TradeExecution:
    """One order as it moves from preparation to an applied fill."""
    side: OrderSide
    client_order_id: str
    quantity: Decimal
    limit_price: Decimal
    stage: OrderStage = OrderStage.PREPARED
    order: Optional[OrderResult] = None
    fill: Optional[FillOutcome] = None


@dataclass
class TickOutcome:
    """What happened on one candle.

    action is one of: none, buy, sell, skipped, paused, error.
    """
    action: str
    reason: Optional[str] = None
    execution: Optional[TradeExecution] = None
    drift: Optional[CombinedDriftResult] = None
    error: Optional[str] = None


def round_to_tick(price: Decimal, tick_size: Decimal) -> Decimal:
    """Round a price to the nearest exchange tick."""
    return (price / tick_size).quantize(ONE, rounding=ROUND_HALF_UP) * tick_size


def floor_to_step(quantity: Decimal, step_size: Decimal) -> Decimal:
    """Round a quantity down to the exchange lot step."""
    return (quantity / step_size).quantize(ONE, rounding=ROUND_FLOOR) * step_size


class TradingEngine:
    """Engine for executing the cycle strategy of a single bot.

    Wires the state manager, pause mechanism, triggers and fill updater
    together. Every order goes through the write-ahead log, and any error in
    the trading path pauses the strategy.
    """

    def __init__(
        self,
        bot_id: str,
        session_maker: async_sessionmaker,
        exchange: ExchangeClient,
        config: StrategyConfig,
        transaction_settings: Optional[TransactionSettings] = None,
        pause_settings: Optional[PauseSettings] = None,
        notifier: Optional[Notifier] = None,
        bot_logger: Optional[BotLoggingService] = None,
        is_dry_run: bool = True,
        db_engine: Optional[AsyncEngine] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.bot_id = bot_id
        self.session_maker = session_maker
        self.exchange = exchange
        self.config = config
        self.pause_settings = pause_settings or PauseSettings()
        self.notifier = notifier or NullNotifier()
        self.bot_logger = bot_logger
        self.is_dry_run = is_dry_run
        self.db_engine = db_engine
        self.logger = logger or logging.getLogger(__name__)

        self.event_log = EventLogService(session_maker, logger=self.logger)
        self.transactions = StateTransactionManager(session_maker, transaction_settings, logger=self.logger)
        self.drift_detector = DriftDetector(config.drift_threshold_pct, logger=self.logger)
        self.state_manager = CycleStateManager(
            bot_id,
            session_maker,
            config,
            self.transactions,
            event_log=self.event_log,
            logger=self.logger,
        )
        self.pause = StrategyPauseMechanism(
            bot_id,
            session_maker,
            self.transactions,
            self.state_manager.invariants,
            self.drift_detector,
            exchange=exchange,
            notifier=self.notifier,
            event_log=self.event_log,
            enable_notifications=self.pause_settings.enable_notifications,
            require_manual_resume=self.pause_settings.require_manual_resume,
            logger=self.logger,
        )
        self.state_manager.pause_mechanism = self.pause
        self.fill_updater = OrderStateUpdater(self.state_manager, self.event_log, logger=self.logger)
        self.buy_trigger = BuyTriggerDetector(config, logger=self.logger)
        self.sell_trigger = SellTriggerDetector(config, logger=self.logger)

        self._highs: Deque[Decimal] = deque(maxlen=config.ath_window)

    def _activity(self, message: str, level: str = "INFO") -> None:
        if self.bot_logger is not None:
            self.bot_logger.log_activity(message, level)

    async def startup(self) -> RecoveryResult:
        """Prepare the bot for trading.

        Creates tables if a database engine was given, rolls back WAL entries
        left pending by a crash, loads (or creates) the cycle state and
        restores the pause status. Rolled-back entries mean an order may or
        may not exist on the exchange, so the strategy is paused until an
        operator reconciles it.
        """
        if self.db_engine is not None:
            await init_db(self.db_engine)

        recovery = await self.transactions.recover_incomplete_transactions(self.bot_id)
        state = await self.state_manager.initialize()
        await self.pause.initialize()

        if recovery.has_unresolved:
            await self.pause.pause_strategy(PauseReason(
                PauseType.UNRESOLVED_ORDER,
                f"{recovery.rolled_back} order(s) interrupted before completion, reconcile with the exchange",
                {"wal_entry_ids": recovery.entry_ids, "pending_order_id": state.pending_order_id},
            ))

        self.logger.info(
            f"Bot {self.bot_id}: Trading engine started "
            f"({'dry run' if self.is_dry_run else 'live'}, paused={self.pause.is_paused})"
        )
        self._activity(f"Engine started, status={self.state_manager.get_current_state().status.value}")
        return recovery

    def seed_candles(self, candles: Iterable[Candle]) -> None:
        """Fill the ATH window from historical candles."""
        for candle in candles:
            if candle.is_closed:
                self._highs.append(candle.high)
        self.logger.info(f"Bot {self.bot_id}: ATH window seeded with {len(self._highs)} candles")

    @property
    def window_ath(self) -> Optional[Decimal]:
        return max(self._highs) if self._highs else None

    async def update_configuration(self, changes: Dict[str, Any]) -> Optional[CycleState]:
        """Apply strategy config changes to every component."""
        state = await self.state_manager.update_configuration(changes)
        self.config = self.state_manager.config
        self.pause.invariants = self.state_manager.invariants
        self.drift_detector.threshold = self.config.drift_threshold_pct
        self.buy_trigger.config = self.config
        self.sell_trigger.config = self.config
        if self._highs.maxlen != self.config.ath_window:
            self._highs = deque(self._highs, maxlen=self.config.ath_window)
        return state

    async def process_tick(self, candle: Candle) -> TickOutcome:
        """Run one strategy step for a candle.

        Returns:
            The outcome. Errors in the trading path pause the strategy and
            are reported on the outcome instead of being raised.
        """
        if not candle.is_closed:
            return TickOutcome(action="skipped", reason="Candle not closed")

        try:
            state = await self.state_manager.refresh()
        except CycleValidationError as e:
            return TickOutcome(action="paused", reason=str(e), error=str(e))

        if self.pause.is_paused or state.status == CycleStatus.PAUSED:
            if not await self.pause.try_auto_resume():
                return TickOutcome(action="paused", reason="Strategy is paused")
            state = await self.state_manager.refresh()

        try:
            return await self._process(state, candle)
        except CycleValidationError as e:
            # The state manager already paused and recorded the corruption
            return TickOutcome(action="paused", reason=str(e), error=str(e))
        except Exception as e:
            self.logger.error(f"Bot {self.bot_id}: Error processing candle {candle.open_time}: {e}", exc_info=True)
            self._activity(f"Error: {e}", "ERROR")
            await self.pause.pause_on_error(e, {"candle_open_time": candle.open_time, "close": candle.close})
            return TickOutcome(action="error", reason=f"{type(e).__name__}: {e}", error=str(e))

    async def _process(self, state: CycleState, candle: Candle) -> TickOutcome:
        state = await self._update_ath(state, candle)

        balances = await self.exchange.get_balances()
        drift = await self.pause.check_drift_and_pause(
            balances.usdt, state.capital_available, balances.btc, state.btc_accumulated
        )
        if drift.has_exceeded:
            return TickOutcome(action="paused", reason="Balance drift exceeded threshold", drift=drift)

        reasons: List[str] = []

        if state.btc_accumulated > ZERO:
            sell = self.sell_trigger.check_sell_trigger(state, candle, balances)
            if sell.should_sell:
                execution = await self._execute_sell(candle, sell.sell_amount)
                return TickOutcome(action="sell", execution=execution, drift=drift)
            reasons.append(f"sell: {sell.reason}")

        buy = self.buy_trigger.check_buy_trigger(state, candle, balances)
        if buy.should_buy:
            execution = await self._execute_buy(candle, buy.buy_amount)
            return TickOutcome(action="buy", execution=execution, drift=drift)
        reasons.append(f"buy: {buy.reason}")

        return TickOutcome(action="none", reason="; ".join(reasons), drift=drift)

    async def _update_ath(self, state: CycleState, candle: Candle) -> CycleState:
        self._highs.append(candle.high)

        # The ATH only anchors the reference price while flat
        if state.btc_accumulated > ZERO:
            return state

        new_ath = self.window_ath
        if new_ath is None or new_ath <= ZERO or new_ath == state.ath_price:
            return state

        old_ath = state.ath_price
        try:
            state = await self.state_manager.apply_update(
                {"ath_price": new_ath, "reference_price": new_ath}, expected_version=state.version
            )
        except VersionConflictError as e:
            # The high stays in the window and is applied on the next candle
            self.logger.warning(f"Bot {self.bot_id}: ATH update skipped, state changed concurrently: {e}")
            return await self.state_manager.refresh()

        await self.event_log.record(
            self.bot_id,
            EventType.ATH_UPDATED,
            f"ATH updated to {new_ath}",
            AthUpdatedMetadata(old_ath=old_ath, new_ath=new_ath),
        )
        self.logger.info(f"Bot {self.bot_id}: ATH {old_ath} -> {new_ath} over {len(self._highs)} candles")
        return state

    def _client_order_id(self, side: OrderSide) -> str:
        return f"cb-{self.bot_id}-{side.value.lower()}-{uuid.uuid4().hex[:12]}"

    async def _execute_buy(self, candle: Candle, buy_amount: Decimal) -> TradeExecution:
        limit_price = round_to_tick(candle.close * (ONE + self.config.slippage_buy_pct), self.config.tick_size)
        quantity = floor_to_step(buy_amount / limit_price, self.config.step_size)
        if quantity <= ZERO:
            raise TradeExecutionError(
                f"Buy amount {buy_amount} USDT is below one lot step at {limit_price}"
            )

        execution = TradeExecution(
            side=OrderSide.BUY,
            client_order_id=self._client_order_id(OrderSide.BUY),
            quantity=quantity,
            limit_price=limit_price,
        )
        return await self._execute(execution, self.fill_updater.apply_buy_fill)

    async def _execute_sell(self, candle: Candle, sell_amount: Decimal) -> TradeExecution:
        limit_price = round_to_tick(candle.close * (ONE - self.config.slippage_sell_pct), self.config.tick_size)

        # Sell exactly what the cycle holds so the position closes out
        execution = TradeExecution(
            side=OrderSide.SELL,
            client_order_id=self._client_order_id(OrderSide.SELL),
            quantity=sell_amount,
            limit_price=limit_price,
        )
        return await self._execute(execution, self.fill_updater.apply_sell_fill)

    async def _execute(
        self,
        execution: TradeExecution,
        apply_fill: Callable[[OrderResult], Awaitable[FillOutcome]],
    ) -> TradeExecution:
        async def submit_order() -> OrderResult:
            execution.stage = OrderStage.SUBMITTED
            order = await self.exchange.create_order(
                self.config.symbol,
                execution.side,
                OrderType.LIMIT,
                format(execution.quantity, "f"),
                price=format(execution.limit_price, "f"),
                time_in_force=TimeInForce.GTC,
                client_order_id=execution.client_order_id,
            )
            if order.is_open:
                order = await self._cancel_remainder(order)
            return order

        self.logger.info(
            f"Bot {self.bot_id}: Placing {execution.side.value} {execution.quantity} @ {execution.limit_price} "
            f"({execution.client_order_id})"
        )

        try:
            order = await self.transactions.execute_with_write_ahead_log(
                self.bot_id,
                {"pending_order_id": execution.client_order_id},
                submit_order,
                details={
                    "side": execution.side.value,
                    "quantity": execution.quantity,
                    "limit_price": execution.limit_price,
                    "client_order_id": execution.client_order_id,
                },
                operation_name=f"{execution.side.value.lower()}_order",
            )
        except Exception:
            await self._reconcile_failed_order(execution)
            raise

        if order.executed_qty <= ZERO:
            raise TradeExecutionError(
                f"Order {execution.client_order_id} returned {order.status.value} with nothing filled"
            )
        if not order.is_filled:
            self.logger.warning(
                f"Bot {self.bot_id}: Order {execution.client_order_id} only partially filled "
                f"({order.executed_qty}/{execution.quantity})"
            )

        execution.order = order
        execution.stage = OrderStage.FILLED

        execution.fill = await apply_fill(order)
        execution.stage = OrderStage.COMPLETED

        self._record_trade(execution)
        return execution

    async def _cancel_remainder(self, order: OrderResult) -> OrderResult:
        """Cancel the unfilled rest of an order.

        The cancel response carries the final executed quantity, including
        anything that filled after the order was placed.
        """
        self.logger.warning(
            f"Bot {self.bot_id}: Order {order.client_order_id} is {order.status.value} "
            f"with {order.executed_qty} filled, canceling the remainder"
        )
        canceled = await self.exchange.cancel_order(self.config.symbol, client_order_id=order.client_order_id)
        self._activity(
            f"Canceled remainder of {order.client_order_id} after {canceled.executed_qty} filled", "WARNING"
        )
        return canceled

    async def _reconcile_failed_order(self, execution: TradeExecution) -> None:
        """Clear the pending marker if the failed order never reached the exchange."""
        state = await self.state_manager.refresh(validate=False)
        if state.pending_order_id != execution.client_order_id:
            return

        try:
            existing = await self.exchange.get_order(self.config.symbol, client_order_id=execution.client_order_id)
        except Exception as e:
            self.logger.error(
                f"Bot {self.bot_id}: Could not look up order {execution.client_order_id}, "
                f"leaving it unresolved: {e}"
            )
            return

        if existing is None:
            try:
                await self.state_manager.apply_update({"pending_order_id": None}, expected_version=state.version)
            except VersionConflictError as e:
                self.logger.error(
                    f"Bot {self.bot_id}: State changed while clearing order {execution.client_order_id}, "
                    f"leaving it unresolved: {e}"
                )
                return
            self.logger.warning(f"Bot {self.bot_id}: Order {execution.client_order_id} was not placed, marker cleared")
        else:
            self.logger.critical(
                f"Bot {self.bot_id}: Order {execution.client_order_id} exists on the exchange "
                f"({existing.status.value}) but was not applied, leaving it unresolved"
            )

    def _record_trade(self, execution: TradeExecution) -> None:
        order = execution.order
        outcome = execution.fill
        state = outcome.state

        self._activity(
            f"{order.side.value} {order.executed_qty} BTC @ {order.avg_price} "
            f"(capital={state.capital_available}, btc={state.btc_accumulated})"
        )

        if self.bot_logger is not None:
            self.bot_logger.log_trade(TradeLogEntry(
                timestamp=state.updated_at,
                bot_id=self.bot_id,
                client_order_id=order.client_order_id,
                order_id=order.order_id,
                side=order.side.value,
                symbol=order.symbol or self.config.symbol,
                quantity=order.executed_qty,
                price=order.avg_price,
                quote_quantity=order.cummulative_quote_qty,
                fee_usdt=order.fee_usdt,
                fee_btc=order.fee_btc,
                capital_after=state.capital_available,
                btc_after=state.btc_accumulated,
                is_simulated=self.is_dry_run,
                profit=outcome.summary.get("profit"),
            ))

        if outcome.cycle_complete and self.pause_settings.enable_notifications:
            self.notifier.send_cycle_alert(self.bot_id, to_jsonable(outcome.summary))
