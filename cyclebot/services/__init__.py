# Business Logic Services

from .config import (
    ConfigService,
    ConfigValidationError,
    ConfigValidationException,
    StrategyConfig,
    TransactionSettings,
    PauseSettings,
    BotSettings,
)
from .exchange import (
    ExchangeClient,
    ExchangeError,
    PaperExchange,
    Candle,
    BalanceSnapshot,
    OrderResult,
    OrderSide,
    OrderType,
    OrderStatus,
    TimeInForce,
)
from .reference_price import (
    Purchase,
    ReferencePriceCalculator,
)
from .buy_amount import (
    BuyAmountCalculator,
    PurchaseDecision,
    floor_to_precision,
)
from .drift_detector import (
    DriftDetector,
    DriftResult,
    DriftStatus,
    CombinedDriftResult,
)
from .buy_trigger import (
    BuyTriggerDetector,
    BuyTriggerResult,
)
from .sell_trigger import (
    SellTriggerDetector,
    SellTriggerResult,
)
from .cycle_invariants import (
    CycleInvariantService,
    CycleStateError,
    CycleValidationError,
    InvariantViolation,
)
from .state_transactions import (
    StateTransactionManager,
    StateTransactionError,
    TransactionRollbackError,
    TransactionTimeoutError,
    VersionConflictError,
    DeadlockError,
    StateNotFoundError,
    ConcurrentUpdateError,
    RecoveryResult,
    is_transient_error,
)
from .event_log import EventLogService
from .cycle_state_manager import CycleStateManager
from .notifications import (
    EmailConfig,
    EmailNotifier,
    Notifier,
    NullNotifier,
)
from .pause_mechanism import (
    StrategyPauseMechanism,
    PauseReason,
    ResumeValidationResult,
)
from .order_state_updater import (
    OrderStateUpdater,
    FillOutcome,
    FillValidationError,
    calculate_buy_updates,
    calculate_sell_updates,
)
from .logging_service import (
    BotLoggingService,
    TradeLogEntry,
    configure_logging,
)
from .trading_engine import (
    TradingEngine,
    TickOutcome,
    TradeExecution,
    TradeExecutionError,
    OrderStage,
)

__all__ = [
    "ConfigService",
    "ConfigValidationError",
    "ConfigValidationException",
    "StrategyConfig",
    "TransactionSettings",
    "PauseSettings",
    "BotSettings",
    "ExchangeClient",
    "ExchangeError",
    "PaperExchange",
    "Candle",
    "BalanceSnapshot",
    "OrderResult",
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "TimeInForce",
    "Purchase",
    "ReferencePriceCalculator",
    "BuyAmountCalculator",
    "PurchaseDecision",
    "floor_to_precision",
    "DriftDetector",
    "DriftResult",
    "DriftStatus",
    "CombinedDriftResult",
    "BuyTriggerDetector",
    "BuyTriggerResult",
    "SellTriggerDetector",
    "SellTriggerResult",
    "CycleInvariantService",
    "CycleStateError",
    "CycleValidationError",
    "InvariantViolation",
    "StateTransactionManager",
    "StateTransactionError",
    "TransactionRollbackError",
    "TransactionTimeoutError",
    "VersionConflictError",
    "DeadlockError",
    "StateNotFoundError",
    "ConcurrentUpdateError",
    "RecoveryResult",
    "is_transient_error",
    "EventLogService",
    "CycleStateManager",
    "EmailConfig",
    "EmailNotifier",
    "Notifier",
    "NullNotifier",
    "StrategyPauseMechanism",
    "PauseReason",
    "ResumeValidationResult",
    "OrderStateUpdater",
    "FillOutcome",
    "FillValidationError",
    "calculate_buy_updates",
    "calculate_sell_updates",
    "BotLoggingService",
    "TradeLogEntry",
    "configure_logging",
    "TradingEngine",
    "TickOutcome",
    "TradeExecution",
    "TradeExecutionError",
    "OrderStage",
]
