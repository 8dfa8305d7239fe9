"""Cycle state manager - owns the lifecycle of a bot's cycle state row."""

import logging
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import CycleState, CycleStatus, EventSeverity, EventType
from ..models.event_metadata import (
    ConfigUpdatedMetadata,
    CorruptionMetadata,
    CycleInitializedMetadata,
    ViolationRecord,
    to_jsonable,
)
from .config import StrategyConfig
from .cycle_invariants import CycleInvariantService, CycleValidationError, InvariantViolation
from .event_log import EventLogService
from .state_transactions import StateTransactionManager, VersionConflictError

logger = logging.getLogger(__name__)

STATE_COLUMNS = [column.name for column in CycleState.__table__.columns]


def floor_whole_usdt(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_FLOOR)


def snapshot_state(state: CycleState, **overrides: Any) -> CycleState:
    """Detached copy of a cycle state, optionally with fields replaced."""
    values = {name: getattr(state, name) for name in STATE_COLUMNS}
    values.update(overrides)
    return CycleState(**values)


class CycleStateManager:
    """Loads, creates, validates and updates the cycle state of one bot.

    Invariants are checked on every load and before every update is written.
    A violation pauses the strategy and records a corruption event; the
    stored row is left as it is for an operator to inspect.
    """

    def __init__(
        self,
        bot_id: str,
        session_maker: async_sessionmaker,
        config: StrategyConfig,
        transactions: StateTransactionManager,
        event_log: Optional[EventLogService] = None,
        pause_mechanism=None,
        logger: Optional[logging.Logger] = None,
    ):
        self.bot_id = bot_id
        self.session_maker = session_maker
        self.config = config
        self.transactions = transactions
        self.event_log = event_log or EventLogService(session_maker)
        self.pause_mechanism = pause_mechanism
        self.logger = logger or logging.getLogger(__name__)
        self.invariants = CycleInvariantService(config.max_purchases, config.min_buy_usdt, logger=self.logger)
        self._current_state: Optional[CycleState] = None

    def initial_buy_amount(self, config: Optional[StrategyConfig] = None) -> Decimal:
        """Whole-USDT tranche for a fresh cycle under ``config`` (default: the current one).

        Raises:
            ValueError: If max_purchases is not positive or the tranche is
                below min_buy_usdt.
        """
        config = config or self.config
        if config.max_purchases <= 0:
            raise ValueError(f"Max purchases must be greater than zero, got {config.max_purchases}")
        amount = floor_whole_usdt(config.initial_capital_usdt / Decimal(config.max_purchases))
        if amount < config.min_buy_usdt:
            raise ValueError(
                f"Buy amount {amount} is below minimum {config.min_buy_usdt} USDT "
                f"(capital={config.initial_capital_usdt}, max_purchases={config.max_purchases})"
            )
        return amount

    async def initialize(self) -> CycleState:
        """Load the cycle state, creating it on first start.

        Returns:
            Snapshot of the loaded (or created) state. If the stored state is
            corrupt the strategy is paused and the returned state is PAUSED.
        """
        async with self.session_maker() as session:
            state = await session.get(CycleState, self.bot_id)

        if state is None:
            return await self._create_initial_state()

        violations = self.invariants.get_violations(state)
        if violations:
            self.logger.error(f"Bot {self.bot_id}: Stored cycle state failed validation")
            await self._handle_corruption(state, violations)
            return await self.refresh(validate=False)

        self._current_state = state
        self.logger.info(
            f"Bot {self.bot_id}: Recovered cycle state status={state.status.value} "
            f"capital={state.capital_available} btc={state.btc_accumulated} "
            f"purchases_remaining={state.purchases_remaining} version={state.version}"
        )
        return self.get_current_state()

    async def _create_initial_state(self) -> CycleState:
        buy_amount = self.initial_buy_amount()
        state = CycleState(
            id=self.bot_id,
            status=CycleStatus.READY,
            capital_available=self.config.initial_capital_usdt,
            btc_accumulated=Decimal("0"),
            purchases_remaining=self.config.max_purchases,
            reference_price=None,
            cost_accum_usdt=Decimal("0"),
            btc_accum_net=Decimal("0"),
            ath_price=None,
            buy_amount=buy_amount,
            pending_order_id=None,
            version=1,
        )
        # Refuse to create a state that would be corrupt from the start
        self.invariants.validate(state)

        try:
            async with self.session_maker() as session:
                async with session.begin():
                    session.add(state)
                    self.event_log.append(
                        session,
                        self.bot_id,
                        EventType.CYCLE_STATE_INITIALIZED,
                        "Initial cycle state created",
                        CycleInitializedMetadata(
                            initial_capital=self.config.initial_capital_usdt,
                            max_purchases=self.config.max_purchases,
                            buy_amount=buy_amount,
                        ),
                    )
        except IntegrityError:
            # Another process created it first
            self.logger.warning(f"Bot {self.bot_id}: Cycle state created concurrently, loading it")
            return await self.refresh()

        self._current_state = state
        self.logger.info(
            f"Bot {self.bot_id}: Created initial cycle state capital={state.capital_available} "
            f"max_purchases={state.purchases_remaining} buy_amount={buy_amount}"
        )
        return self.get_current_state()

    async def _handle_corruption(
        self,
        state: CycleState,
        violations: List[InvariantViolation],
        rejected_updates: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.logger.critical(
            f"Bot {self.bot_id}: Cycle state corruption detected: "
            + "; ".join(f"{v.field} {v.error}" for v in violations)
        )

        if self.pause_mechanism is not None:
            await self.pause_mechanism.pause_on_corruption(violations)
        elif state.status != CycleStatus.PAUSED:
            await self.transactions.update_state_atomic(self.bot_id, {"status": CycleStatus.PAUSED})

        message = "Cycle state corruption detected. Manual intervention required."
        if rejected_updates is not None:
            message = "Cycle state update rejected: invariants violated. Manual intervention required."

        await self.event_log.record(
            self.bot_id,
            EventType.CYCLE_STATE_CORRUPTION_DETECTED,
            message,
            CorruptionMetadata(
                violations=[
                    ViolationRecord(
                        field=v.field,
                        error=v.error,
                        value=None if v.value is None else str(to_jsonable(v.value)),
                    )
                    for v in violations
                ],
                state=to_jsonable(state.to_dict()),
                detected_at=datetime.utcnow(),
            ),
            severity=EventSeverity.ERROR,
        )

    async def refresh(self, validate: bool = True) -> CycleState:
        """Reload the state from the database.

        Raises:
            CycleValidationError: If validate is set and the stored state is
                corrupt (the strategy is paused first).
        """
        state = await self.transactions.get_current_state_with_version(self.bot_id)
        if validate:
            violations = self.invariants.get_violations(state)
            if violations:
                await self._handle_corruption(state, violations)
                self._current_state = await self.transactions.get_current_state_with_version(self.bot_id)
                raise CycleValidationError(violations)
        self._current_state = state
        return self.get_current_state()

    def get_current_state(self) -> Optional[CycleState]:
        """Detached snapshot of the last known state."""
        if self._current_state is None:
            return None
        return snapshot_state(self._current_state)

    def validate_state(self, state: CycleState) -> bool:
        return self.invariants.is_valid(state)

    def get_validation_errors(self, state: CycleState) -> List[InvariantViolation]:
        return self.invariants.get_violations(state)

    def _is_critical(self, current: CycleState, updates: Dict[str, Any]) -> bool:
        if "capital_available" not in updates:
            return False
        delta = abs(Decimal(str(updates["capital_available"])) - current.capital_available)
        return delta >= self.transactions.settings.critical_capital_threshold

    async def apply_update(
        self,
        updates: Dict[str, Any],
        critical: Optional[bool] = None,
        expected_version: Optional[int] = None,
    ) -> CycleState:
        """Validate and write a state update.

        Updates moving capital by at least the critical threshold go through
        the SERIALIZABLE path, everything else through the retrying atomic
        path. Both are fenced on ``expected_version``, or on the version read
        here when none is given.

        Raises:
            VersionConflictError: If the stored version is not the one the
                updates were computed from.
            CycleValidationError: If the resulting state would violate an
                invariant. Nothing is written and the strategy is paused.
        """
        current = await self.refresh(validate=False)
        if expected_version is None:
            expected_version = current.version
        elif current.version != expected_version:
            raise VersionConflictError(expected_version, current.version)
        prospective = snapshot_state(current, **updates)

        violations = self.invariants.get_violations(prospective)
        if violations:
            await self._handle_corruption(prospective, violations, rejected_updates=updates)
            await self.refresh(validate=False)
            raise CycleValidationError(violations)

        if critical is None:
            critical = self._is_critical(current, updates)

        if critical:
            state = await self.transactions.update_state_critical(
                self.bot_id, updates, expected_version=expected_version
            )
        else:
            state = await self.transactions.update_state_with_retry(
                self.bot_id, updates, expected_version=expected_version
            )

        self._current_state = state
        return self.get_current_state()

    async def update_configuration(self, changes: Dict[str, Any]) -> Optional[CycleState]:
        """Merge strategy config changes.

        While READY the tranche size is recomputed from the initial capital
        and persisted only if it changed.

        Returns:
            The updated state, or None if nothing was written.

        Raises:
            ValueError: If the new settings are unusable, or the stored cycle
                would no longer satisfy its invariants under them. Config and
                state are left unchanged.
        """
        config = self.config.merged(changes)
        new_buy_amount = self.initial_buy_amount(config)
        invariants = CycleInvariantService(config.max_purchases, config.min_buy_usdt, logger=self.logger)

        current = await self.refresh(validate=False)
        updates: Dict[str, Any] = {}
        if current.status == CycleStatus.READY:
            if new_buy_amount != current.buy_amount:
                updates["buy_amount"] = new_buy_amount
            if current.btc_accumulated == 0 and current.purchases_remaining != config.max_purchases:
                updates["purchases_remaining"] = config.max_purchases

        violations = invariants.get_violations(snapshot_state(current, **updates))
        if violations:
            raise ValueError(
                "Configuration change rejected, cycle state would be invalid: "
                + "; ".join(f"{v.field} {v.error}" for v in violations)
            )

        previous = (self.config, self.invariants)
        self.config, self.invariants = config, invariants
        self.logger.info(f"Bot {self.bot_id}: Strategy configuration updated: {changes}")

        if not updates:
            return None

        try:
            state = await self.apply_update(updates, expected_version=current.version)
        except Exception:
            self.config, self.invariants = previous
            raise
        await self.event_log.record(
            self.bot_id,
            EventType.CONFIG_UPDATED,
            "Buy amount updated due to configuration change",
            ConfigUpdatedMetadata(
                old_buy_amount=current.buy_amount,
                new_buy_amount=new_buy_amount,
                changes=to_jsonable(changes),
            ),
        )
        self.logger.info(
            f"Bot {self.bot_id}: buy_amount {current.buy_amount} -> {new_buy_amount} after configuration change"
        )
        return state
