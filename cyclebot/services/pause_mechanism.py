"""Strategy pause mechanism.

The strategy is either ACTIVE or PAUSED. Pausing sets the cycle status to
PAUSED, opens a pause record and records a STRATEGY_PAUSED event in one
transaction. Resuming closes the record and returns the cycle to HOLDING
(BTC held) or READY (flat), after validation unless forced.

Unless manual resume is required, a drift pause is lifted automatically
once balances reconcile and every resume check passes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import CycleState, CycleStatus, EventSeverity, EventType, PauseState, PauseStatus, PauseType
from ..models.event_metadata import PauseMetadata, ResumeMetadata, to_jsonable
from .cycle_invariants import CycleInvariantService, InvariantViolation
from .drift_detector import CombinedDriftResult, DriftDetector
from .event_log import EventLogService
from .exchange import ExchangeClient
from .notifications import Notifier, NullNotifier
from .state_transactions import StateTransactionManager

logger = logging.getLogger(__name__)

AUTO_RESUMABLE_PAUSES = frozenset({PauseType.DRIFT_DETECTED})


@dataclass
class PauseReason:
    type: PauseType
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResumeValidationResult:
    can_resume: bool
    errors: List[str] = field(default_factory=list)


class StrategyPauseMechanism:
    """Pauses and resumes trading for one bot."""

    def __init__(
        self,
        bot_id: str,
        session_maker: async_sessionmaker,
        transactions: StateTransactionManager,
        invariants: CycleInvariantService,
        drift_detector: DriftDetector,
        exchange: Optional[ExchangeClient] = None,
        notifier: Optional[Notifier] = None,
        event_log: Optional[EventLogService] = None,
        enable_notifications: bool = True,
        require_manual_resume: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.bot_id = bot_id
        self.session_maker = session_maker
        self.transactions = transactions
        self.invariants = invariants
        self.drift_detector = drift_detector
        self.exchange = exchange
        self.notifier = notifier or NullNotifier()
        self.event_log = event_log or EventLogService(session_maker)
        self.enable_notifications = enable_notifications
        self.require_manual_resume = require_manual_resume
        self.logger = logger or logging.getLogger(__name__)

        self._paused = False
        self._pause_record_id: Optional[int] = None
        self._paused_at: Optional[datetime] = None
        self.last_reason: Optional[PauseReason] = None

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def initialize(self) -> None:
        """Restore pause status from the latest open pause record."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(PauseState)
                .where(PauseState.bot_id == self.bot_id, PauseState.status == PauseStatus.PAUSED)
                .order_by(PauseState.paused_at.desc(), PauseState.id.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            cycle = await session.get(CycleState, self.bot_id)

        if record is not None:
            self._paused = True
            self._pause_record_id = record.id
            self._paused_at = record.paused_at
            self.last_reason = PauseReason(record.pause_type, record.pause_reason, record.pause_metadata or {})
            self.logger.warning(
                f"Bot {self.bot_id}: Restored paused state ({record.pause_type.value}): {record.pause_reason}"
            )
        elif cycle is not None and cycle.status == CycleStatus.PAUSED:
            self._paused = True
            self.logger.warning(f"Bot {self.bot_id}: Cycle state is PAUSED without an open pause record")
        else:
            self._paused = False

    async def check_drift_and_pause(
        self,
        usdt_spot: Decimal,
        capital_available: Decimal,
        btc_spot: Decimal,
        btc_accumulated: Decimal,
    ) -> CombinedDriftResult:
        """Reconcile balances and pause if either asset drifted too far."""
        result = self.drift_detector.check_drift(usdt_spot, capital_available, btc_spot, btc_accumulated)

        if result.has_exceeded:
            details = {
                r.asset.lower(): {
                    "drift": to_jsonable(r.drift) if r.drift.is_finite() else "Infinity",
                    "spot_balance": to_jsonable(r.spot_balance),
                    "expected_balance": to_jsonable(r.expected_balance),
                    "threshold": to_jsonable(r.threshold),
                }
                for r in result.exceeded_results
            }
            assets = ", ".join(r.asset for r in result.exceeded_results)
            await self.pause_strategy(PauseReason(
                PauseType.DRIFT_DETECTED,
                f"Balance drift exceeded threshold for {assets}",
                details,
            ))

        return result

    async def pause_on_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        details = {"error_type": type(error).__name__, "error": str(error)}
        if context:
            details["context"] = to_jsonable(context)
        await self.pause_strategy(PauseReason(PauseType.CRITICAL_ERROR, f"Critical error: {error}", details))

    async def pause_on_corruption(self, violations: List[InvariantViolation]) -> None:
        details = {
            "violations": [
                {"field": v.field, "error": v.error, "value": None if v.value is None else str(to_jsonable(v.value))}
                for v in violations
            ]
        }
        fields = ", ".join(v.field for v in violations)
        await self.pause_strategy(PauseReason(
            PauseType.STATE_CORRUPTION,
            f"Cycle state corruption detected: {fields}",
            details,
        ))

    async def pause_strategy(self, reason: PauseReason) -> None:
        """Pause trading.

        Raises:
            Any persistence error, after logging it. A pause that could not
            be written must not look like it succeeded.
        """
        if self._paused:
            self.logger.warning(
                f"Bot {self.bot_id}: Already paused, ignoring new pause ({reason.type.value}): {reason.message}"
            )
            return

        details = to_jsonable(reason.details)
        record = PauseState(
            bot_id=self.bot_id,
            status=PauseStatus.PAUSED,
            pause_type=reason.type,
            pause_reason=reason.message[:500],
            pause_metadata=details,
            paused_at=datetime.utcnow(),
        )

        async def _record_pause(session: AsyncSession, state: CycleState) -> None:
            session.add(record)
            self.event_log.append(
                session,
                self.bot_id,
                EventType.STRATEGY_PAUSED,
                f"Strategy paused: {reason.message}",
                PauseMetadata(pause_type=reason.type.value, reason=reason.message, details=details),
                severity=EventSeverity.ERROR,
            )

        try:
            await self.transactions.update_state_atomic(
                self.bot_id, {"status": CycleStatus.PAUSED}, within_transaction=_record_pause
            )
        except Exception as e:
            self.logger.critical(f"Bot {self.bot_id}: FAILED TO PERSIST PAUSE ({reason.type.value}): {e}")
            raise

        self._paused = True
        self._pause_record_id = record.id
        self._paused_at = record.paused_at
        self.last_reason = reason

        self.logger.error(f"Bot {self.bot_id}: Strategy PAUSED ({reason.type.value}): {reason.message}")
        self._notify("send_pause_alert", self.bot_id, reason.type.value, reason.message, details)

    def _notify(self, method: str, *args) -> None:
        if not self.enable_notifications:
            return
        try:
            getattr(self.notifier, method)(*args)
        except Exception as e:
            self.logger.error(f"Bot {self.bot_id}: Notification {method} failed: {e}")

    async def validate_resume(self) -> ResumeValidationResult:
        """Check that it is safe to resume.

        Requires a consistent cycle state, no order left unresolved, a
        reachable exchange, and balances within the drift threshold.
        """
        result = ResumeValidationResult(can_resume=True)

        try:
            state = await self.transactions.get_current_state_with_version(self.bot_id)
        except Exception as e:
            return ResumeValidationResult(can_resume=False, errors=[f"Cannot load cycle state: {e}"])

        violations = self.invariants.get_violations(state)
        if violations:
            result.errors.append(
                "Cycle state validation failed: " + ", ".join(f"{v.field} {v.error}" for v in violations)
            )

        if state.pending_order_id:
            result.errors.append(f"Unresolved order {state.pending_order_id} must be reconciled first")

        if self.exchange is None:
            result.errors.append("No exchange client configured")
        else:
            try:
                if not await self.exchange.ping():
                    result.errors.append("Exchange unreachable")
                else:
                    balances = await self.exchange.get_balances()
                    drift = self.drift_detector.check_drift(
                        balances.usdt, state.capital_available, balances.btc, state.btc_accumulated
                    )
                    for r in drift.exceeded_results:
                        result.errors.append(
                            f"{r.asset} drift {r.drift} exceeds threshold {r.threshold} "
                            f"(spot={r.spot_balance}, expected={r.expected_balance})"
                        )
            except Exception as e:
                result.errors.append(f"Exchange check failed: {e}")

        result.can_resume = not result.errors
        return result

    async def try_auto_resume(self) -> bool:
        """Lift a drift pause without an operator, if allowed.

        Returns:
            True if the strategy was resumed. Always False when manual resume
            is required or the pause was not caused by drift.
        """
        if not self._paused or self.require_manual_resume:
            return False
        if self.last_reason is None or self.last_reason.type not in AUTO_RESUMABLE_PAUSES:
            return False

        validation = await self.validate_resume()
        if not validation.can_resume:
            self.logger.debug(f"Bot {self.bot_id}: Automatic resume still blocked: {validation.errors}")
            return False

        return await self.resume_strategy(automatic=True)

    async def resume_strategy(self, force: bool = False, automatic: bool = False) -> bool:
        """Resume trading.

        Args:
            force: Skip validation. Also clears an unresolved order marker,
                so only use it after reconciling the exchange by hand.
            automatic: Recorded on the resume event; set by try_auto_resume.

        Returns:
            True if the strategy was resumed.
        """
        if not self._paused:
            self.logger.warning(f"Bot {self.bot_id}: Strategy is not paused, cannot resume")
            return False

        validation = ResumeValidationResult(can_resume=True)
        if not force:
            validation = await self.validate_resume()
            if not validation.can_resume:
                self.logger.error(f"Bot {self.bot_id}: Resume validation failed: {validation.errors}")
                self._notify("send_resume_failed_alert", self.bot_id, validation.errors)
                return False

        state = await self.transactions.get_current_state_with_version(self.bot_id)
        new_status = CycleStatus.HOLDING if state.btc_accumulated > 0 else CycleStatus.READY
        updates: Dict[str, Any] = {"status": new_status}
        if force and state.pending_order_id:
            updates["pending_order_id"] = None

        now = datetime.utcnow()
        pause_duration = (now - self._paused_at).total_seconds() if self._paused_at else None
        resume_metadata = {
            "forced": force,
            "automatic": automatic,
            "resumed_status": new_status.value,
            "errors": validation.errors,
        }
        if force:
            message = "Strategy force-resumed"
        elif automatic:
            message = "Strategy resumed automatically"
        else:
            message = "Strategy resumed"
        record_id = self._pause_record_id

        async def _record_resume(session: AsyncSession, updated: CycleState) -> None:
            if record_id is not None:
                record = await session.get(PauseState, record_id)
                if record is not None:
                    record.status = PauseStatus.ACTIVE
                    record.resumed_at = now
                    record.resume_metadata = resume_metadata
            self.event_log.append(
                session,
                self.bot_id,
                EventType.STRATEGY_RESUMED,
                message,
                ResumeMetadata(
                    forced=force,
                    automatic=automatic,
                    resumed_status=new_status.value,
                    pause_duration_seconds=pause_duration,
                    validation={"skipped": force, "errors": validation.errors},
                ),
                severity=EventSeverity.WARNING if force else EventSeverity.INFO,
            )

        await self.transactions.update_state_atomic(self.bot_id, updates, within_transaction=_record_resume)

        self._paused = False
        self._pause_record_id = None
        self._paused_at = None
        self.last_reason = None

        if force:
            self.logger.warning(
                f"Bot {self.bot_id}: Strategy FORCE-RESUMED without validation, status={new_status.value}"
            )
        else:
            self.logger.info(
                f"Bot {self.bot_id}: Strategy resumed {'automatically ' if automatic else ''}after validation, "
                f"status={new_status.value}"
            )

        self._notify("send_resume_success_alert", self.bot_id, force, new_status.value)
        return True
