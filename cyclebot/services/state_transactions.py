"""State Transaction Manager

Every write to the cycle state goes through this service. It provides:

- atomic updates under a row lock, with an audit event in the same transaction
- optimistic locking on the integer ``version`` column
- bounded retry with exponential backoff for deadlocks and serialization failures
- SERIALIZABLE isolation for critical (capital-moving) updates
- a write-ahead log around external actions, and crash recovery for it
- multi-bot batch updates (all or nothing)

Each transactional call is bounded by the configured timeout; a timeout
cancels and rolls back the whole transaction.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    BotEvent,
    CycleState,
    CycleStatus,
    EventSeverity,
    EventType,
    STATE_HISTORY_EVENTS,
    UPDATABLE_FIELDS,
    WalStatus,
)
from ..models.event_metadata import (
    BatchUpdateMetadata,
    StateUpdateErrorMetadata,
    StateUpdateMetadata,
    WalMetadata,
    dump_metadata,
    to_jsonable,
)
from .config import TransactionSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")
TransactionHook = Callable[[AsyncSession, CycleState], Awaitable[None]]

DECIMAL_FIELDS = frozenset({
    "capital_available",
    "btc_accumulated",
    "reference_price",
    "cost_accum_usdt",
    "btc_accum_net",
    "ath_price",
    "buy_amount",
})

# PostgreSQL deadlock_detected / serialization_failure
TRANSIENT_SQLSTATES = frozenset({"40P01", "40001"})
TRANSIENT_MESSAGES = ("deadlock", "could not serialize", "serialization failure", "database is locked")


# ============================================================================
# Exception Hierarchy
# ============================================================================

class StateTransactionError(Exception):
    """Base class for state transaction errors."""
    pass


class TransactionRollbackError(StateTransactionError):
    """The transaction was rolled back; no change was applied."""

    def __init__(self, message: str, updates: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.updates = updates or {}


class TransactionTimeoutError(TransactionRollbackError):
    """The transaction exceeded its timeout and was rolled back."""
    pass


class VersionConflictError(StateTransactionError):
    """The stored version no longer matches the version the caller read."""

    def __init__(self, expected_version: int, actual_version: Optional[int]):
        super().__init__(f"Version conflict: expected {expected_version}, found {actual_version}")
        self.expected_version = expected_version
        self.actual_version = actual_version


class DeadlockError(StateTransactionError):
    """Retries were exhausted on deadlock or serialization failures."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class StateNotFoundError(StateTransactionError):
    """No cycle state row exists for the bot."""

    def __init__(self, bot_id: str):
        super().__init__(f"Cycle state not found for bot {bot_id}")
        self.bot_id = bot_id


class ConcurrentUpdateError(StateTransactionError):
    """The version fence rejected an unversioned update; safe to retry."""
    pass


def is_transient_error(exc: Optional[BaseException]) -> bool:
    """True if the error (or anything in its cause chain) is a deadlock or
    serialization failure that a retry can resolve."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, ConcurrentUpdateError):
            return True
        if isinstance(exc, DBAPIError):
            code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
            if code in TRANSIENT_SQLSTATES:
                return True
            message = str(exc).lower()
            if any(marker in message for marker in TRANSIENT_MESSAGES):
                return True
        exc = exc.__cause__ or exc.__context__
    return False


@dataclass
class RecoveryResult:
    """Outcome of write-ahead log recovery for one bot."""
    rolled_back: int = 0
    entry_ids: List[int] = field(default_factory=list)

    @property
    def has_unresolved(self) -> bool:
        return self.rolled_back > 0


class StateTransactionManager:
    """Transactional gateway for cycle state writes."""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        settings: Optional[TransactionSettings] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.session_maker = session_maker
        self.settings = settings or TransactionSettings()
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _with_timeout(self, coro: Awaitable[T], description: str, updates: Optional[Dict[str, Any]] = None) -> T:
        timeout = self.settings.timeout_ms / 1000
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.error(f"{description} timed out after {self.settings.timeout_ms}ms and was rolled back")
            raise TransactionTimeoutError(
                f"{description} timed out after {self.settings.timeout_ms}ms", updates
            )

    def _normalize_updates(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        if not updates:
            raise TransactionRollbackError("No state updates provided", updates)

        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise TransactionRollbackError(f"Unknown or read-only state fields: {sorted(unknown)}", updates)

        normalized = {}
        for key, value in updates.items():
            if key in DECIMAL_FIELDS and value is not None and not isinstance(value, Decimal):
                value = Decimal(str(value))
            elif key == "status" and not isinstance(value, CycleStatus):
                value = CycleStatus(value)
            normalized[key] = value
        return normalized

    async def _load_state(self, session: AsyncSession, bot_id: str, for_update: bool = False) -> CycleState:
        stmt = select(CycleState).where(CycleState.id == bot_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        state = result.scalar_one_or_none()
        if state is None:
            raise StateNotFoundError(bot_id)
        return state

    async def _current_version(self, session: AsyncSession, bot_id: str) -> Optional[int]:
        result = await session.execute(select(CycleState.version).where(CycleState.id == bot_id))
        return result.scalar_one_or_none()

    async def _apply_update(
        self,
        session: AsyncSession,
        bot_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Tuple[CycleState, int]:
        """Lock, fence on version, write. Returns (new state, previous version)."""
        state = await self._load_state(session, bot_id, for_update=True)

        if expected_version is not None and state.version != expected_version:
            raise VersionConflictError(expected_version, state.version)

        previous_version = state.version
        stmt = (
            update(CycleState)
            .where(CycleState.id == bot_id, CycleState.version == previous_version)
            .values(**updates, version=previous_version + 1, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)

        if result.rowcount != 1:
            actual = await self._current_version(session, bot_id)
            if expected_version is not None:
                raise VersionConflictError(expected_version, actual)
            raise ConcurrentUpdateError(
                f"Cycle state {bot_id} changed concurrently (read version {previous_version}, found {actual})"
            )

        return await self._load_state(session, bot_id), previous_version

    def _audit_event(
        self,
        bot_id: str,
        event_type: EventType,
        updates: Dict[str, Any],
        previous_version: int,
        new_version: int,
        critical: bool = False,
    ) -> BotEvent:
        metadata = StateUpdateMetadata(
            changes=to_jsonable(updates),
            previous_version=previous_version,
            new_version=new_version,
            critical=critical,
            isolation_level="SERIALIZABLE" if critical else None,
        )
        return BotEvent(
            bot_id=bot_id,
            event_type=event_type,
            severity=EventSeverity.INFO,
            message=f"State updated to version {new_version}: {', '.join(sorted(updates))}",
            event_metadata=dump_metadata(metadata),
        )

    async def _record_update_error(self, bot_id: str, updates: Dict[str, Any], error: BaseException) -> None:
        """Best-effort diagnostic record, written outside the failed transaction."""
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    session.add(BotEvent(
                        bot_id=bot_id,
                        event_type=EventType.STATE_UPDATE_ERROR,
                        severity=EventSeverity.ERROR,
                        message=f"State update failed: {error}"[:500],
                        event_metadata=dump_metadata(StateUpdateErrorMetadata(
                            attempted_changes=to_jsonable(updates),
                            error=str(error),
                        )),
                    ))
        except Exception as e:
            self.logger.error(f"Bot {bot_id}: Failed to record state update error: {e}")

    # ------------------------------------------------------------------
    # Atomic / versioned / critical updates
    # ------------------------------------------------------------------

    async def _atomic(
        self,
        bot_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int],
        within_transaction: Optional[TransactionHook] = None,
    ) -> CycleState:
        async with self.session_maker() as session:
            async with session.begin():
                state, previous_version = await self._apply_update(session, bot_id, updates, expected_version)
                session.add(self._audit_event(bot_id, EventType.STATE_UPDATE, updates, previous_version, state.version))
                if within_transaction is not None:
                    await within_transaction(session, state)
            return state

    async def update_state_atomic(
        self,
        bot_id: str,
        updates: Dict[str, Any],
        within_transaction: Optional[TransactionHook] = None,
    ) -> CycleState:
        """Apply updates under a row lock and record a STATE_UPDATE event.

        ``within_transaction`` is awaited with the session and the updated
        state before commit, so related rows commit or roll back together
        with the update.

        Returns:
            The cycle state as committed.

        Raises:
            TransactionRollbackError: If anything fails; nothing is applied.
            TransactionTimeoutError: If the transaction exceeds its timeout.
            StateNotFoundError: If the bot has no cycle state.
        """
        updates = self._normalize_updates(updates)
        try:
            state = await self._with_timeout(
                self._atomic(bot_id, updates, None, within_transaction), f"Atomic update for {bot_id}", updates
            )
        except TransactionTimeoutError as e:
            await self._record_update_error(bot_id, updates, e)
            raise
        except (StateNotFoundError, TransactionRollbackError):
            raise
        except Exception as e:
            self.logger.error(f"Bot {bot_id}: Atomic state update rolled back: {e}")
            await self._record_update_error(bot_id, updates, e)
            raise TransactionRollbackError(f"Atomic state update for {bot_id} rolled back: {e}", updates) from e

        self.logger.info(f"Bot {bot_id}: State updated to version {state.version} ({', '.join(sorted(updates))})")
        return state

    async def update_state_with_version(
        self,
        bot_id: str,
        updates: Dict[str, Any],
        expected_version: int,
    ) -> CycleState:
        """Apply updates only if the stored version equals expected_version.

        Raises:
            VersionConflictError: If another writer got there first.
        """
        updates = self._normalize_updates(updates)
        try:
            state = await self._with_timeout(
                self._atomic(bot_id, updates, expected_version), f"Versioned update for {bot_id}", updates
            )
        except VersionConflictError as e:
            self.logger.warning(f"Bot {bot_id}: {e}")
            raise
        except (StateNotFoundError, TransactionRollbackError):
            raise
        except Exception as e:
            self.logger.error(f"Bot {bot_id}: Versioned state update rolled back: {e}")
            raise TransactionRollbackError(f"Versioned state update for {bot_id} rolled back: {e}", updates) from e

        self.logger.info(f"Bot {bot_id}: State updated from version {expected_version} to {state.version}")
        return state

    async def update_state_with_retry(
        self,
        bot_id: str,
        updates: Dict[str, Any],
        max_retries: Optional[int] = None,
        delay_ms: Optional[int] = None,
        backoff_multiplier: Optional[float] = None,
        expected_version: Optional[int] = None,
    ) -> CycleState:
        """Atomic update, retried on deadlocks and serialization failures only.

        With ``expected_version`` each attempt is fenced like
        update_state_with_version; a version conflict is never retried.

        Raises:
            DeadlockError: If every attempt failed transiently.
            VersionConflictError: If expected_version is stale.
            Any other error from the underlying update, immediately.
        """
        max_retries = max_retries or self.settings.max_retries
        delay = self.settings.retry_delay_ms if delay_ms is None else delay_ms
        multiplier = backoff_multiplier or self.settings.backoff_multiplier

        last_error: Optional[BaseException] = None
        for attempt in range(1, max_retries + 1):
            try:
                if expected_version is None:
                    return await self.update_state_atomic(bot_id, updates)
                return await self.update_state_with_version(bot_id, updates, expected_version)
            except Exception as e:
                if not is_transient_error(e):
                    raise
                last_error = e
                self.logger.warning(
                    f"Bot {bot_id}: Transient failure on attempt {attempt}/{max_retries}: {e}"
                )
                if attempt < max_retries:
                    await asyncio.sleep(delay / 1000)
                    delay *= multiplier

        raise DeadlockError(
            f"State update for {bot_id} failed after {max_retries} attempts: {last_error}",
            attempts=max_retries,
        ) from last_error

    async def _critical(
        self,
        bot_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> CycleState:
        async with self.session_maker() as session:
            async with session.begin():
                await session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
                state, previous_version = await self._apply_update(session, bot_id, updates, expected_version)
                session.add(self._audit_event(
                    bot_id, EventType.CRITICAL_UPDATE, updates, previous_version, state.version, critical=True
                ))
            return state

    async def update_state_critical(
        self,
        bot_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> CycleState:
        """Apply a capital-moving update under SERIALIZABLE isolation.

        Negative capital or purchase counts are rejected before touching the
        database. ``expected_version`` fences the write as in
        update_state_with_version.

        Raises:
            TransactionRollbackError: On rejection or any failure.
            VersionConflictError: If expected_version is stale.
        """
        updates = self._normalize_updates(updates)

        capital = updates.get("capital_available")
        if capital is not None and capital < 0:
            raise TransactionRollbackError(f"Capital cannot be negative: {capital}", updates)
        purchases = updates.get("purchases_remaining")
        if purchases is not None and purchases < 0:
            raise TransactionRollbackError(f"Purchases remaining cannot be negative: {purchases}", updates)

        try:
            state = await self._with_timeout(
                self._critical(bot_id, updates, expected_version), f"Critical update for {bot_id}", updates
            )
        except VersionConflictError as e:
            self.logger.warning(f"Bot {bot_id}: Critical update rejected: {e}")
            raise
        except (StateNotFoundError, TransactionRollbackError):
            raise
        except Exception as e:
            self.logger.error(f"Bot {bot_id}: Critical state update rolled back: {e}")
            await self._record_update_error(bot_id, updates, e)
            raise TransactionRollbackError(f"Critical state update for {bot_id} rolled back: {e}", updates) from e

        self.logger.info(f"Bot {bot_id}: Critical update committed at version {state.version}")
        return state

    # ------------------------------------------------------------------
    # Write-ahead log
    # ------------------------------------------------------------------

    async def _begin_wal(
        self,
        bot_id: str,
        state_update: Dict[str, Any],
        operation_name: str,
        details: Dict[str, Any],
    ) -> int:
        async with self.session_maker() as session:
            async with session.begin():
                entry = BotEvent(
                    bot_id=bot_id,
                    event_type=EventType.WRITE_AHEAD_LOG,
                    severity=EventSeverity.INFO,
                    message=f"WAL: {operation_name}",
                    status=WalStatus.PENDING,
                    event_metadata=dump_metadata(WalMetadata(
                        operation=operation_name,
                        state_update=to_jsonable(state_update),
                        details=to_jsonable(details),
                    )),
                )
                session.add(entry)
                if state_update:
                    state, previous_version = await self._apply_update(session, bot_id, state_update)
                    session.add(self._audit_event(
                        bot_id, EventType.STATE_UPDATE, state_update, previous_version, state.version
                    ))
                await session.flush()
                return entry.id

    async def _finish_wal(
        self,
        entry_id: int,
        status: WalStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self.session_maker() as session:
            async with session.begin():
                entry = await session.get(BotEvent, entry_id)
                if entry is None:
                    raise StateTransactionError(f"WAL entry {entry_id} disappeared")
                metadata = WalMetadata.model_validate(entry.event_metadata)
                now = datetime.utcnow()
                if status == WalStatus.COMPLETED:
                    metadata = metadata.model_copy(update={"result": result, "completed_at": now})
                else:
                    metadata = metadata.model_copy(update={"error": error, "failed_at": now})
                entry.status = status
                entry.event_metadata = dump_metadata(metadata)
                if status == WalStatus.FAILED:
                    entry.severity = EventSeverity.ERROR

    @staticmethod
    def _summarize_result(result: Any) -> Dict[str, Any]:
        if hasattr(result, "summary"):
            return to_jsonable(result.summary())
        if isinstance(result, dict):
            return to_jsonable(result)
        return {"value": str(result)}

    async def execute_with_write_ahead_log(
        self,
        bot_id: str,
        state_update: Dict[str, Any],
        operation: Callable[[], Awaitable[T]],
        details: Optional[Dict[str, Any]] = None,
        operation_name: Optional[str] = None,
    ) -> T:
        """Run an external action bracketed by a durable log entry.

        1. Commit a ``pending`` WAL entry together with ``state_update``.
        2. Await ``operation()``.
        3. Mark the entry ``completed`` (with a result summary) or ``failed``.

        The external action never starts unless step 1 committed.

        Raises:
            Whatever the operation raised, after the entry is marked failed.
        """
        details = details or {}
        operation_name = operation_name or getattr(operation, "__name__", "operation")
        normalized = self._normalize_updates(state_update) if state_update else {}

        try:
            entry_id = await self._with_timeout(
                self._begin_wal(bot_id, normalized, operation_name, details),
                f"WAL begin for {bot_id}",
                normalized,
            )
        except (StateNotFoundError, TransactionRollbackError):
            raise
        except Exception as e:
            self.logger.error(f"Bot {bot_id}: Failed to write WAL entry for {operation_name}: {e}")
            raise TransactionRollbackError(f"WAL entry for {operation_name} rolled back: {e}", normalized) from e

        self.logger.info(f"Bot {bot_id}: WAL entry {entry_id} pending for {operation_name}")

        try:
            result = await operation()
        except Exception as e:
            self.logger.error(f"Bot {bot_id}: {operation_name} failed (WAL entry {entry_id}): {e}")
            try:
                await self._with_timeout(
                    self._finish_wal(entry_id, WalStatus.FAILED, error=str(e)),
                    f"WAL failure mark for {bot_id}",
                )
            except Exception as wal_error:
                # The entry stays pending and is rolled back by recovery
                self.logger.critical(
                    f"Bot {bot_id}: Could not mark WAL entry {entry_id} failed: {wal_error}"
                )
            raise e

        await self._with_timeout(
            self._finish_wal(entry_id, WalStatus.COMPLETED, result=self._summarize_result(result)),
            f"WAL completion for {bot_id}",
        )
        self.logger.info(f"Bot {bot_id}: WAL entry {entry_id} completed for {operation_name}")
        return result

    async def _recover(self, bot_id: str) -> RecoveryResult:
        recovery = RecoveryResult()
        async with self.session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    select(BotEvent)
                    .where(
                        BotEvent.bot_id == bot_id,
                        BotEvent.event_type == EventType.WRITE_AHEAD_LOG,
                        BotEvent.status == WalStatus.PENDING,
                    )
                    .order_by(BotEvent.id)
                    .with_for_update()
                )
                now = datetime.utcnow()
                for entry in result.scalars().all():
                    metadata = WalMetadata.model_validate(entry.event_metadata)
                    entry.event_metadata = dump_metadata(metadata.model_copy(update={"recovered_at": now}))
                    entry.status = WalStatus.ROLLED_BACK
                    entry.severity = EventSeverity.WARNING
                    recovery.entry_ids.append(entry.id)
                    recovery.rolled_back += 1
        return recovery

    async def recover_incomplete_transactions(self, bot_id: str) -> RecoveryResult:
        """Mark every pending WAL entry for the bot as rolled back.

        Entries are never re-applied: whether the external action took effect
        is unknown, so it is left for reconciliation.
        """
        recovery = await self._with_timeout(self._recover(bot_id), f"WAL recovery for {bot_id}")
        if recovery.rolled_back:
            self.logger.warning(
                f"Bot {bot_id}: Rolled back {recovery.rolled_back} incomplete WAL entries {recovery.entry_ids}"
            )
        else:
            self.logger.info(f"Bot {bot_id}: No incomplete WAL entries")
        return recovery

    # ------------------------------------------------------------------
    # Batch updates and reads
    # ------------------------------------------------------------------

    async def _batch(self, updates: Sequence[Tuple[str, Dict[str, Any]]]) -> List[CycleState]:
        bot_ids = [bot_id for bot_id, _ in updates]
        states = {}
        async with self.session_maker() as session:
            async with session.begin():
                # Fixed lock order across writers
                for bot_id, changes in sorted(updates, key=lambda item: item[0]):
                    state, previous_version = await self._apply_update(session, bot_id, changes)
                    session.add(BotEvent(
                        bot_id=bot_id,
                        event_type=EventType.BATCH_UPDATE,
                        severity=EventSeverity.INFO,
                        message=f"Batch update to version {state.version}",
                        event_metadata=dump_metadata(BatchUpdateMetadata(
                            bot_ids=bot_ids,
                            update_count=len(updates),
                            changes=to_jsonable(changes),
                        )),
                    ))
                    states[bot_id] = state
        return [states[bot_id] for bot_id in bot_ids]

    async def batch_update_state(self, updates: Sequence[Tuple[str, Dict[str, Any]]]) -> List[CycleState]:
        """Apply updates to several bots in one transaction, all or nothing.

        Args:
            updates: (bot_id, changes) pairs; bot ids must be unique.

        Returns:
            Committed states, in input order.

        Raises:
            TransactionRollbackError: If any update fails; none are applied.
        """
        if not updates:
            raise TransactionRollbackError("No batch updates provided")
        bot_ids = [bot_id for bot_id, _ in updates]
        if len(set(bot_ids)) != len(bot_ids):
            raise TransactionRollbackError(f"Duplicate bot ids in batch: {bot_ids}")

        normalized = [(bot_id, self._normalize_updates(changes)) for bot_id, changes in updates]
        try:
            states = await self._with_timeout(self._batch(normalized), f"Batch update of {len(updates)} states")
        except TransactionRollbackError:
            raise
        except Exception as e:
            self.logger.error(f"Batch state update rolled back: {e}")
            raise TransactionRollbackError(f"Batch state update rolled back: {e}") from e

        self.logger.info(f"Batch updated {len(states)} cycle states")
        return states

    async def get_current_state_with_version(self, bot_id: str) -> CycleState:
        """Read the cycle state (detached) including its current version.

        Raises:
            StateNotFoundError: If the bot has no cycle state.
        """
        async def _read():
            async with self.session_maker() as session:
                return await self._load_state(session, bot_id)

        return await self._with_timeout(_read(), f"State read for {bot_id}")

    async def get_state_history(self, bot_id: str, limit: int = 100) -> List[BotEvent]:
        """Newest-first state update audit events."""
        async def _read():
            async with self.session_maker() as session:
                result = await session.execute(
                    select(BotEvent)
                    .where(BotEvent.bot_id == bot_id, BotEvent.event_type.in_(STATE_HISTORY_EVENTS))
                    .order_by(BotEvent.created_at.desc(), BotEvent.id.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())

        return await self._with_timeout(_read(), f"State history for {bot_id}")

    async def get_wal_entries(self, bot_id: str, status: Optional[WalStatus] = None) -> List[BotEvent]:
        """Write-ahead log entries for a bot, oldest first."""
        async def _read():
            async with self.session_maker() as session:
                stmt = select(BotEvent).where(
                    BotEvent.bot_id == bot_id,
                    BotEvent.event_type == EventType.WRITE_AHEAD_LOG,
                )
                if status is not None:
                    stmt = stmt.where(BotEvent.status == status)
                result = await session.execute(stmt.order_by(BotEvent.id))
                return list(result.scalars().all())

        return await self._with_timeout(_read(), f"WAL read for {bot_id}")
