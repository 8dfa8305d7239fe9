"""Pytest configuration and fixtures."""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cyclebot.models import CycleState, CycleStatus, create_engine_and_sessionmaker, init_db
from cyclebot.services.config import StrategyConfig, TransactionSettings
from cyclebot.services.cycle_state_manager import CycleStateManager
from cyclebot.services.exchange import Candle
from cyclebot.services.state_transactions import StateTransactionManager


BOT_ID = "test-bot"


def build_cycle(**overrides) -> CycleState:
    """Detached cycle state with every column set (flat, READY, 1000 USDT)."""
    values = dict(
        id=BOT_ID,
        status=CycleStatus.READY,
        capital_available=Decimal("1000"),
        btc_accumulated=Decimal("0"),
        purchases_remaining=5,
        reference_price=Decimal("50000"),
        cost_accum_usdt=Decimal("0"),
        btc_accum_net=Decimal("0"),
        ath_price=Decimal("50000"),
        buy_amount=Decimal("200"),
        pending_order_id=None,
        version=1,
    )
    values.update(overrides)
    return CycleState(**values)


@pytest.fixture
def cycle_factory():
    """Factory for detached cycle states."""
    return build_cycle


@pytest.fixture
def candle_factory():
    """Factory for closed candles; high defaults to close."""
    def _candle(close, high=None, is_closed=True, open_time=None):
        close = Decimal(str(close))
        high = Decimal(str(high)) if high is not None else close
        return Candle(
            open_time=open_time or datetime(2024, 1, 1),
            open=close,
            high=high,
            low=close,
            close=close,
            volume=Decimal("1"),
            is_closed=is_closed,
        )
    return _candle


@pytest.fixture(scope="function")
async def db_engine(tmp_path):
    """Fresh SQLite database file for each test.

    A file (not :memory:) so that concurrent sessions get separate
    connections to the same database.
    """
    engine, _ = create_engine_and_sessionmaker(f"sqlite+aiosqlite:///{tmp_path / 'cyclebot_test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_maker(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def strategy_config():
    return StrategyConfig(
        initial_capital_usdt=Decimal("1000"),
        max_purchases=5,
        min_buy_usdt=Decimal("10"),
        drop_percentage=Decimal("0.05"),
        rise_percentage=Decimal("0.05"),
        exchange_min_notional=Decimal("0"),
        drift_threshold_pct=Decimal("0.005"),
        slippage_buy_pct=Decimal("0"),
        slippage_sell_pct=Decimal("0"),
        tick_size=Decimal("0.01"),
        step_size=Decimal("0.00001"),
        ath_window=3,
    )


@pytest.fixture
def transaction_settings():
    return TransactionSettings(timeout_ms=5000, max_retries=3, retry_delay_ms=0)


@pytest.fixture
def transactions(session_maker, transaction_settings):
    return StateTransactionManager(session_maker, transaction_settings)


@pytest.fixture
def state_manager(session_maker, strategy_config, transactions):
    return CycleStateManager(BOT_ID, session_maker, strategy_config, transactions)


@pytest.fixture
async def initialized_state(state_manager):
    """Cycle state created from strategy_config: READY, 1000 USDT, 5 x 200."""
    return await state_manager.initialize()


@pytest.fixture
def insert_state(session_maker):
    """Write a cycle state row directly, bypassing validation."""
    async def _insert(**overrides) -> CycleState:
        state = build_cycle(**overrides)
        async with session_maker() as session:
            async with session.begin():
                session.add(state)
        return state
    return _insert
