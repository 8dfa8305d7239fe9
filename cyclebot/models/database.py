"""Database configuration and session management."""

from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import Numeric, String
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./cyclebot.db"

Base = declarative_base()


class PreciseDecimal(TypeDecorator):
    """Exact decimal column.

    PostgreSQL stores NUMERIC natively. SQLite has no exact numeric
    affinity, so values are stored as their plain string form there.
    Either way the Python side only ever sees ``Decimal``.
    """

    impl = String(64)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(precision=36, scale=18, asdecimal=True))
        return dialect.type_descriptor(String(64))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        if dialect.name == "postgresql":
            return value
        return format(value, "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(str(value))


def create_engine_and_sessionmaker(
    database_url: Optional[str] = None,
    echo: bool = False,
) -> Tuple[AsyncEngine, async_sessionmaker]:
    """Build the async engine and session factory for a database URL."""
    engine = create_async_engine(database_url or DEFAULT_DATABASE_URL, echo=echo)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, session_maker


async def init_db(engine: AsyncEngine):
    """Initialize the database, creating all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
