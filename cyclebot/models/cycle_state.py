"""Cycle state model - the single persistent record of a bot's trading cycle.

One row per bot. Every write goes through the state transaction manager,
which bumps ``version`` on each successful update so concurrent writers
can be fenced.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum

from .database import Base, PreciseDecimal


class CycleStatus(str, Enum):
    """Cycle status enumeration."""
    READY = "READY"         # Flat, waiting for the first dip
    HOLDING = "HOLDING"     # Holds BTC, buying dips and watching for the rise
    PAUSED = "PAUSED"       # No trading until resumed


# Columns a state update is allowed to write. version/updated_at are managed.
UPDATABLE_FIELDS = frozenset({
    "status",
    "capital_available",
    "btc_accumulated",
    "purchases_remaining",
    "reference_price",
    "cost_accum_usdt",
    "btc_accum_net",
    "ath_price",
    "buy_amount",
    "pending_order_id",
})


class CycleState(Base):
    """Persistent trading cycle state for a single bot."""
    __tablename__ = "cycle_state"

    id = Column(String(64), primary_key=True)

    status = Column(SQLEnum(CycleStatus), nullable=False, default=CycleStatus.READY)

    # Capital and holdings
    capital_available = Column(PreciseDecimal, nullable=False, default=Decimal("0"))
    btc_accumulated = Column(PreciseDecimal, nullable=False, default=Decimal("0"))
    purchases_remaining = Column(Integer, nullable=False)

    # Reference price inputs
    reference_price = Column(PreciseDecimal, nullable=True)
    cost_accum_usdt = Column(PreciseDecimal, nullable=False, default=Decimal("0"))
    btc_accum_net = Column(PreciseDecimal, nullable=False, default=Decimal("0"))
    ath_price = Column(PreciseDecimal, nullable=True)

    # Fixed tranche size for the cycle
    buy_amount = Column(PreciseDecimal, nullable=True)

    # Client order id of an order whose write-ahead log entry is in flight
    pending_order_id = Column(String(100), nullable=True)

    # Optimistic locking
    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<CycleState(id={self.id}, status={self.status}, "
            f"capital={self.capital_available}, btc={self.btc_accumulated}, "
            f"purchases_remaining={self.purchases_remaining}, version={self.version})>"
        )

    def to_dict(self):
        """Convert to dictionary for logging and audit events."""
        def _str(value):
            return format(value, "f") if isinstance(value, Decimal) else value

        return {
            "id": self.id,
            "status": self.status.value if self.status else None,
            "capital_available": _str(self.capital_available),
            "btc_accumulated": _str(self.btc_accumulated),
            "purchases_remaining": self.purchases_remaining,
            "reference_price": _str(self.reference_price),
            "cost_accum_usdt": _str(self.cost_accum_usdt),
            "btc_accum_net": _str(self.btc_accum_net),
            "ath_price": _str(self.ath_price),
            "buy_amount": _str(self.buy_amount),
            "pending_order_id": self.pending_order_id,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
