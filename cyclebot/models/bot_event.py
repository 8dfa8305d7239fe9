"""Bot event model - append-only audit trail and write-ahead log.

APPEND-ONLY: rows are never deleted. The only mutation allowed is moving a
WRITE_AHEAD_LOG row out of ``pending`` and merging completion, failure or
recovery details into its metadata.
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum as SQLEnum

from .database import Base


class EventType(str, Enum):
    """Event type enumeration."""
    STATE_UPDATE = "STATE_UPDATE"
    CRITICAL_UPDATE = "CRITICAL_UPDATE"
    BATCH_UPDATE = "BATCH_UPDATE"
    STATE_UPDATE_ERROR = "STATE_UPDATE_ERROR"
    WRITE_AHEAD_LOG = "WRITE_AHEAD_LOG"
    CYCLE_STATE_INITIALIZED = "CYCLE_STATE_INITIALIZED"
    CYCLE_STATE_CORRUPTION_DETECTED = "CYCLE_STATE_CORRUPTION_DETECTED"
    CONFIG_UPDATED = "CONFIG_UPDATED"
    STRATEGY_PAUSED = "STRATEGY_PAUSED"
    STRATEGY_RESUMED = "STRATEGY_RESUMED"
    ATH_UPDATED = "ATH_UPDATED"
    BUY_EXECUTED = "BUY_EXECUTED"
    CYCLE_COMPLETE = "CYCLE_COMPLETE"


class EventSeverity(str, Enum):
    """Event severity enumeration."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class WalStatus(str, Enum):
    """Write-ahead log entry status."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


# Event types that make up the state history
STATE_HISTORY_EVENTS = (
    EventType.STATE_UPDATE,
    EventType.CRITICAL_UPDATE,
    EventType.BATCH_UPDATE,
)


class BotEvent(Base):
    """Append-only bot event."""
    __tablename__ = "bot_events"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(String(64), nullable=False, index=True)

    event_type = Column(SQLEnum(EventType), nullable=False, index=True)
    severity = Column(SQLEnum(EventSeverity), nullable=False, default=EventSeverity.INFO)
    message = Column(String(500), nullable=True)

    # Only set for WRITE_AHEAD_LOG rows
    status = Column(SQLEnum(WalStatus), nullable=True, index=True)

    # Validated through cyclebot.models.event_metadata before it is stored
    event_metadata = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<BotEvent(id={self.id}, bot_id={self.bot_id}, type={self.event_type}, status={self.status})>"

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "event_type": self.event_type.value if self.event_type else None,
            "severity": self.severity.value if self.severity else None,
            "message": self.message,
            "status": self.status.value if self.status else None,
            "metadata": self.event_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
