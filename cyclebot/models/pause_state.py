"""Pause state model - one row per pause, closed when the strategy resumes."""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum as SQLEnum

from .database import Base


class PauseStatus(str, Enum):
    """Pause record status."""
    PAUSED = "paused"
    ACTIVE = "active"


class PauseType(str, Enum):
    """Why the strategy was paused."""
    DRIFT_DETECTED = "drift_detected"
    CRITICAL_ERROR = "critical_error"
    MANUAL = "manual"
    STATE_CORRUPTION = "state_corruption"
    UNRESOLVED_ORDER = "unresolved_order"


class PauseState(Base):
    """Pause/resume record for a bot."""
    __tablename__ = "pause_states"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(String(64), nullable=False, index=True)

    status = Column(SQLEnum(PauseStatus), nullable=False, default=PauseStatus.PAUSED)
    pause_type = Column(SQLEnum(PauseType), nullable=False)
    pause_reason = Column(String(500), nullable=False)
    pause_metadata = Column(JSON, nullable=False, default=dict)

    paused_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resumed_at = Column(DateTime, nullable=True)
    resume_metadata = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<PauseState(id={self.id}, bot_id={self.bot_id}, type={self.pause_type}, status={self.status})>"
