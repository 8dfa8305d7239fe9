# Database Models

from .database import (
    Base,
    DEFAULT_DATABASE_URL,
    PreciseDecimal,
    create_engine_and_sessionmaker,
    init_db,
)
from .cycle_state import CycleState, CycleStatus, UPDATABLE_FIELDS
from .bot_event import BotEvent, EventType, EventSeverity, WalStatus, STATE_HISTORY_EVENTS
from .pause_state import PauseState, PauseStatus, PauseType
from .event_metadata import (
    AthUpdatedMetadata,
    BatchUpdateMetadata,
    ConfigUpdatedMetadata,
    CorruptionMetadata,
    CycleInitializedMetadata,
    PauseMetadata,
    ResumeMetadata,
    StateUpdateErrorMetadata,
    StateUpdateMetadata,
    TradeMetadata,
    ViolationRecord,
    WalMetadata,
    dump_metadata,
    parse_event_metadata,
    to_jsonable,
)

__all__ = [
    "Base",
    "DEFAULT_DATABASE_URL",
    "PreciseDecimal",
    "create_engine_and_sessionmaker",
    "init_db",
    "CycleState",
    "CycleStatus",
    "UPDATABLE_FIELDS",
    "BotEvent",
    "EventType",
    "EventSeverity",
    "WalStatus",
    "STATE_HISTORY_EVENTS",
    "PauseState",
    "PauseStatus",
    "PauseType",
    "AthUpdatedMetadata",
    "BatchUpdateMetadata",
    "ConfigUpdatedMetadata",
    "CorruptionMetadata",
    "CycleInitializedMetadata",
    "PauseMetadata",
    "ResumeMetadata",
    "StateUpdateErrorMetadata",
    "StateUpdateMetadata",
    "TradeMetadata",
    "ViolationRecord",
    "WalMetadata",
    "dump_metadata",
    "parse_event_metadata",
    "to_jsonable",
]
