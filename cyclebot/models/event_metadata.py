"""Closed, versioned schemas for bot event metadata.

Every ``BotEvent.event_metadata`` payload is built from one of these models
and stored as its JSON dump. The ``kind`` field discriminates the union so a
stored row can be validated back into its model with
``parse_event_metadata``. Bump ``schema_version`` when a model changes shape.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def to_jsonable(value: Any) -> Any:
    """Convert Decimals, enums and datetimes inside a payload to JSON-safe values."""
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


class EventMetadataBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = 1


class StateUpdateMetadata(EventMetadataBase):
    """Audit record of a committed state update (plain, critical or versioned)."""
    kind: Literal["state_update"] = "state_update"
    changes: Dict[str, Any]
    previous_version: int
    new_version: int
    critical: bool = False
    isolation_level: Optional[str] = None


class StateUpdateErrorMetadata(EventMetadataBase):
    kind: Literal["state_update_error"] = "state_update_error"
    attempted_changes: Dict[str, Any]
    error: str


class BatchUpdateMetadata(EventMetadataBase):
    kind: Literal["batch_update"] = "batch_update"
    bot_ids: List[str]
    update_count: int
    changes: Dict[str, Any] = Field(default_factory=dict)


class WalMetadata(EventMetadataBase):
    """Write-ahead log entry wrapped around an external action."""
    kind: Literal["wal"] = "wal"
    operation: str
    state_update: Dict[str, Any]
    details: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    recovered_at: Optional[datetime] = None


class CycleInitializedMetadata(EventMetadataBase):
    kind: Literal["cycle_initialized"] = "cycle_initialized"
    initial_capital: Decimal
    max_purchases: int
    buy_amount: Decimal


class ViolationRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str
    error: str
    value: Optional[str] = None


class CorruptionMetadata(EventMetadataBase):
    kind: Literal["corruption"] = "corruption"
    violations: List[ViolationRecord]
    state: Dict[str, Any]
    detected_at: datetime


class ConfigUpdatedMetadata(EventMetadataBase):
    kind: Literal["config_updated"] = "config_updated"
    old_buy_amount: Optional[Decimal] = None
    new_buy_amount: Decimal
    changes: Dict[str, Any]


class PauseMetadata(EventMetadataBase):
    kind: Literal["pause"] = "pause"
    pause_type: str
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ResumeMetadata(EventMetadataBase):
    kind: Literal["resume"] = "resume"
    forced: bool
    automatic: bool = False
    resumed_status: str
    pause_duration_seconds: Optional[float] = None
    validation: Dict[str, Any] = Field(default_factory=dict)


class AthUpdatedMetadata(EventMetadataBase):
    kind: Literal["ath_updated"] = "ath_updated"
    old_ath: Optional[Decimal] = None
    new_ath: Decimal


class TradeMetadata(EventMetadataBase):
    """Summary of a filled buy or a completed cycle sell."""
    kind: Literal["trade"] = "trade"
    side: Literal["BUY", "SELL"]
    client_order_id: str
    order_id: Optional[str] = None
    quantity: Decimal
    quote_quantity: Decimal
    avg_price: Decimal
    fee_usdt: Decimal = Decimal("0")
    fee_btc: Decimal = Decimal("0")
    profit: Optional[Decimal] = None


EventMetadata = Annotated[
    Union[
        StateUpdateMetadata,
        StateUpdateErrorMetadata,
        BatchUpdateMetadata,
        WalMetadata,
        CycleInitializedMetadata,
        CorruptionMetadata,
        ConfigUpdatedMetadata,
        PauseMetadata,
        ResumeMetadata,
        AthUpdatedMetadata,
        TradeMetadata,
    ],
    Field(discriminator="kind"),
]

_event_metadata_adapter = TypeAdapter(EventMetadata)


def dump_metadata(metadata: EventMetadataBase) -> Dict[str, Any]:
    """Serialize a metadata model for storage in a JSON column."""
    return metadata.model_dump(mode="json")


def parse_event_metadata(data: Dict[str, Any]) -> EventMetadataBase:
    """Validate a stored payload back into its metadata model.

    Raises:
        pydantic.ValidationError: If the payload matches no known schema.
    """
    return _event_metadata_adapter.validate_python(data)
