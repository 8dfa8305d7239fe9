"""Tests for typed event metadata."""

import pytest
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import ValidationError

from cyclebot.models import (
    CycleStatus,
    PauseMetadata,
    TradeMetadata,
    WalMetadata,
    dump_metadata,
    parse_event_metadata,
    to_jsonable,
)


def test_trade_metadata_stores_decimals_as_strings():
    metadata = TradeMetadata(
        side="SELL",
        client_order_id="cb-x",
        quantity=Decimal("0.00421"),
        quote_quantity=Decimal("209.97375"),
        avg_price=Decimal("49875"),
        profit=Decimal("9.99875"),
    )

    stored = dump_metadata(metadata)

    assert stored["kind"] == "trade"
    assert stored["schema_version"] == 1
    assert stored["quantity"] == "0.00421"

    parsed = parse_event_metadata(stored)
    assert isinstance(parsed, TradeMetadata)
    assert parsed.profit == Decimal("9.99875")


def test_stored_payload_picks_model_by_kind():
    parsed = parse_event_metadata({"kind": "pause", "pause_type": "manual", "reason": "maintenance"})

    assert isinstance(parsed, PauseMetadata)
    assert parsed.details == {}


def test_unknown_fields_rejected():
    with pytest.raises(ValidationError):
        parse_event_metadata({"kind": "pause", "pause_type": "manual", "reason": "x", "surprise": 1})


def test_unknown_kind_rejected():
    with pytest.raises(ValidationError):
        parse_event_metadata({"kind": "mystery"})


def test_wal_metadata_defaults():
    metadata = WalMetadata(operation="buy_order", state_update={"pending_order_id": "cb-x"})

    assert metadata.result is None
    assert metadata.completed_at is None


class Color(Enum):
    RED = "red"


def test_to_jsonable_nested():
    value = {
        "amount": Decimal("1.50"),
        "status": CycleStatus.HOLDING,
        "color": Color.RED,
        "at": datetime(2024, 1, 1, 12, 0),
        "items": (Decimal("1E+2"), None),
        1: "int key",
    }

    assert to_jsonable(value) == {
        "amount": "1.50",
        "status": "HOLDING",
        "color": "red",
        "at": "2024-01-01T12:00:00",
        "items": ["100", None],
        "1": "int key",
    }
