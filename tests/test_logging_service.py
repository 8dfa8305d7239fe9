"""Tests for per-bot trade and activity logs."""

import csv
import logging
from datetime import datetime
from decimal import Decimal

from cyclebot.services.logging_service import BotLoggingService, TradeLogEntry, configure_logging


def make_entry(is_simulated=True, profit=None) -> TradeLogEntry:
    return TradeLogEntry(
        timestamp=datetime(2024, 1, 1, 8, 0),
        bot_id="log-bot",
        client_order_id="cb-log-bot-buy-abc",
        order_id="7",
        side="BUY",
        symbol="BTCUSDT",
        quantity=Decimal("0.00421"),
        price=Decimal("47500"),
        quote_quantity=Decimal("199.975"),
        fee_usdt=Decimal("0"),
        fee_btc=Decimal("0"),
        capital_after=Decimal("800.025"),
        btc_after=Decimal("0.00421"),
        is_simulated=is_simulated,
        profit=profit,
    )


def read_rows(path):
    with open(path, newline="") as f:
        return list(csv.reader(f))


def test_log_directory_created(tmp_path):
    service = BotLoggingService("log-bot", base_dir=tmp_path)

    assert service.get_log_directory() == tmp_path / "log-bot"
    assert service.get_log_directory().is_dir()


def test_trade_log_header_written_once(tmp_path):
    service = BotLoggingService("log-bot", is_dry_run=True, base_dir=tmp_path)

    service.log_trade(make_entry())
    service.log_trade(make_entry(profit=Decimal("9.99875")))

    rows = read_rows(tmp_path / "log-bot" / "trades_simulated.csv")
    assert len(rows) == 3
    assert rows[0][0] == "timestamp"
    assert rows[1][6] == "0.00421000"
    assert rows[1][-1] == ""
    assert rows[2][-1] == "9.99875000"


def test_live_trades_go_to_separate_file(tmp_path):
    service = BotLoggingService("log-bot", base_dir=tmp_path)

    service.log_trade(make_entry(is_simulated=False))

    assert (tmp_path / "log-bot" / "trades.csv").exists()
    assert not (tmp_path / "log-bot" / "trades_simulated.csv").exists()


def test_activity_log_marks_dry_runs(tmp_path):
    BotLoggingService("dry", is_dry_run=True, base_dir=tmp_path).log_activity("Engine started")
    BotLoggingService("live", base_dir=tmp_path).log_activity("Order failed", "ERROR")

    dry_line = (tmp_path / "dry" / "activity.log").read_text()
    live_line = (tmp_path / "live" / "activity.log").read_text()
    assert "[INFO] [DRY RUN] Engine started" in dry_line
    assert "[ERROR] Order failed" in live_line


def test_configure_logging_quiets_sql_engine():
    configure_logging("DEBUG")
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
