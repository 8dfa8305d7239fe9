"""Logging setup and per-bot trade/activity log files."""

import csv
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional, Union
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Base logs directory
LOGS_BASE_DIR = Path.cwd() / "logs"


def configure_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    """Apply the ``logging`` config section to the root logger."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt or DEFAULT_LOG_FORMAT,
    )
    # SQL statement logging is only useful when debugging the store
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


@dataclass
class TradeLogEntry:
    """Represents a trade log entry."""
    timestamp: datetime
    bot_id: str
    client_order_id: str
    order_id: str
    side: str
    symbol: str
    quantity: Decimal
    price: Decimal
    quote_quantity: Decimal
    fee_usdt: Decimal
    fee_btc: Decimal
    capital_after: Decimal
    btc_after: Decimal
    is_simulated: bool
    profit: Optional[Decimal] = None


class BotLoggingService:
    """Service for managing per-bot log files."""

    def __init__(self, bot_id: str, is_dry_run: bool = False, base_dir: Optional[Union[str, Path]] = None):
        """Initialize logging service for a bot.

        Args:
            bot_id: The bot ID
            is_dry_run: Whether this is a dry run bot
            base_dir: Root directory for bot logs (defaults to ./logs)
        """
        self.bot_id = bot_id
        self.is_dry_run = is_dry_run
        self.bot_log_dir = Path(base_dir or LOGS_BASE_DIR) / str(bot_id)

        self._ensure_log_directory()

    def _ensure_log_directory(self) -> None:
        """Create the bot's log directory if it doesn't exist."""
        try:
            self.bot_log_dir.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Bot {self.bot_id}: Log directory ensured at {self.bot_log_dir}")
        except Exception as e:
            logger.error(f"Bot {self.bot_id}: Failed to create log directory: {e}")

    def get_log_directory(self) -> Path:
        """Get the bot's log directory path."""
        return self.bot_log_dir

    def log_trade(self, entry: TradeLogEntry) -> None:
        """Append a trade to the bot's trade log file.

        Args:
            entry: Trade log entry to write
        """
        if entry.is_simulated:
            log_file = self.bot_log_dir / "trades_simulated.csv"
        else:
            log_file = self.bot_log_dir / "trades.csv"

        write_header = not log_file.exists()

        try:
            with open(log_file, 'a', newline='', encoding='utf-8') as f:
                writer = csv.writer(f)

                if write_header:
                    writer.writerow([
                        'timestamp', 'bot_id', 'client_order_id', 'order_id', 'side',
                        'symbol', 'quantity', 'price', 'quote_quantity', 'fee_usdt',
                        'fee_btc', 'capital_after', 'btc_after', 'is_simulated', 'profit'
                    ])

                writer.writerow([
                    entry.timestamp.isoformat(),
                    entry.bot_id,
                    entry.client_order_id,
                    entry.order_id,
                    entry.side,
                    entry.symbol,
                    f"{entry.quantity:.8f}",
                    f"{entry.price:.8f}",
                    f"{entry.quote_quantity:.8f}",
                    f"{entry.fee_usdt:.8f}",
                    f"{entry.fee_btc:.8f}",
                    f"{entry.capital_after:.8f}",
                    f"{entry.btc_after:.8f}",
                    entry.is_simulated,
                    f"{entry.profit:.8f}" if entry.profit is not None else ""
                ])

            logger.debug(f"Bot {self.bot_id}: Logged trade {entry.client_order_id} to {log_file.name}")

        except Exception as e:
            logger.error(f"Bot {self.bot_id}: Failed to log trade: {e}")

    def log_activity(self, message: str, level: str = "INFO") -> None:
        """Log general bot activity to activity log.

        Args:
            message: Log message
            level: Log level (DEBUG, INFO, WARNING, ERROR)
        """
        activity_file = self.bot_log_dir / "activity.log"

        try:
            with open(activity_file, 'a', encoding='utf-8') as f:
                timestamp = datetime.utcnow().isoformat()
                prefix = "[DRY RUN] " if self.is_dry_run else ""
                f.write(f"{timestamp} [{level}] {prefix}{message}\n")

        except Exception as e:
            logger.error(f"Bot {self.bot_id}: Failed to log activity: {e}")
