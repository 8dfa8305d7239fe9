"""Configuration management and validation service."""

import os
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    path: str
    message: str


class ConfigValidationException(Exception):
    """Raised when config validation fails."""

    def __init__(self, errors: List[ConfigValidationError]):
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


# Configuration schema definition
CONFIG_SCHEMA = {
    "bot": {
        "type": "dict",
        "required": False,
        "properties": {
            "id": {"type": "str", "required": False},
            "dry_run": {"type": "bool", "required": False},
            "log_dir": {"type": "str", "required": False},
        }
    },
    "database": {
        "type": "dict",
        "required": False,
        "properties": {
            "url": {"type": "str", "required": False},
        }
    },
    "strategy": {
        "type": "dict",
        "required": False,
        "properties": {
            "symbol": {"type": "str", "required": False},
            "drop_percentage": {"type": "float", "required": False, "min": 0.02, "max": 0.08},
            "rise_percentage": {"type": "float", "required": False, "min": 0.02, "max": 0.08},
            "max_purchases": {"type": "int", "required": False, "min": 1, "max": 30},
            "min_buy_usdt": {"type": "float", "required": False, "min": 10},
            "initial_capital_usdt": {"type": "float", "required": False, "min": 0.01},
            "exchange_min_notional": {"type": "float", "required": False, "min": 0},
            "drift_threshold_pct": {"type": "float", "required": False, "min": 0.0001, "max": 1},
            "slippage_buy_pct": {"type": "float", "required": False, "min": 0, "max": 0.1},
            "slippage_sell_pct": {"type": "float", "required": False, "min": 0, "max": 0.1},
            "tick_size": {"type": "float", "required": False, "min": 0},
            "step_size": {"type": "float", "required": False, "min": 0},
            "ath_window": {"type": "int", "required": False, "min": 1, "max": 1000},
        }
    },
    "transactions": {
        "type": "dict",
        "required": False,
        "properties": {
            "timeout_ms": {"type": "int", "required": False, "min": 1},
            "max_retries": {"type": "int", "required": False, "min": 1, "max": 10},
            "retry_delay_ms": {"type": "int", "required": False, "min": 0},
            "backoff_multiplier": {"type": "float", "required": False, "min": 1},
            "critical_capital_threshold": {"type": "float", "required": False, "min": 0},
        }
    },
    "pause": {
        "type": "dict",
        "required": False,
        "properties": {
            "enable_notifications": {"type": "bool", "required": False},
            "require_manual_resume": {"type": "bool", "required": False},
        }
    },
    "email": {
        "type": "dict",
        "required": False,
        "properties": {
            "enabled": {"type": "bool", "required": False},
            "smtp_host": {"type": "str", "required": False},
            "smtp_port": {"type": "int", "required": False, "min": 1, "max": 65535},
            "smtp_user": {"type": "str", "required": False},
            "smtp_password": {"type": "str", "required": False},
            "from_address": {"type": "str", "required": False},
            "to_addresses": {"type": "list", "required": False},
            "use_tls": {"type": "bool", "required": False},
        }
    },
    "logging": {
        "type": "dict",
        "required": False,
        "properties": {
            "level": {"type": "str", "required": False, "options": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
            "format": {"type": "str", "required": False},
        }
    },
}


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value))


@dataclass
class StrategyConfig:
    """Strategy parameters for one bot."""
    symbol: str = "BTCUSDT"
    drop_percentage: Decimal = Decimal("0.05")
    rise_percentage: Decimal = Decimal("0.05")
    max_purchases: int = 10
    min_buy_usdt: Decimal = Decimal("10")
    initial_capital_usdt: Decimal = Decimal("300")
    exchange_min_notional: Decimal = Decimal("0")
    drift_threshold_pct: Decimal = Decimal("0.005")
    slippage_buy_pct: Decimal = Decimal("0.003")
    slippage_sell_pct: Decimal = Decimal("0.003")
    tick_size: Decimal = Decimal("0.01")
    step_size: Decimal = Decimal("0.00001")
    ath_window: int = 20

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyConfig":
        """Build from a (validated) ``strategy`` config section."""
        return cls().merged(data)

    def merged(self, changes: Dict[str, Any]) -> "StrategyConfig":
        """Copy of this config with ``changes`` applied."""
        config = replace(self)
        for key, value in changes.items():
            if not hasattr(config, key):
                raise ValueError(f"Unknown strategy setting '{key}'")
            if isinstance(getattr(config, key), Decimal):
                value = _decimal(value)
            setattr(config, key, value)
        return config


@dataclass
class TransactionSettings:
    """Timeout and retry policy for state transactions."""
    timeout_ms: int = 5000
    max_retries: int = 3
    retry_delay_ms: int = 100
    backoff_multiplier: float = 2.0
    critical_capital_threshold: Decimal = Decimal("100")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionSettings":
        settings = cls(**{k: v for k, v in data.items() if k != "critical_capital_threshold"})
        if "critical_capital_threshold" in data:
            settings.critical_capital_threshold = _decimal(data["critical_capital_threshold"])
        return settings


@dataclass
class PauseSettings:
    enable_notifications: bool = True
    require_manual_resume: bool = True


@dataclass
class BotSettings:
    id: str = "default"
    dry_run: bool = True
    log_dir: Optional[str] = None


class ConfigService:
    """Service for loading and validating configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize config service.

        Args:
            config_path: Path to config file. If None, uses config.yaml in
                the current working directory.
        """
        if config_path is None:
            config_path = str(Path.cwd() / "config.yaml")

        self.config_path = config_path
        self._config: Dict[str, Any] = {}

    def load_and_validate(self) -> Dict[str, Any]:
        """Load and validate the configuration file.

        Returns:
            Validated configuration dictionary.

        Raises:
            ConfigValidationException: If validation fails.
        """
        errors: List[ConfigValidationError] = []

        if not os.path.exists(self.config_path):
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._config = {}
            return self._config

        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            errors.append(ConfigValidationError(
                path="",
                message=f"Invalid YAML syntax: {str(e)}"
            ))
            raise ConfigValidationException(errors)

        if config is None:
            config = {}

        if not isinstance(config, dict):
            errors.append(ConfigValidationError(
                path="",
                message=f"Config must be a dictionary, got {type(config).__name__}"
            ))
            raise ConfigValidationException(errors)

        errors.extend(self.validate(config))

        if errors:
            raise ConfigValidationException(errors)

        self._config = config
        logger.info(f"Configuration loaded and validated from {self.config_path}")
        return config

    def load_from_dict(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and install an in-memory configuration.

        Raises:
            ConfigValidationException: If validation fails.
        """
        errors = self.validate(config)
        if errors:
            raise ConfigValidationException(errors)
        self._config = config
        return config

    def validate(self, config: Dict[str, Any]) -> List[ConfigValidationError]:
        """Validate a configuration dictionary against the schema."""
        return self._validate_dict(config, CONFIG_SCHEMA, "")

    def _validate_dict(
        self,
        data: Dict[str, Any],
        schema: Dict[str, Any],
        path: str
    ) -> List[ConfigValidationError]:
        """Validate a dictionary against schema.

        Args:
            data: Data to validate
            schema: Schema to validate against
            path: Current path for error messages

        Returns:
            List of validation errors
        """
        errors = []

        for key in data:
            if key not in schema:
                errors.append(ConfigValidationError(
                    path=f"{path}.{key}" if path else key,
                    message=f"Unknown configuration key '{key}'"
                ))

        for key, prop_schema in schema.items():
            current_path = f"{path}.{key}" if path else key

            if key not in data:
                if prop_schema.get("required", False):
                    errors.append(ConfigValidationError(
                        path=current_path,
                        message="Required field missing"
                    ))
                continue

            errors.extend(self._validate_value(data[key], prop_schema, current_path))

        return errors

    def _validate_value(
        self,
        value: Any,
        schema: Dict[str, Any],
        path: str
    ) -> List[ConfigValidationError]:
        """Validate a single value against schema."""
        errors = []
        expected_type = schema.get("type")

        type_map = {
            "str": str,
            "int": int,
            "float": (int, float),
            "bool": bool,
            "list": list,
            "dict": dict,
        }

        if expected_type == "dict":
            if not isinstance(value, dict):
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Expected dict, got {type(value).__name__}"
                ))
                return errors

            if "properties" in schema:
                errors.extend(self._validate_dict(value, schema["properties"], path))

        elif expected_type in type_map:
            expected = type_map[expected_type]
            # bool is an int subclass; never accept it for numeric fields
            if not isinstance(value, expected) or (expected_type in ("int", "float") and isinstance(value, bool)):
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Expected {expected_type}, got {type(value).__name__}"
                ))
                return errors

            if expected_type in ("int", "float"):
                if "min" in schema and value < schema["min"]:
                    errors.append(ConfigValidationError(
                        path=path,
                        message=f"Value {value} is below minimum {schema['min']}"
                    ))
                if "max" in schema and value > schema["max"]:
                    errors.append(ConfigValidationError(
                        path=path,
                        message=f"Value {value} is above maximum {schema['max']}"
                    ))

            if "options" in schema and value not in schema["options"]:
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Value '{value}' not in allowed options: {schema['options']}"
                ))

        return errors

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "strategy.max_purchases")
            default: Default value if not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def strategy_config(self) -> StrategyConfig:
        return StrategyConfig.from_dict(self.get("strategy", {}) or {})

    def transaction_settings(self) -> TransactionSettings:
        return TransactionSettings.from_dict(self.get("transactions", {}) or {})

    def pause_settings(self) -> PauseSettings:
        return PauseSettings(**(self.get("pause", {}) or {}))

    def bot_settings(self) -> BotSettings:
        return BotSettings(**(self.get("bot", {}) or {}))

    @property
    def database_url(self) -> Optional[str]:
        return self.get("database.url")
