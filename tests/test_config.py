"""Tests for configuration loading and validation."""

import pytest
from decimal import Decimal

from cyclebot.services.config import ConfigService, ConfigValidationException, StrategyConfig


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return ConfigService(str(path))


def error_paths(exc_info):
    return [e.path for e in exc_info.value.errors]


class TestLoadAndValidate:

    def test_valid_file(self, tmp_path):
        service = write_config(tmp_path, """
bot:
  id: btc-1
  dry_run: true
strategy:
  max_purchases: 5
  drop_percentage: 0.04
  initial_capital_usdt: 500
transactions:
  critical_capital_threshold: 250
""")
        service.load_and_validate()

        strategy = service.strategy_config()
        assert strategy.max_purchases == 5
        assert strategy.drop_percentage == Decimal("0.04")
        assert strategy.initial_capital_usdt == Decimal("500")
        # Unset values keep their defaults
        assert strategy.rise_percentage == Decimal("0.05")

        assert service.transaction_settings().critical_capital_threshold == Decimal("250")
        assert service.bot_settings().id == "btc-1"
        assert service.get("strategy.max_purchases") == 5
        assert service.get("strategy.missing", "fallback") == "fallback"

    def test_missing_file_uses_defaults(self, tmp_path):
        service = ConfigService(str(tmp_path / "nope.yaml"))

        assert service.load_and_validate() == {}
        assert service.strategy_config() == StrategyConfig()
        assert service.database_url is None

    def test_empty_file(self, tmp_path):
        assert write_config(tmp_path, "").load_and_validate() == {}

    def test_invalid_yaml(self, tmp_path):
        service = write_config(tmp_path, "strategy: [unclosed")

        with pytest.raises(ConfigValidationException, match="Invalid YAML"):
            service.load_and_validate()

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigValidationException, match="must be a dictionary"):
            write_config(tmp_path, "- a\n- b\n").load_and_validate()


class TestSchema:

    @pytest.fixture
    def service(self):
        return ConfigService("unused.yaml")

    def test_unknown_key(self, service):
        with pytest.raises(ConfigValidationException) as exc_info:
            service.load_from_dict({"strategy": {"leverage": 3}})
        assert error_paths(exc_info) == ["strategy.leverage"]

    def test_out_of_range(self, service):
        errors = service.validate({"strategy": {"max_purchases": 31, "drop_percentage": 0.01}})

        messages = {e.path: e.message for e in errors}
        assert "above maximum" in messages["strategy.max_purchases"]
        assert "below minimum" in messages["strategy.drop_percentage"]

    def test_bool_is_not_a_number(self, service):
        errors = service.validate({"strategy": {"max_purchases": True}})
        assert errors[0].message == "Expected int, got bool"

    def test_int_accepted_for_float(self, service):
        assert service.validate({"strategy": {"min_buy_usdt": 10}}) == []

    def test_option_list(self, service):
        errors = service.validate({"logging": {"level": "LOUD"}})
        assert "not in allowed options" in errors[0].message

    def test_section_must_be_dict(self, service):
        errors = service.validate({"email": "yes"})
        assert errors[0].message == "Expected dict, got str"


class TestStrategyConfig:

    def test_merged_converts_decimals(self):
        config = StrategyConfig().merged({"drop_percentage": 0.03, "max_purchases": 4})

        assert config.drop_percentage == Decimal("0.03")
        assert config.max_purchases == 4

    def test_merged_leaves_original_untouched(self):
        original = StrategyConfig()
        original.merged({"max_purchases": 4})
        assert original.max_purchases == 10

    def test_unknown_setting(self):
        with pytest.raises(ValueError, match="Unknown strategy setting 'leverage'"):
            StrategyConfig().merged({"leverage": 2})
