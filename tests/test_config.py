from decimal import Decimal

import pytest

from perp_trading.config import TradingConfig, TrendConfig


def test_from_yaml_converts_decimals_and_interpolates_env(tmp_path, monkeypatch):
    monkeypatch.setenv("PERP_LOG_DIR", "/var/log/perp")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "exchange:\n"
        "  symbol: ETHUSDT\n"
        "trend:\n"
        "  symbol: ETHUSDT\n"
        "  trade_amount: 0.01\n"
        "  loss_limit: 0.5\n"
        "  sma_length: 20\n"
        "maker:\n"
        "  bid_offset: 0.2\n"
        "logging:\n"
        '  log_file: "${PERP_LOG_DIR}/engine.log"\n'
    )

    config = TradingConfig.from_yaml(str(config_file))
    assert config.exchange.symbol == "ETHUSDT"
    assert config.trend.trade_amount == Decimal("0.01")
    assert isinstance(config.trend.loss_limit, Decimal)
    assert config.trend.sma_length == 20
    assert config.maker.bid_offset == Decimal("0.2")
    assert config.logging.log_file == "/var/log/perp/engine.log"
    # untouched defaults
    assert config.trend.lock_timeout_seconds == 3.0
    assert config.trend.entry_cooldown_seconds == 60.0
    assert config.trend.max_entry_deviation_pct == Decimal("0.05")
    assert config.logging.trade_log_file is None
    assert config.maker.depth_levels == 10
    assert config.maker.imbalance_exit_ratio == Decimal("6")


def test_missing_file_raises():
    with pytest.raises(FileNotFoundError):
        TradingConfig.from_yaml("/nonexistent/config.yaml")


def test_unknown_key_raises(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("trend:\n  trade_amout: 1\n")
    with pytest.raises(ValueError, match="trade_amout"):
        TradingConfig.from_yaml(str(config_file))


def test_empty_file_gives_defaults(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text("")
    config = TradingConfig.from_yaml(str(config_file))
    assert config.trend == TrendConfig()


def test_to_yaml_round_trip(tmp_path):
    config = TradingConfig()
    config.trend.trade_amount = Decimal("0.005")
    out = tmp_path / "nested" / "saved.yaml"
    config.to_yaml(str(out))
    loaded = TradingConfig.from_yaml(str(out))
    assert loaded.trend.trade_amount == Decimal("0.005")
    assert loaded.maker == config.maker
