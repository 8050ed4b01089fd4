"""Configuration loader for the trading engines.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import yaml

T = TypeVar("T")


@dataclass
class ExchangeConfig:
    """Aster futures exchange settings."""
    base_url: str = "https://fapi.asterdex.com"
    ws_url: str = "wss://fstream.asterdex.com"
    symbol: str = "BTCUSDT"
    timeout: int = 10
    max_retries: int = 5
    max_backoff_seconds: float = 60.0
    recv_window: int = 5000


@dataclass
class StrategyCommon:
    """Parameters shared by both strategy engines."""
    symbol: str = "BTCUSDT"
    trade_amount: Decimal = Decimal('0.001')
    loss_limit: Decimal = Decimal('0.03')  # quote currency lost before forced exit
    price_tick: Decimal = Decimal('0.1')
    qty_step: Decimal = Decimal('0.001')
    max_close_slippage_pct: Decimal = Decimal('0.05')
    max_log_entries: int = 200
    lock_timeout_seconds: float = 3.0
    flat_epsilon: Decimal = Decimal('0.00001')  # below this a position counts as flat
    entry_price_epsilon: Decimal = Decimal('1e-8')  # below this the entry price is unknown


@dataclass
class TrendConfig(StrategyCommon):
    """SMA crossover trend strategy."""
    trailing_profit: Decimal = Decimal('0.2')
    trailing_callback_rate: Decimal = Decimal('0.2')  # percent
    profit_lock_trigger_usd: Decimal = Decimal('0.1')
    profit_lock_offset_usd: Decimal = Decimal('0.05')
    kline_interval: str = "1m"
    sma_length: int = 30
    poll_interval_seconds: float = 0.5
    entry_cooldown_seconds: float = 60.0
    max_entry_deviation_pct: Decimal = Decimal('0.05')  # market entry vs mark


@dataclass
class MakerConfig(StrategyCommon):
    """Offset market-making strategy."""
    bid_offset: Decimal = Decimal('0')
    ask_offset: Decimal = Decimal('0')
    price_chase_threshold: Decimal = Decimal('0.3')
    refresh_interval_seconds: float = 1.0
    depth_levels: int = 10
    depth_imbalance_ratio: Decimal = Decimal('3')
    imbalance_exit_ratio: Decimal = Decimal('6')


@dataclass
class LoggingConfig:
    log_file: str = "perp_trading.log"
    log_level: str = "INFO"
    trade_log_file: Optional[str] = None


def _build(cls: Type[T], raw: Dict[str, Any]) -> T:
    """Instantiate a config dataclass, converting Decimal fields via str()."""
    decimal_fields = {f.name for f in fields(cls) if isinstance(f.default, Decimal)}
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{
        k: Decimal(str(v)) if k in decimal_fields else v
        for k, v in raw.items()
    })


def _dump(obj: Any) -> Dict[str, Any]:
    return {
        f.name: str(getattr(obj, f.name)) if isinstance(getattr(obj, f.name), Decimal) else getattr(obj, f.name)
        for f in fields(obj)
    }


@dataclass
class TradingConfig:
    """Complete trading system configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    trend: TrendConfig = field(default_factory=TrendConfig)
    maker: MakerConfig = field(default_factory=MakerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "TradingConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            TradingConfig instance

        Raises:
            FileNotFoundError: config file does not exist
            ValueError: a section contains an unknown key

        Example YAML:
            exchange:
              symbol: BTCUSDT
            trend:
              trade_amount: 0.001
              loss_limit: 0.03
            logging:
              log_file: "${LOG_DIR}/trend.log"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}

        return cls(
            exchange=_build(ExchangeConfig, data.get("exchange") or {}),
            trend=_build(TrendConfig, data.get("trend") or {}),
            maker=_build(MakerConfig, data.get("maker") or {}),
            logging=_build(LoggingConfig, data.get("logging") or {}),
        )

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {
            "exchange": _dump(self.exchange),
            "trend": _dump(self.trend),
            "maker": _dump(self.maker),
            "logging": _dump(self.logging),
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
