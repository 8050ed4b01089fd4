"""
Perpetual Futures Trading Core.

Order coordination and strategy engines for Aster perpetual futures featuring:
- Per-order-type operation locks with timeout auto-release
- Duplicate-order cleanup and mark-price deviation guard
- Price/quantity truncation to exchange tick and step
- SMA crossover trend engine with stepped profit lock and trailing stop
- Offset market-making engine with depth-imbalance exit
- Desired-vs-open order reconciliation
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    order_coordinator: Guarded, serialized order submission
    order_plan: Desired-vs-open order diffing
    trend_engine: SMA crossover strategy state machine
    offset_maker_engine: Two-sided offset quoting
    position: Position snapshot and protective stop math
    pricing: Rounding, guards and depth statistics
    exchange: Exchange adapter interface and paper exchange
    async_aster_adapter: Aster futures integration
    config: Configuration loading
    secrets: Credential management

Example:
    >>> from perp_trading.async_aster_adapter import AsyncAsterAdapter
    >>> from perp_trading.config import TradingConfig
    >>> from perp_trading.secrets import load_credentials
    >>> from perp_trading.trend_engine import TrendEngine
    >>>
    >>> config = TradingConfig.from_yaml("config.yaml")
    >>> creds = load_credentials()
    >>> async with AsyncAsterAdapter(creds.api_key, creds.api_secret, symbol=config.trend.symbol) as adapter:
    ...     engine = TrendEngine(config.trend, adapter)
    ...     engine.start()
"""

__version__ = "0.1.0"
__all__ = [
    "models",
    "pricing",
    "position",
    "order_plan",
    "order_coordinator",
    "trade_log",
    "engine_base",
    "trend_engine",
    "offset_maker_engine",
    "exchange",
    "async_aster_adapter",
    "rest_client",
    "ws_client",
    "async_event_loop",
    "config",
    "secrets",
    "logging_setup",
]
