#!/usr/bin/env python
"""Run a strategy engine against Aster futures.

Usage:
    python scripts/run_engine.py trend --config config.yaml
    python scripts/run_engine.py maker --config config.yaml --status-interval 10
"""
import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from perp_trading.async_aster_adapter import AsyncAsterAdapter
from perp_trading.async_event_loop import EngineRunner
from perp_trading.config import TradingConfig
from perp_trading.logging_setup import logger, setup_logging
from perp_trading.offset_maker_engine import OffsetMakerEngine
from perp_trading.secrets import load_credentials
from perp_trading.trend_engine import TrendEngine


def format_status(engine):
    """One status line per engine snapshot."""
    snap = engine.get_snapshot()
    pos = snap.position
    if isinstance(engine, TrendEngine):
        return (
            f"trend | ready={snap.ready} price={snap.last_price} sma={snap.sma} trend={snap.trend} "
            f"pos={pos.position_amt}@{pos.entry_price} pnl={snap.pnl} trades={snap.total_trades} "
            f"profit={snap.total_profit} volume={snap.session_volume} orders={len(snap.open_orders)}"
        )
    return (
        f"maker | ready={snap.ready} bid={snap.top_bid} ask={snap.top_ask} spread={snap.spread} "
        f"pos={pos.position_amt}@{pos.entry_price} pnl={snap.pnl} imbalance={snap.depth_imbalance} "
        f"volume={snap.session_volume} orders={len(snap.open_orders)}"
    )


def print_status(engines):
    for engine in engines:
        logger.info(format_status(engine))


async def run(strategy, config, status_interval):
    creds = load_credentials()
    strategy_config = config.trend if strategy == "trend" else config.maker
    async with AsyncAsterAdapter(
        creds.api_key,
        creds.api_secret,
        symbol=strategy_config.symbol,
        base_url=config.exchange.base_url,
        ws_url=config.exchange.ws_url,
        timeout=config.exchange.timeout,
        max_retries=config.exchange.max_retries,
        max_backoff_seconds=config.exchange.max_backoff_seconds,
        recv_window=config.exchange.recv_window,
    ) as adapter:
        if strategy == "trend":
            engine = TrendEngine(strategy_config, adapter)
        else:
            engine = OffsetMakerEngine(strategy_config, adapter)
        runner = EngineRunner([engine], status=print_status, status_interval=status_interval)
        runner.install_signal_handlers()
        await runner.start()


def main():
    parser = argparse.ArgumentParser(description="Run a perpetual-futures strategy engine")
    parser.add_argument("strategy", choices=["trend", "maker"], help="Engine to run")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--status-interval", type=float, default=5.0, help="Seconds between status lines")
    args = parser.parse_args()

    try:
        config = TradingConfig.from_yaml(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    setup_logging(
        log_file=config.logging.log_file,
        level=config.logging.log_level,
        trade_log_file=config.logging.trade_log_file,
    )

    try:
        asyncio.run(run(args.strategy, config, args.status_interval))
    except ValueError as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
