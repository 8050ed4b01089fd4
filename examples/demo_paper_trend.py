"""Paper-trading demo of the trend engine.

Shows:
1. Structured logging
2. Driving TrendEngine with the in-memory paper exchange
3. An SMA crossover entry followed by protective stops
4. A loss-limit forced exit and the entry cooldown
"""
import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add parent directory to path so we can import perp_trading
sys.path.insert(0, str(Path(__file__).parent.parent))

from perp_trading.config import TrendConfig
from perp_trading.exchange import InMemoryAdapter
from perp_trading.logging_setup import logger, setup_logging
from perp_trading.models import Kline
from perp_trading.trend_engine import TrendEngine

# Synthetic last prices around an SMA of 100: cross up, drift, then drop through the loss limit
PRICE_PATH = ["99.9", "100.1", "100.3", "100.6", "100.4", "99.5", "98.8", "98.7", "99.9", "100.2"]


def flat_klines(count, close="100"):
    return [
        Kline(
            open_time=i * 60_000,
            open=Decimal(close),
            high=Decimal(close),
            low=Decimal(close),
            close=Decimal(close),
            close_time=i * 60_000 + 59_999,
            is_closed=True,
        )
        for i in range(count)
    ]


async def main():
    setup_logging(log_file="demo_paper_trend.log", level="INFO", enable_console=True)
    logger.info("=== Paper Trend Demo ===")

    config = TrendConfig(
        symbol="BTCUSDT",
        trade_amount=Decimal("1"),
        loss_limit=Decimal("1"),
        trailing_profit=Decimal("2"),
        profit_lock_trigger_usd=Decimal("0.4"),
        profit_lock_offset_usd=Decimal("0.2"),
        price_tick=Decimal("0.1"),
        qty_step=Decimal("0.001"),
    )
    adapter = InMemoryAdapter(symbol=config.symbol)
    clock = [1_700_000_000.0]
    engine = TrendEngine(config, adapter, clock=lambda: clock[0])
    engine.subscribe()

    adapter.push_orders()
    adapter.push_klines(flat_klines(config.sma_length))

    for price in PRICE_PATH:
        p = Decimal(price)
        adapter.push_ticker(p)
        adapter.push_depth([(p - Decimal("0.1"), 5)], [(p + Decimal("0.1"), 5)])
        await engine.tick()
        await adapter.flush()
        clock[0] += 5
        snap = engine.get_snapshot()
        logger.info(
            f"price={snap.last_price} trend={snap.trend} position={snap.position.position_amt} "
            f"open_orders={len(snap.open_orders)} trades={snap.total_trades}"
        )

    logger.info("=== Trade log ===")
    for entry in engine.trade_log.all():
        logger.info(f"[{entry.type}] {entry.detail}")

    await engine.stop()


if __name__ == "__main__":
    asyncio.run(main())
