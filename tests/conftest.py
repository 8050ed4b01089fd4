"""Shared market-data builders for the test suite."""
from decimal import Decimal

import pytest

from perp_trading.config import MakerConfig, TrendConfig
from perp_trading.exchange import InMemoryAdapter
from perp_trading.models import Kline, Order, OrderSide, OrderType


def make_klines(closes, closed=True):
    """One-minute candles with the given closes."""
    return [
        Kline(
            open_time=i * 60_000,
            open=Decimal(str(c)),
            high=Decimal(str(c)),
            low=Decimal(str(c)),
            close=Decimal(str(c)),
            close_time=i * 60_000 + 59_999,
            is_closed=closed,
        )
        for i, c in enumerate(closes)
    ]


def make_order(order_id, side=OrderSide.BUY, type=OrderType.LIMIT, price="100", qty="1", status="NEW",
               update_time=0, reduce_only=False, stop_price="0", symbol="BTCUSDT"):
    return Order(
        order_id=order_id,
        symbol=symbol,
        side=side,
        type=type,
        status=status,
        price=Decimal(price),
        orig_qty=Decimal(qty),
        stop_price=Decimal(stop_price),
        update_time=update_time,
        reduce_only=reduce_only,
    )


class FakeClock:
    """Settable wall clock in seconds."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def adapter():
    return InMemoryAdapter(symbol="BTCUSDT")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def trend_config():
    return TrendConfig(
        symbol="BTCUSDT",
        trade_amount=Decimal("1"),
        loss_limit=Decimal("1"),
        trailing_profit=Decimal("2"),
        trailing_callback_rate=Decimal("0.2"),
        profit_lock_trigger_usd=Decimal("0.4"),
        profit_lock_offset_usd=Decimal("0.2"),
        price_tick=Decimal("0.1"),
        qty_step=Decimal("0.001"),
        max_close_slippage_pct=Decimal("0.05"),
    )


@pytest.fixture
def maker_config():
    return MakerConfig(
        symbol="BTCUSDT",
        trade_amount=Decimal("1"),
        loss_limit=Decimal("1"),
        price_tick=Decimal("0.1"),
        qty_step=Decimal("0.001"),
        max_close_slippage_pct=Decimal("0.05"),
        bid_offset=Decimal("0"),
        ask_offset=Decimal("0"),
        price_chase_threshold=Decimal("0.3"),
    )
