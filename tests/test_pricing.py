from decimal import Decimal

from perp_trading.models import Depth, OrderSide, Ticker
from perp_trading.pricing import (
    MarkPriceGuard,
    compute_depth_stats,
    compute_position_pnl,
    get_mid_or_last,
    get_top_prices,
    is_order_price_allowed_by_mark,
    round_down_to_tick,
    round_qty_down_to_step,
    should_stop_loss,
)


def D(value):
    return Decimal(value)


def test_round_down_truncates_toward_zero():
    assert round_down_to_tick(D("100.129"), D("0.01")) == D("100.12")
    assert round_down_to_tick(D("99.99"), D("0.1")) == D("99.9")
    assert round_qty_down_to_step(D("0.0019"), D("0.001")) == D("0.001")
    assert round_qty_down_to_step(D("0.0009"), D("0.001")) == 0


def test_round_down_with_non_positive_tick_is_identity():
    assert round_down_to_tick(D("1.2345"), D("0")) == D("1.2345")


def test_mark_guard_buy():
    """BUY above mark * (1 + pct) is rejected."""
    assert not is_order_price_allowed_by_mark(OrderSide.BUY, D("101"), D("100"), D("0.005"))
    assert is_order_price_allowed_by_mark(OrderSide.BUY, D("100.4"), D("100"), D("0.005"))


def test_mark_guard_sell():
    """SELL below mark * (1 - pct) is rejected."""
    assert not is_order_price_allowed_by_mark(OrderSide.SELL, D("99.4"), D("100"), D("0.005"))
    assert is_order_price_allowed_by_mark(OrderSide.SELL, D("99.6"), D("100"), D("0.005"))


def test_mark_guard_passes_without_reference():
    assert is_order_price_allowed_by_mark(OrderSide.BUY, D("500"), None, D("0.005"))
    assert is_order_price_allowed_by_mark(OrderSide.BUY, D("500"), D("0"), D("0.005"))
    assert is_order_price_allowed_by_mark(OrderSide.SELL, None, D("100"), D("0.005"))
    guard = MarkPriceGuard(mark_price=D("100"), max_pct=D("0.005"))
    assert guard.allows(OrderSide.BUY, D("100.5"))
    assert not guard.allows(OrderSide.BUY, D("100.6"))


def test_top_prices_and_mid():
    depth = Depth(bids=[(D("99"), D("1"))], asks=[(D("101"), D("2"))])
    assert get_top_prices(depth) == (D("99"), D("101"))
    assert get_mid_or_last(depth, None) == D("100")

    empty = Depth()
    ticker = Ticker(symbol="BTCUSDT", last_price=D("98.5"))
    assert get_top_prices(empty) == (None, None)
    assert get_mid_or_last(empty, ticker) == D("98.5")
    assert get_mid_or_last(None, None) is None


def test_depth_stats_flags_thin_side():
    depth = Depth(
        bids=[(D("100"), D("1")), (D("99.9"), D("1"))],
        asks=[(D("100.1"), D("5")), (D("100.2"), D("5"))],
    )
    stats = compute_depth_stats(depth, levels=10, ratio=D("3"))
    assert stats.buy_sum == D("2")
    assert stats.sell_sum == D("10")
    assert stats.imbalance == "sell_dominant"
    assert stats.skip_buy_side is True
    assert stats.skip_sell_side is False


def test_depth_stats_respects_levels():
    depth = Depth(
        bids=[(D("100"), D("1")), (D("99.9"), D("50"))],
        asks=[(D("100.1"), D("1"))],
    )
    stats = compute_depth_stats(depth, levels=1, ratio=D("3"))
    assert stats.imbalance == "balanced"
    assert not stats.skip_buy_side and not stats.skip_sell_side


def test_position_pnl_marks_long_at_bid_short_at_ask():
    assert compute_position_pnl(D("2"), D("100"), D("101"), D("102")) == D("2")
    assert compute_position_pnl(D("-2"), D("100"), D("97"), D("98")) == D("4")
    assert compute_position_pnl(D("0"), D("100"), D("97"), D("98")) == 0


def test_should_stop_loss():
    # derived loss beyond the limit
    assert should_stop_loss(D("1"), D("100"), D("0"), D("98.5"), D("98.6"), D("1"))
    # within the limit
    assert not should_stop_loss(D("1"), D("100"), D("0"), D("99.5"), D("99.6"), D("1"))
    # exchange-reported loss while the book shows no profit
    assert should_stop_loss(D("1"), D("100"), D("-1.5"), D("100"), D("100.1"), D("1"))
    # exchange-reported loss ignored while the book shows profit
    assert not should_stop_loss(D("1"), D("100"), D("-1.5"), D("100.5"), D("100.6"), D("1"))
    # flat
    assert not should_stop_loss(D("0"), D("100"), D("-5"), D("90"), D("91"), D("1"))
