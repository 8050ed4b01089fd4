from decimal import Decimal

from conftest import make_klines

from perp_trading.models import AccountPosition, AccountSnapshot, OrderSide
from perp_trading.position import (
    PositionSnapshot,
    calc_stop_loss_price,
    calc_trailing_activation_price,
    compute_profit_lock_target,
    get_position,
    get_sma,
)


def D(value):
    return Decimal(value)


def lock_target(**overrides):
    params = dict(
        position_amt=D("1"),
        entry_price=D("100"),
        last_price=D("101.5"),
        pnl=D("1.5"),
        unrealized_profit=None,
        current_stop=D("99"),
        trailing_activation=D("102"),
        trigger_usd=D("1"),
        step_usd=D("0.5"),
        tick=D("0.1"),
    )
    params.update(overrides)
    return compute_profit_lock_target(**params)


def test_profit_lock_steps_long_stop_forward():
    assert lock_target() == D("101")


def test_profit_lock_steps_short_stop_forward():
    target = lock_target(
        position_amt=D("-1"),
        last_price=D("98.5"),
        current_stop=D("101"),
        trailing_activation=D("98"),
    )
    assert target == D("99")


def test_profit_lock_waits_for_trigger():
    assert lock_target(last_price=D("100.8"), pnl=D("0.8")) is None


def test_profit_lock_never_crosses_last_price():
    """Exchange P&L ahead of the book must not put a SELL stop above last price."""
    assert lock_target(last_price=D("100.5"), pnl=D("0.5"), unrealized_profit=D("3")) is None


def test_profit_lock_hands_over_to_trailing_stop():
    assert lock_target(last_price=D("101.95"), pnl=D("1.95")) is None
    # a large profit still never proposes a stop past the activation price
    assert lock_target(last_price=D("101.85"), pnl=D("5")) is None


def test_profit_lock_only_moves_by_a_tick_or_more():
    assert lock_target(current_stop=D("101")) is None
    assert lock_target(current_stop=D("100.95")) is None
    assert lock_target(current_stop=D("100.9")) == D("101")


def test_protective_prices():
    assert calc_stop_loss_price(D("100"), D("2"), "long", D("1")) == D("99.5")
    assert calc_stop_loss_price(D("100"), D("-2"), "short", D("1")) == D("100.5")
    assert calc_trailing_activation_price(D("100"), D("2"), "long", D("2")) == D("101")
    assert calc_trailing_activation_price(D("100"), D("2"), "short", D("2")) == D("99")


def test_sma_uses_last_closed_candles():
    klines = make_klines([50] + [100] * 30)
    assert get_sma(klines, 30) == D("100")
    assert get_sma(klines[:10], 30) is None


def test_sma_ignores_open_candle():
    klines = make_klines([100] * 30) + make_klines([130], closed=False)
    assert get_sma(klines, 30) == D("100")


def test_get_position_prefers_one_way_exposure():
    account = AccountSnapshot(positions=[
        AccountPosition(symbol="ETHUSDT", position_amt=D("5"), entry_price=D("3000")),
        AccountPosition(symbol="BTCUSDT", position_side="LONG", position_amt=D("3"), entry_price=D("90")),
        AccountPosition(symbol="BTCUSDT", position_side="BOTH", position_amt=D("-1"), entry_price=D("100"),
                        mark_price=D("0")),
    ])
    pos = get_position(account, "BTCUSDT")
    assert pos.position_amt == D("-1")
    assert pos.entry_price == D("100")
    assert pos.mark_price is None
    assert pos.direction == "short"
    assert pos.close_side is OrderSide.BUY


def test_get_position_falls_back_to_largest_then_first():
    account = AccountSnapshot(positions=[
        AccountPosition(symbol="BTCUSDT", position_side="LONG", position_amt=D("1")),
        AccountPosition(symbol="BTCUSDT", position_side="SHORT", position_amt=D("-2")),
    ])
    assert get_position(account, "BTCUSDT").position_amt == D("-2")

    flat = AccountSnapshot(positions=[AccountPosition(symbol="BTCUSDT", entry_price=D("7"))])
    assert get_position(flat, "BTCUSDT").entry_price == D("7")
    assert get_position(None, "BTCUSDT") == PositionSnapshot()
    assert get_position(flat, "ETHUSDT").is_flat(D("0.00001"))
