"""Test order coordinator locks, guards and cancel semantics against the paper exchange."""
import asyncio
from decimal import Decimal

import pytest

from conftest import make_order

from perp_trading.exchange import ExchangeError, InMemoryAdapter, UnknownOrderError, is_unknown_order_error
from perp_trading.models import CreateOrderParams, OrderSide, OrderType
from perp_trading.order_coordinator import OrderCoordinator
from perp_trading.pricing import MarkPriceGuard


class RecordingLog:
    def __init__(self):
        self.entries = []

    def __call__(self, category, detail):
        self.entries.append((category, detail))

    def categories(self):
        return [c for c, _ in self.entries]


class SlowAdapter(InMemoryAdapter):
    """Paper exchange whose order responses arrive after a delay."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def create_order(self, params):
        await asyncio.sleep(self.delay)
        return await super().create_order(params)


def make_coordinator(adapter, lock_timeout=3.0):
    log = RecordingLog()
    coordinator = OrderCoordinator(
        adapter,
        "BTCUSDT",
        log,
        price_tick=Decimal("0.01"),
        qty_step=Decimal("0.001"),
        lock_timeout=lock_timeout,
    )
    return coordinator, log


async def limit_params(adapter, side=OrderSide.BUY, price="100"):
    return await adapter.create_order(CreateOrderParams(
        symbol="BTCUSDT", side=side, type=OrderType.LIMIT, quantity=Decimal("1"), price=Decimal(price),
    ))


@pytest.mark.asyncio
async def test_lock_unlock_and_timeout(adapter):
    coordinator, log = make_coordinator(adapter)
    for order_type in OrderType:
        coordinator.lock(order_type)
        assert coordinator.is_locked(order_type)
        coordinator.unlock(order_type)
        assert not coordinator.is_locked(order_type)

    coordinator.lock(OrderType.LIMIT, timeout=0.01)
    await asyncio.sleep(0.05)
    assert not coordinator.is_locked(OrderType.LIMIT)
    assert ("warn", "LIMIT operation timed out, lock released") in log.entries


@pytest.mark.asyncio
async def test_relock_discards_stale_deadline(adapter):
    coordinator, log = make_coordinator(adapter)
    coordinator.lock(OrderType.MARKET, timeout=0.01)
    coordinator.lock(OrderType.MARKET, timeout=10)
    await asyncio.sleep(0.05)
    assert coordinator.is_locked(OrderType.MARKET)
    assert "warn" not in log.categories()
    coordinator.shutdown()


@pytest.mark.asyncio
async def test_place_limit_rounds_and_holds_lock_until_push(adapter):
    coordinator, _ = make_coordinator(adapter)
    order = await coordinator.place_limit(OrderSide.BUY, Decimal("100.129"), Decimal("0.0019"), [])
    assert order is not None
    assert order.price == Decimal("100.12")
    assert order.orig_qty == Decimal("0.001")
    assert coordinator.is_locked(OrderType.LIMIT)
    assert coordinator.pending_id(OrderType.LIMIT) == order.order_id

    # a second limit is refused while the first is unresolved
    assert await coordinator.place_limit(OrderSide.SELL, Decimal("101"), Decimal("1"), []) is None
    assert len(adapter.created) == 1

    # still working: lock kept
    coordinator.sync_with_orders([order.model_copy(update={"status": "PARTIALLY_FILLED"})])
    assert coordinator.is_locked(OrderType.LIMIT)
    # filled: no longer in the open-orders snapshot
    coordinator.sync_with_orders([])
    assert not coordinator.is_locked(OrderType.LIMIT)
    assert coordinator.pending_id(OrderType.LIMIT) is None


@pytest.mark.asyncio
async def test_resolved_status_releases_lock(adapter):
    coordinator, _ = make_coordinator(adapter)
    order = await coordinator.place_limit(OrderSide.BUY, Decimal("100"), Decimal("1"), [])
    coordinator.sync_with_orders([order.model_copy(update={"status": "CANCELED"})])
    assert not coordinator.is_locked(OrderType.LIMIT)


@pytest.mark.asyncio
async def test_late_response_after_timeout_is_absorbed():
    adapter = SlowAdapter(delay=0.05)
    coordinator, log = make_coordinator(adapter, lock_timeout=0.01)
    order = await coordinator.place_limit(OrderSide.BUY, Decimal("100"), Decimal("1"), [])
    assert order is not None
    assert not coordinator.is_locked(OrderType.LIMIT)
    assert coordinator.pending_id(OrderType.LIMIT) is None
    details = [d for c, d in log.entries if c == "warn"]
    assert any("timed out" in d for d in details)
    assert any("Late response absorbed" in d for d in details)


@pytest.mark.asyncio
async def test_mark_guard_blocks_without_submitting(adapter):
    coordinator, log = make_coordinator(adapter)
    guard = MarkPriceGuard(mark_price=Decimal("100"), max_pct=Decimal("0.005"))
    assert await coordinator.place_limit(OrderSide.BUY, Decimal("101"), Decimal("1"), [], guard=guard) is None
    market_guard = MarkPriceGuard(mark_price=Decimal("100"), max_pct=Decimal("0.005"), expected_price=Decimal("99.4"))
    assert await coordinator.market_close(OrderSide.SELL, Decimal("1"), [], guard=market_guard) is None
    assert adapter.created == []
    assert not coordinator.is_locked(OrderType.LIMIT)
    assert not coordinator.is_locked(OrderType.MARKET)
    assert log.categories() == ["info", "info"]


@pytest.mark.asyncio
async def test_zero_quantity_is_skipped(adapter):
    coordinator, log = make_coordinator(adapter)
    assert await coordinator.place_market(OrderSide.BUY, Decimal("0.0004"), []) is None
    assert adapter.created == []
    assert log.categories() == ["info"]


@pytest.mark.asyncio
async def test_stop_on_wrong_side_of_last_price_is_refused(adapter):
    coordinator, log = make_coordinator(adapter)
    assert await coordinator.place_stop_loss(OrderSide.SELL, Decimal("101"), Decimal("1"), Decimal("100"), []) is None
    assert await coordinator.place_stop_loss(OrderSide.BUY, Decimal("99"), Decimal("1"), Decimal("100"), []) is None
    assert adapter.created == []
    assert log.categories() == ["error", "error"]

    order = await coordinator.place_stop_loss(OrderSide.SELL, Decimal("99.005"), Decimal("1"), Decimal("100"), [])
    assert order.type is OrderType.STOP_MARKET
    assert order.stop_price == Decimal("99.00")
    assert order.close_position is True
    assert log.categories()[-1] == "stop"


@pytest.mark.asyncio
async def test_trailing_stop_is_reduce_only(adapter):
    coordinator, _ = make_coordinator(adapter)
    order = await coordinator.place_trailing_stop(OrderSide.SELL, Decimal("102.019"), Decimal("1"), Decimal("0.2"), [])
    assert order.type is OrderType.TRAILING_STOP_MARKET
    assert order.reduce_only is True
    assert order.activate_price == Decimal("102.01")
    assert order.price_rate == Decimal("0.2")


@pytest.mark.asyncio
async def test_deduplicate_keeps_most_recent(adapter):
    coordinator, log = make_coordinator(adapter)
    first = await limit_params(adapter)
    second = await limit_params(adapter)
    third = await limit_params(adapter)
    await coordinator.deduplicate([first, third, second], OrderType.LIMIT, OrderSide.BUY)
    assert set(adapter.open_orders) == {third.order_id}
    assert sorted(adapter.cancelled) == sorted([first.order_id, second.order_id])
    assert not coordinator.is_locked(OrderType.LIMIT)
    assert log.categories() == ["order"]


@pytest.mark.asyncio
async def test_deduplicate_single_order_is_noop(adapter):
    coordinator, log = make_coordinator(adapter)
    only = await limit_params(adapter)
    other_side = await limit_params(adapter, side=OrderSide.SELL)
    await coordinator.deduplicate([only, other_side], OrderType.LIMIT, OrderSide.BUY)
    assert adapter.cancelled == []
    assert log.entries == []


@pytest.mark.asyncio
async def test_submit_deduplicates_before_placing(adapter):
    coordinator, _ = make_coordinator(adapter)
    first = await limit_params(adapter)
    second = await limit_params(adapter)
    await coordinator.place_limit(OrderSide.BUY, Decimal("99"), Decimal("1"), [first, second])
    assert adapter.cancelled == [first.order_id]


@pytest.mark.asyncio
async def test_cancel_of_unknown_order_returns_false(adapter):
    coordinator, log = make_coordinator(adapter)
    assert await coordinator.cancel_order(make_order(999)) is False
    assert log.categories() == ["order"]
    assert await coordinator.cancel_orders([make_order(998)]) is False
    assert await coordinator.cancel_orders([]) is True

    live = await limit_params(adapter)
    assert await coordinator.cancel_order(live) is True
    assert await coordinator.cancel_all() is True
    assert adapter.cancel_all_calls == 1


@pytest.mark.asyncio
async def test_cancelling_pending_order_releases_its_lock(adapter):
    coordinator, _ = make_coordinator(adapter)
    stop = await coordinator.place_stop_loss(OrderSide.SELL, Decimal("99"), Decimal("1"), Decimal("100"), [])
    limit = await coordinator.place_limit(OrderSide.BUY, Decimal("99.5"), Decimal("1"), [])
    assert coordinator.is_locked(OrderType.STOP_MARKET)

    await coordinator.cancel_order(stop)
    assert not coordinator.is_locked(OrderType.STOP_MARKET)
    assert coordinator.is_locked(OrderType.LIMIT)

    await coordinator.cancel_all()
    assert not coordinator.is_locked(OrderType.LIMIT)
    assert limit.order_id in adapter.cancelled


@pytest.mark.asyncio
async def test_cancel_failure_propagates(adapter):
    coordinator, _ = make_coordinator(adapter)
    live = await limit_params(adapter)
    adapter.fail_next("cancel_order", ExchangeError("503: busy"))
    with pytest.raises(ExchangeError):
        await coordinator.cancel_order(live)


@pytest.mark.asyncio
async def test_submit_failure_releases_lock(adapter):
    coordinator, log = make_coordinator(adapter)
    adapter.fail_next("create_order", UnknownOrderError("Unknown order sent.", code=-2011))
    assert await coordinator.place_limit(OrderSide.BUY, Decimal("100"), Decimal("1"), []) is None
    assert not coordinator.is_locked(OrderType.LIMIT)
    assert log.categories() == ["order"]

    adapter.fail_next("create_order", ExchangeError("insufficient margin"))
    with pytest.raises(ExchangeError):
        await coordinator.place_limit(OrderSide.BUY, Decimal("100"), Decimal("1"), [])
    assert not coordinator.is_locked(OrderType.LIMIT)


def test_unknown_order_error_detection():
    assert is_unknown_order_error(UnknownOrderError("gone"))
    assert is_unknown_order_error(ExchangeError("boom", code=-2011))
    assert is_unknown_order_error(RuntimeError('{"code":-2011,"msg":"Unknown order sent."}'))
    assert not is_unknown_order_error(ExchangeError("rate limited", code=-1003))
