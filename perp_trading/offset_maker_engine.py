"""
Offset market-making engine.

Quotes one bid at ``top_bid - bid_offset`` and one ask at
``top_ask + ask_offset`` while flat, or a single reduce-only order on the
closing side while holding a position. Quotes are reconciled against the
resting orders with ``make_order_plan`` so a quote only chases the book when
it drifts beyond ``price_chase_threshold``.

Two exits bypass the quotes: an emergency close when the depth backing the
held side collapses, and a loss-limit close.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Optional

from .config import MakerConfig
from .engine_base import EngineBase
from .exchange import ExchangeAdapter, is_unknown_order_error
from .models import Order, OrderSide, OrderType
from .order_plan import DesiredOrder, make_order_plan
from .position import PositionSnapshot
from .pricing import (
    DepthStats,
    MarkPriceGuard,
    compute_depth_stats,
    compute_position_pnl,
    get_top_prices,
    round_down_to_tick,
    round_qty_down_to_step,
    should_stop_loss,
)
from .trade_log import TradeLogEntry

ZERO = Decimal("0")


@dataclass(frozen=True)
class OffsetMakerSnapshot:
    ready: bool
    symbol: str
    top_bid: Optional[Decimal]
    top_ask: Optional[Decimal]
    spread: Optional[Decimal]
    position: PositionSnapshot
    pnl: Decimal
    account_unrealized: Decimal
    session_volume: Decimal
    open_orders: List[Order] = field(default_factory=list)
    desired_orders: List[DesiredOrder] = field(default_factory=list)
    trade_log: List[TradeLogEntry] = field(default_factory=list)
    last_updated: Optional[float] = None
    buy_depth_sum: Decimal = ZERO
    sell_depth_sum: Decimal = ZERO
    depth_imbalance: str = "balanced"
    skip_buy_side: bool = False
    skip_sell_side: bool = False


class OffsetMakerEngine(EngineBase):
    """Two-sided offset quoting for one symbol."""

    def __init__(self, config: MakerConfig, adapter: ExchangeAdapter, *, clock: Callable[[], float] = time.time):
        super().__init__(config, adapter, clock=clock, name="maker")
        self.config: MakerConfig = config
        self.desired_orders: List[DesiredOrder] = []
        self.depth_stats = DepthStats(
            buy_sum=ZERO, sell_sum=ZERO, imbalance="balanced", skip_buy_side=False, skip_sell_side=False
        )
        self._startup_reset_done = False
        self._entry_price_pending_logged = False

    @property
    def tick_interval(self) -> float:
        return self.config.refresh_interval_seconds

    def is_ready(self) -> bool:
        return self.account is not None and self.depth is not None

    # --- tick ---

    async def _tick(self) -> None:
        if not self.is_ready() or not await self._ensure_startup_order_reset():
            self._emit_update()
            return

        top_bid, top_ask = get_top_prices(self.depth)
        if top_bid is None or top_ask is None:
            self._emit_update()
            return

        stats = compute_depth_stats(self.depth, self.config.depth_levels, self.config.depth_imbalance_ratio)
        self.depth_stats = stats
        position = self.position()
        if await self._handle_imbalance_exit(position, stats):
            self._emit_update()
            return

        tick = self.config.price_tick
        bid_price = round_down_to_tick(top_bid - self.config.bid_offset, tick)
        ask_price = round_down_to_tick(top_ask + self.config.ask_offset, tick)

        desired: List[DesiredOrder] = []
        if position.is_flat(self.config.flat_epsilon):
            self._entry_price_pending_logged = False
            amount = round_qty_down_to_step(self.config.trade_amount, self.config.qty_step)
            if not stats.skip_buy_side:
                desired.append(DesiredOrder(OrderSide.BUY, bid_price, amount))
            if not stats.skip_sell_side:
                desired.append(DesiredOrder(OrderSide.SELL, ask_price, amount))
        else:
            close_side = position.close_side
            close_price = ask_price if close_side is OrderSide.SELL else bid_price
            amount = round_qty_down_to_step(abs(position.position_amt), self.config.qty_step)
            desired.append(DesiredOrder(close_side, close_price, amount, reduce_only=True))

        self.desired_orders = desired
        self._update_session_volume(position)
        await self._sync_orders(desired, position)
        await self._check_risk(position, bid_price, ask_price)
        self._emit_update()

    async def _ensure_startup_order_reset(self) -> bool:
        """Cancel orders left over from a previous run, once.

        Returns:
            True once quoting may proceed
        """
        if self._startup_reset_done:
            return True
        if not self.orders_snapshot_ready:
            return False
        if not self.open_orders:
            self._startup_reset_done = True
            return True
        try:
            if await self.coordinator.cancel_all():
                self.trade_log.push("order", "Cleared stale orders at startup")
        except Exception as exc:
            self.trade_log.push("error", f"Startup cancel-all failed: {exc}")
            return False
        self.pending_cancel_ids.clear()
        self.coordinator.unlock(OrderType.LIMIT)
        self.open_orders = []
        self._startup_reset_done = True
        self._emit_update()
        return True

    async def _handle_imbalance_exit(self, position: PositionSnapshot, stats: DepthStats) -> bool:
        """Market-close when the book side backing the position collapses.

        Returns:
            True if an exit was attempted (the tick stops there)
        """
        if position.is_flat(self.config.flat_epsilon):
            return False
        ratio = self.config.imbalance_exit_ratio
        buy_sum, sell_sum = stats.buy_sum, stats.sell_sum
        long_exit = position.position_amt > 0 and (buy_sum == 0 or buy_sum * ratio < sell_sum)
        short_exit = position.position_amt < 0 and (sell_sum == 0 or sell_sum * ratio < buy_sum)
        if not long_exit and not short_exit:
            return False

        side = position.close_side
        bid, ask = get_top_prices(self.depth)
        close_price = bid if side is OrderSide.SELL else ask
        self.trade_log.push("stop", f"Extreme depth imbalance ({buy_sum} vs {sell_sum}), market close {side.value}")
        await self._close_position(position, close_price, "Imbalance close")
        return True

    async def _sync_orders(self, targets: List[DesiredOrder], position: PositionSnapshot) -> None:
        available = [o for o in self.open_orders if o.order_id not in self.pending_cancel_ids]
        plan = make_order_plan(available, targets, self.config.price_chase_threshold)

        for order in plan.to_cancel:
            if order.order_id in self.pending_cancel_ids:
                continue
            self.pending_cancel_ids.add(order.order_id)
            try:
                if await self.coordinator.cancel_order(order):
                    self.trade_log.push(
                        "order", f"Cancelled stale quote {order.side.value} @ {order.price} reduce_only={order.reduce_only}"
                    )
                else:
                    self._forget_orders({order.order_id})
            except Exception as exc:
                self.trade_log.push("error", f"Cancelling order {order.order_id} failed: {exc}")
                self._forget_orders({order.order_id})

        guard = MarkPriceGuard(mark_price=position.mark_price, max_pct=self.config.max_close_slippage_pct)
        for target in plan.to_place:
            if target.amount <= 0:
                continue
            try:
                await self.coordinator.place_limit(
                    target.side,
                    target.price,
                    target.amount,
                    self.open_orders,
                    reduce_only=target.reduce_only,
                    guard=guard,
                )
            except Exception as exc:
                self.trade_log.push("error", f"Placing quote {target.side.value} @ {target.price} failed: {exc}")

    async def _check_risk(self, position: PositionSnapshot, bid_price: Decimal, ask_price: Decimal) -> None:
        if position.is_flat(self.config.flat_epsilon):
            return
        if abs(position.entry_price) <= self.config.entry_price_epsilon:
            if not self._entry_price_pending_logged:
                self.trade_log.push("info", "Entry price not synced yet, deferring loss check")
                self._entry_price_pending_logged = True
            return
        self._entry_price_pending_logged = False

        if not should_stop_loss(
            position.position_amt,
            position.entry_price,
            position.unrealized_profit,
            bid_price,
            ask_price,
            self.config.loss_limit,
            self.config.flat_epsilon,
        ):
            return
        pnl = compute_position_pnl(position.position_amt, position.entry_price, bid_price, ask_price)
        self.trade_log.push("stop", f"Loss limit hit, direction={position.direction} pnl={pnl}")
        expected = bid_price if position.position_amt > 0 else ask_price
        await self._close_position(position, expected, "Stop-loss close")

    async def _close_position(self, position: PositionSnapshot, expected_price: Optional[Decimal], label: str) -> None:
        guard = MarkPriceGuard(
            mark_price=position.mark_price,
            max_pct=self.config.max_close_slippage_pct,
            expected_price=expected_price,
        )
        try:
            await self._flush_orders()
            await self.coordinator.market_close(
                position.close_side, abs(position.position_amt), self.open_orders, guard=guard
            )
        except Exception as exc:
            if is_unknown_order_error(exc):
                self.trade_log.push("order", f"{label}: target order already gone")
            else:
                self.trade_log.push("error", f"{label} failed: {exc}")

    async def _flush_orders(self) -> None:
        for order in list(self.open_orders):
            if order.order_id in self.pending_cancel_ids:
                continue
            self.pending_cancel_ids.add(order.order_id)
            try:
                if not await self.coordinator.cancel_order(order):
                    self._forget_orders({order.order_id})
            except Exception as exc:
                self.trade_log.push("error", f"Cancelling order {order.order_id} failed: {exc}")
                self._forget_orders({order.order_id})

    # --- presentation ---

    def get_snapshot(self) -> OffsetMakerSnapshot:
        position = self.position()
        top_bid, top_ask = get_top_prices(self.depth)
        spread = top_ask - top_bid if top_bid is not None and top_ask is not None else None
        pnl = ZERO
        if top_bid is not None and top_ask is not None:
            pnl = compute_position_pnl(position.position_amt, position.entry_price, top_bid, top_ask)
        stats = self.depth_stats
        return OffsetMakerSnapshot(
            ready=self.is_ready(),
            symbol=self.config.symbol,
            top_bid=top_bid,
            top_ask=top_ask,
            spread=spread,
            position=position,
            pnl=pnl,
            account_unrealized=self.account.total_unrealized_profit if self.account is not None else ZERO,
            session_volume=self.session_volume,
            open_orders=list(self.open_orders),
            desired_orders=list(self.desired_orders),
            trade_log=self.trade_log.all(),
            last_updated=self.clock(),
            buy_depth_sum=stats.buy_sum,
            sell_depth_sum=stats.sell_sum,
            depth_imbalance=stats.imbalance,
            skip_buy_side=stats.skip_buy_side,
            skip_sell_side=stats.skip_sell_side,
        )
