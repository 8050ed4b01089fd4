"""
SMA crossover trend-following engine.

Each tick re-derives the position from the latest account snapshot:

- Flat: enter at market when the last price crosses the SMA (at most once
  per calendar minute, never within the cooldown after a forced exit).
- In a position: keep a base STOP_MARKET and a TRAILING_STOP_MARKET resting,
  walk the stop forward in profit-lock steps until the trailing stop
  activates, and force a market close once the loss limit is breached.

Nothing here assumes an order succeeded: the next tick sees whatever the
exchange streams report.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from .config import TrendConfig
from .engine_base import EngineBase
from .exchange import ExchangeAdapter, is_unknown_order_error
from .models import Depth, Kline, Order, OrderSide, OrderType, Ticker
from .position import (
    PositionSnapshot,
    calc_stop_loss_price,
    calc_trailing_activation_price,
    compute_profit_lock_target,
    get_sma,
)
from .pricing import MarkPriceGuard, compute_position_pnl, get_top_prices, round_down_to_tick
from .trade_log import TradeLogEntry

ZERO = Decimal("0")


@dataclass(frozen=True)
class OpenSignal:
    side: Optional[OrderSide] = None
    price: Optional[Decimal] = None


@dataclass(frozen=True)
class TrendEngineSnapshot:
    ready: bool
    symbol: str
    last_price: Optional[Decimal]
    sma: Optional[Decimal]
    trend: str  # "long", "short" or "none"
    position: PositionSnapshot
    pnl: Decimal
    unrealized: Decimal
    total_profit: Decimal
    total_trades: int
    session_volume: Decimal
    trade_log: List[TradeLogEntry] = field(default_factory=list)
    open_orders: List[Order] = field(default_factory=list)
    depth: Optional[Depth] = None
    ticker: Optional[Ticker] = None
    last_updated: Optional[float] = None
    last_open_signal: OpenSignal = field(default_factory=OpenSignal)


class TrendEngine(EngineBase):
    """Trend strategy for one symbol.

    Example:
        >>> engine = TrendEngine(TrendConfig(symbol="BTCUSDT"), adapter)
        >>> engine.on("update", render)
        >>> engine.start()
    """

    def __init__(self, config: TrendConfig, adapter: ExchangeAdapter, *, clock: Callable[[], float] = time.time):
        super().__init__(config, adapter, clock=clock, name="trend")
        self.config: TrendConfig = config
        self.klines: List[Kline] = []

        self.last_price: Optional[Decimal] = None
        self.last_sma: Optional[Decimal] = None
        self.total_profit = ZERO
        self.total_trades = 0
        self.last_open_signal = OpenSignal()
        self.cancel_all_requested = False
        self.last_entry_minute: Optional[int] = None
        self.last_stop_loss_at: Optional[float] = None
        self._startup_logged = False
        self._entry_price_pending_logged = False

    @property
    def tick_interval(self) -> float:
        return self.config.poll_interval_seconds

    def _subscribe_extra(self) -> None:
        self._watch(
            "klines",
            lambda: self.adapter.watch_klines(self.config.symbol, self.config.kline_interval, self._on_klines),
        )

    def _on_klines(self, klines: List[Kline]) -> None:
        try:
            self.klines = list(klines)
            self._emit_update()
        except Exception as exc:
            self.trade_log.push("error", f"Kline push handling failed: {exc}")

    def _after_orders_update(self) -> None:
        if not self.open_orders or not self.pending_cancel_ids:
            self.cancel_all_requested = False

    def is_ready(self) -> bool:
        return (
            self.account is not None
            and self.ticker is not None
            and self.depth is not None
            and len(self.klines) >= self.config.sma_length
        )

    def _reference_price(self) -> Optional[Decimal]:
        price = super()._reference_price()
        return price if price is not None else self.last_price

    # --- tick ---

    async def _tick(self) -> None:
        if not self.orders_snapshot_ready or not self.is_ready():
            self._emit_update()
            return
        self._log_startup_state()
        sma = get_sma(self.klines, self.config.sma_length)
        if sma is None:
            self._emit_update()
            return
        price = self.ticker.last_price
        position = self.position()

        if position.is_flat(self.config.flat_epsilon):
            await self._handle_flat(price, sma)
        else:
            closed, pnl = await self._manage_position(position, price)
            if closed:
                self.total_trades += 1
                self.total_profit += pnl

        self._update_session_volume(position)
        self.last_sma = sma
        self.last_price = price
        self._emit_update()

    def _log_startup_state(self) -> None:
        if self._startup_logged:
            return
        position = self.position()
        if not position.is_flat(self.config.flat_epsilon):
            self.trade_log.push(
                "info",
                f"Existing position adopted: {position.direction} {abs(position.position_amt)} @ {position.entry_price}",
            )
        if self.open_orders:
            self.trade_log.push("info", f"Existing open orders adopted: {len(self.open_orders)}")
        self._startup_logged = True

    # --- flat ---

    async def _handle_flat(self, price: Decimal, sma: Decimal) -> None:
        self._entry_price_pending_logged = False
        now = self.clock()
        minute = int(now // 60)
        cooldown = self.config.entry_cooldown_seconds
        if self.last_stop_loss_at is not None and now - self.last_stop_loss_at < cooldown:
            remaining = cooldown - (now - self.last_stop_loss_at)
            self.trade_log.push("info", f"Cooling down after stop loss, {remaining:.0f}s left, ignoring entry signals")
            return
        if self.last_entry_minute is not None and self.last_entry_minute == minute:
            self.trade_log.push("info", "Already entered this minute, ignoring entry signal")
            return
        if self.last_price is None:
            self.last_price = price
            return

        if self.open_orders and not self.cancel_all_requested:
            try:
                await self.coordinator.cancel_all()
                self.cancel_all_requested = True
                self.pending_cancel_ids.clear()
                self.open_orders = []
            except Exception as exc:
                self.trade_log.push("error", f"Cancelling resting orders failed: {exc}")
                self.cancel_all_requested = False

        if self.last_price > sma > price:
            await self._submit_entry(OrderSide.SELL, price, "Crossed below SMA, market short")
            self.last_entry_minute = minute
        elif self.last_price < sma < price:
            await self._submit_entry(OrderSide.BUY, price, "Crossed above SMA, market long")
            self.last_entry_minute = minute

    async def _submit_entry(self, side: OrderSide, price: Decimal, reason: str) -> None:
        guard = MarkPriceGuard(
            mark_price=self.position().mark_price,
            max_pct=self.config.max_entry_deviation_pct,
            expected_price=self.ticker.last_price if self.ticker is not None else None,
        )
        try:
            order = await self.coordinator.place_market(
                side, self.config.trade_amount, self.open_orders, guard=guard
            )
        except Exception as exc:
            self.trade_log.push("error", f"Market entry failed: {exc}")
            return
        if order is not None:
            self.trade_log.push("open", f"{reason}: {side.value} @ {price}")
            self.last_open_signal = OpenSignal(side=side, price=price)

    # --- in position ---

    def _find_order(self, order_type: OrderType, side: OrderSide) -> Optional[Order]:
        return next((o for o in self.open_orders if o.type == order_type and o.side == side), None)

    async def _manage_position(self, position: PositionSnapshot, price: Decimal) -> Tuple[bool, Decimal]:
        """Protect an open position.

        Returns:
            (closed, pnl): whether a forced market close was submitted, and
            the price-derived P&L at this tick
        """
        if abs(position.entry_price) <= self.config.entry_price_epsilon:
            if not self._entry_price_pending_logged:
                self.trade_log.push("info", "Entry price not synced yet, waiting for the next account snapshot")
                self._entry_price_pending_logged = True
            return False, position.unrealized_profit
        self._entry_price_pending_logged = False

        direction = position.direction
        qty = abs(position.position_amt)
        entry = position.entry_price
        pnl = (price - entry) * qty if direction == "long" else (entry - price) * qty
        unrealized = position.unrealized_profit
        stop_side = position.close_side
        tick = self.config.price_tick

        stop_price = calc_stop_loss_price(entry, qty, direction, self.config.loss_limit)
        activation = calc_trailing_activation_price(entry, qty, direction, self.config.trailing_profit)
        current_stop = self._find_order(OrderType.STOP_MARKET, stop_side)
        current_trailing = self._find_order(OrderType.TRAILING_STOP_MARKET, stop_side)
        trailing_activation = activation
        if current_trailing is not None and current_trailing.activate_price:
            trailing_activation = current_trailing.activate_price

        existing_stop = current_stop.stop_price if current_stop is not None and current_stop.stop_price > 0 else None
        target = compute_profit_lock_target(
            position_amt=position.position_amt,
            entry_price=entry,
            last_price=price,
            pnl=pnl,
            unrealized_profit=unrealized,
            current_stop=existing_stop,
            trailing_activation=trailing_activation,
            trigger_usd=self.config.profit_lock_trigger_usd,
            step_usd=self.config.profit_lock_offset_usd,
            tick=tick,
        )
        if target is not None:
            if current_stop is not None:
                await self._replace_stop(stop_side, current_stop, target, price)
            else:
                await self._place_stop(stop_side, target, price)

        if current_stop is None:
            await self._place_stop(stop_side, round_down_to_tick(stop_price, tick), price)

        if current_trailing is None:
            await self._place_trailing_stop(stop_side, round_down_to_tick(activation, tick), qty)

        loss_limit = self.config.loss_limit
        derived_loss = pnl < -loss_limit
        snapshot_loss = unrealized < -loss_limit and pnl <= 0
        if derived_loss or snapshot_loss:
            closed = await self._force_exit(position)
            return closed, pnl
        return False, pnl

    async def _force_exit(self, position: PositionSnapshot) -> bool:
        """Flush resting orders and close at market.

        Returns:
            True if a market close was actually submitted
        """
        close_side = position.close_side
        try:
            if self.open_orders:
                order_ids = {o.order_id for o in self.open_orders}
                if await self.coordinator.cancel_orders(self.open_orders):
                    self.pending_cancel_ids |= order_ids
                else:
                    self._forget_orders(order_ids)

            mark = position.mark_price
            limit_pct = self.config.max_close_slippage_pct
            bid, ask = get_top_prices(self.depth)
            close_price = bid if close_side is OrderSide.SELL else ask
            if mark is not None and mark > 0 and close_price is not None:
                pct_diff = abs(close_price - mark) / mark
                if pct_diff > limit_pct:
                    self.trade_log.push(
                        "info",
                        f"Market close held back: close_px={close_price} mark={mark} "
                        f"deviation={pct_diff:.4%} > {limit_pct:.2%}",
                    )
                    return False

            guard = MarkPriceGuard(mark_price=mark, max_pct=limit_pct, expected_price=close_price)
            order = await self.coordinator.market_close(
                close_side, abs(position.position_amt), self.open_orders, guard=guard
            )
            if order is None:
                return False
            self.trade_log.push("close", f"Stop-loss close: {close_side.value}")
            self.last_stop_loss_at = self.clock()
            return True
        except Exception as exc:
            if is_unknown_order_error(exc):
                self.trade_log.push("order", "Target order already gone during stop-loss close")
            else:
                self.trade_log.push("error", f"Stop-loss close failed: {exc}")
            return False

    def _stop_quantity(self) -> Decimal:
        return abs(self.position().position_amt) or self.config.trade_amount

    def _stop_guard(self) -> MarkPriceGuard:
        return MarkPriceGuard(mark_price=self.position().mark_price, max_pct=self.config.max_close_slippage_pct)

    async def _place_stop(self, side: OrderSide, stop_price: Decimal, last_price: Decimal) -> Optional[Order]:
        try:
            return await self.coordinator.place_stop_loss(
                side, stop_price, self._stop_quantity(), last_price, self.open_orders, guard=self._stop_guard()
            )
        except Exception as exc:
            self.trade_log.push("error", f"Placing stop loss failed: {exc}")
            return None

    async def _place_trailing_stop(self, side: OrderSide, activation_price: Decimal, quantity: Decimal) -> None:
        guard = MarkPriceGuard(mark_price=self.position().mark_price, max_pct=self.config.max_close_slippage_pct)
        try:
            await self.coordinator.place_trailing_stop(
                side,
                activation_price,
                quantity,
                self.config.trailing_callback_rate,
                self.open_orders,
                guard=guard,
            )
        except Exception as exc:
            self.trade_log.push("error", f"Placing trailing stop failed: {exc}")

    async def _replace_stop(self, side: OrderSide, current: Order, next_price: Decimal, last_price: Decimal) -> None:
        """Move a stop: cancel the old one, place the new one, restore on failure."""
        if (side is OrderSide.SELL and next_price >= last_price) or (
            side is OrderSide.BUY and next_price <= last_price
        ):
            return
        # A replacement placed on an earlier tick is still waiting for its push
        if (
            self.coordinator.is_locked(OrderType.STOP_MARKET)
            and self.coordinator.pending_id(OrderType.STOP_MARKET) != current.order_id
        ):
            return
        previous_price = current.stop_price
        try:
            if not await self.coordinator.cancel_order(current):
                self._forget_orders({current.order_id})
        except Exception as exc:
            self.trade_log.push("error", f"Cancelling previous stop failed, keeping it: {exc}")
            return

        try:
            order = await self.coordinator.place_stop_loss(
                side, next_price, self._stop_quantity(), last_price, self.open_orders, guard=self._stop_guard()
            )
        except Exception as exc:
            self.trade_log.push("error", f"Moving stop failed: {exc}")
            await self._restore_stop(side, previous_price, last_price)
            return
        if order is not None:
            self.trade_log.push("stop", f"Stop moved to {round_down_to_tick(next_price, self.config.price_tick)}")
        elif self.coordinator.is_locked(OrderType.STOP_MARKET):
            self.trade_log.push("info", f"Stop at {next_price} deferred, another stop order is pending")
        else:
            self.trade_log.push("warn", f"Stop at {next_price} was not placed, restoring previous stop")
            await self._restore_stop(side, previous_price, last_price)

    async def _restore_stop(self, side: OrderSide, price: Decimal, last_price: Decimal) -> None:
        if (side is OrderSide.SELL and price >= last_price) or (side is OrderSide.BUY and price <= last_price):
            self.trade_log.push(
                "error", f"Previous stop {price} is no longer valid against {last_price}, position unprotected"
            )
            return
        try:
            restored = await self.coordinator.place_stop_loss(
                side, price, self._stop_quantity(), last_price, self.open_orders, guard=self._stop_guard()
            )
        except Exception as exc:
            self.trade_log.push("error", f"Restoring previous stop failed: {exc}")
            return
        if restored is not None:
            self.trade_log.push("order", f"Restored previous stop @ {round_down_to_tick(price, self.config.price_tick)}")
        else:
            self.trade_log.push("error", f"Restoring previous stop @ {price} placed no order, position unprotected")

    # --- presentation ---

    def get_snapshot(self) -> TrendEngineSnapshot:
        position = self.position()
        price = self.ticker.last_price if self.ticker is not None else None
        sma = self.last_sma
        trend = "none"
        if price is not None and sma is not None:
            if price > sma:
                trend = "long"
            elif price < sma:
                trend = "short"
        pnl = compute_position_pnl(position.position_amt, position.entry_price, price, price) if price is not None else ZERO
        return TrendEngineSnapshot(
            ready=self.is_ready(),
            symbol=self.config.symbol,
            last_price=price,
            sma=sma,
            trend=trend,
            position=position,
            pnl=pnl,
            unrealized=position.unrealized_profit,
            total_profit=self.total_profit,
            total_trades=self.total_trades,
            session_volume=self.session_volume,
            trade_log=self.trade_log.all(),
            open_orders=list(self.open_orders),
            depth=self.depth,
            ticker=self.ticker,
            last_updated=self.clock(),
            last_open_signal=self.last_open_signal,
        )
