"""
Order coordinator: the single choke point for order mutations.

Every submit or cancel of a given order type passes through a per-type lock.
A successful submit keeps its lock until the order stream shows the new
order resolved (see ``sync_with_orders``) or the lock times out, so at most
one operation per (engine, order type) is ever in flight.

Lock deadlines are armed with ``loop.call_later`` and tagged with a
generation number. A response that arrives after its lock expired or was
re-armed finds a different generation and leaves the state alone.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional, Sequence

from .exchange import ExchangeAdapter, is_unknown_order_error
from .logging_setup import logger
from .models import CreateOrderParams, Order, OrderSide, OrderType, TimeInForce
from .pricing import MarkPriceGuard, round_down_to_tick, round_qty_down_to_step

LogHandler = Callable[[str, str], None]


@dataclass
class OrderLockState:
    """Lock bookkeeping for one order type."""

    locked: bool = False
    timer: Optional[asyncio.TimerHandle] = None
    pending_id: Optional[int] = None
    generation: int = 0


class OrderCoordinator:
    """Serializes and guards order operations for one engine.

    Args:
        adapter: Exchange adapter to submit through
        symbol: Traded symbol
        log: ``(category, detail)`` callback, normally ``TradeLog.push``
        price_tick: Price granularity
        qty_step: Quantity granularity
        lock_timeout: Seconds before a held lock auto-releases
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        symbol: str,
        log: LogHandler,
        *,
        price_tick: Decimal,
        qty_step: Decimal,
        lock_timeout: float = 3.0,
    ):
        self.adapter = adapter
        self.symbol = symbol
        self._log = log
        self.price_tick = price_tick
        self.qty_step = qty_step
        self.lock_timeout = lock_timeout
        self._states: Dict[OrderType, OrderLockState] = {t: OrderLockState() for t in OrderType}

    # --- locks ---

    def is_locked(self, order_type: OrderType) -> bool:
        return self._states[order_type].locked

    def pending_id(self, order_type: OrderType) -> Optional[int]:
        return self._states[order_type].pending_id

    def lock(self, order_type: OrderType, timeout: Optional[float] = None) -> int:
        """Acquire (or re-arm) the lock for ``order_type``.

        Returns:
            The generation number of this acquisition
        """
        state = self._states[order_type]
        state.locked = True
        state.generation += 1
        if state.timer is not None:
            state.timer.cancel()
        loop = asyncio.get_running_loop()
        state.timer = loop.call_later(
            self.lock_timeout if timeout is None else timeout,
            self._expire,
            order_type,
            state.generation,
        )
        return state.generation

    def unlock(self, order_type: OrderType) -> None:
        state = self._states[order_type]
        state.locked = False
        state.pending_id = None
        if state.timer is not None:
            state.timer.cancel()
        state.timer = None

    def _expire(self, order_type: OrderType, generation: int) -> None:
        state = self._states[order_type]
        if not state.locked or state.generation != generation:
            return
        state.locked = False
        state.pending_id = None
        state.timer = None
        self._log("warn", f"{order_type.value} operation timed out, lock released")

    def _owns(self, order_type: OrderType, generation: int) -> bool:
        state = self._states[order_type]
        return state.locked and state.generation == generation

    def sync_with_orders(self, orders: Sequence[Order]) -> None:
        """Release locks whose pending order the exchange has resolved.

        Called on every open-orders push. A pending order that is missing
        from the snapshot, or no longer working, frees its type.
        """
        by_id = {o.order_id: o for o in orders}
        for order_type, state in self._states.items():
            if state.pending_id is None:
                continue
            match = by_id.get(state.pending_id)
            if match is None or not match.is_working:
                self.unlock(order_type)

    def _release_pending(self, order_ids: Optional[Sequence[int]] = None) -> None:
        """Unlock types whose pending order was just cancelled.

        ``order_ids=None`` means every resting order was cancelled; a pending
        MARKET order never rests, so its lock is left to the order stream.
        """
        for order_type, state in self._states.items():
            if state.pending_id is None:
                continue
            if order_ids is None and order_type is OrderType.MARKET:
                continue
            if order_ids is None or state.pending_id in order_ids:
                self.unlock(order_type)

    def shutdown(self) -> None:
        for order_type in OrderType:
            self.unlock(order_type)

    # --- cancels ---

    async def deduplicate(self, open_orders: Sequence[Order], order_type: OrderType, side: OrderSide) -> None:
        """Cancel all but the most recently updated open order of (type, side)."""
        same = [o for o in open_orders if o.type == order_type and o.side == side]
        if len(same) <= 1:
            return
        same.sort(key=lambda o: o.last_touched, reverse=True)
        order_ids = [o.order_id for o in same[1:]]
        self.lock(order_type)
        try:
            await self.adapter.cancel_orders(self.symbol, order_ids)
            self._log("order", f"Cancelled duplicate {order_type.value} orders: {order_ids}")
        except Exception as exc:
            if is_unknown_order_error(exc):
                self._log("order", "Duplicate orders already gone, nothing to cancel")
            else:
                self._log("error", f"Duplicate cancel failed: {exc}")
        finally:
            self.unlock(order_type)

    async def cancel_order(self, order: Order) -> bool:
        """Cancel one order.

        Returns:
            False if the order was already gone, True if it was cancelled

        Raises:
            ExchangeError: any failure other than an unknown order
        """
        try:
            await self.adapter.cancel_order(self.symbol, order.order_id)
        except Exception as exc:
            if is_unknown_order_error(exc):
                self._release_pending([order.order_id])
                self._log("order", f"Order {order.order_id} already gone, skipping cancel")
                return False
            raise
        self._release_pending([order.order_id])
        return True

    async def cancel_orders(self, orders: Sequence[Order]) -> bool:
        """Batch-cancel ``orders``; returns False if some were already gone."""
        order_ids = [o.order_id for o in orders]
        if not order_ids:
            return True
        try:
            await self.adapter.cancel_orders(self.symbol, order_ids)
        except Exception as exc:
            if is_unknown_order_error(exc):
                self._release_pending(order_ids)
                self._log("order", f"Some of orders {order_ids} already gone")
                return False
            raise
        self._release_pending(order_ids)
        return True

    async def cancel_all(self) -> bool:
        """Cancel every open order for the symbol; returns False if some were already gone."""
        try:
            await self.adapter.cancel_all_orders(self.symbol)
        except Exception as exc:
            if is_unknown_order_error(exc):
                self._release_pending()
                self._log("order", "Some orders already gone during cancel-all")
                return False
            raise
        self._release_pending()
        return True

    # --- submits ---

    def _guard_allows(
        self, side: OrderSide, price: Optional[Decimal], guard: Optional[MarkPriceGuard], context: str
    ) -> bool:
        if guard is None or guard.allows(side, price):
            return True
        self._log(
            "info",
            f"{context} blocked by mark guard | side={side.value} price={price} "
            f"mark={guard.mark_price} max_pct={guard.max_pct}",
        )
        return False

    async def _submit(
        self, params: CreateOrderParams, open_orders: Sequence[Order], describe: str, category: str = "order"
    ) -> Optional[Order]:
        order_type = params.type
        await self.deduplicate(open_orders, order_type, params.side)
        generation = self.lock(order_type)
        try:
            order = await self.adapter.create_order(params)
        except Exception as exc:
            if self._owns(order_type, generation):
                self.unlock(order_type)
            if is_unknown_order_error(exc):
                self._log("order", f"{describe} skipped, order already filled or cancelled")
                return None
            raise
        if self._owns(order_type, generation):
            self._states[order_type].pending_id = order.order_id
        else:
            self._log("warn", f"Late response absorbed | type={order_type.value} order_id={order.order_id}")
            logger.warning(f"Late order response | symbol={self.symbol} order_id={order.order_id}")
        self._log(category, describe)
        return order

    async def place_limit(
        self,
        side: OrderSide,
        price: Decimal,
        amount: Decimal,
        open_orders: Sequence[Order],
        *,
        reduce_only: bool = False,
        guard: Optional[MarkPriceGuard] = None,
    ) -> Optional[Order]:
        """Place a post-only limit order. Returns None if skipped."""
        if self.is_locked(OrderType.LIMIT):
            return None
        if not self._guard_allows(side, price, guard, "Limit order"):
            return None
        quantity = round_qty_down_to_step(amount, self.qty_step)
        if quantity <= 0:
            self._log("info", f"Limit order skipped, quantity {amount} rounds to zero")
            return None
        params = CreateOrderParams(
            symbol=self.symbol,
            side=side,
            type=OrderType.LIMIT,
            quantity=quantity,
            price=round_down_to_tick(price, self.price_tick),
            time_in_force=TimeInForce.GTX,
            reduce_only=reduce_only,
        )
        return await self._submit(
            params,
            open_orders,
            f"Limit order placed | {side.value} @ {params.price} qty={quantity} reduce_only={reduce_only}",
        )

    async def place_market(
        self,
        side: OrderSide,
        amount: Decimal,
        open_orders: Sequence[Order],
        *,
        reduce_only: bool = False,
        guard: Optional[MarkPriceGuard] = None,
    ) -> Optional[Order]:
        """Place a market order; the guard checks ``guard.expected_price``."""
        if self.is_locked(OrderType.MARKET):
            return None
        expected = guard.expected_price if guard is not None else None
        if not self._guard_allows(side, expected, guard, "Market order"):
            return None
        quantity = round_qty_down_to_step(amount, self.qty_step)
        if quantity <= 0:
            self._log("info", f"Market order skipped, quantity {amount} rounds to zero")
            return None
        params = CreateOrderParams(
            symbol=self.symbol,
            side=side,
            type=OrderType.MARKET,
            quantity=quantity,
            reduce_only=reduce_only,
        )
        return await self._submit(
            params,
            open_orders,
            f"Market order placed | {side.value} qty={quantity} reduce_only={reduce_only}",
        )

    async def place_stop_loss(
        self,
        side: OrderSide,
        stop_price: Decimal,
        quantity: Decimal,
        last_price: Optional[Decimal],
        open_orders: Sequence[Order],
        *,
        guard: Optional[MarkPriceGuard] = None,
    ) -> Optional[Order]:
        """Place a close-position STOP_MARKET.

        Refused when the stop would trigger immediately: a SELL stop must sit
        below ``last_price`` and a BUY stop above it.
        """
        if self.is_locked(OrderType.STOP_MARKET):
            return None
        if not self._guard_allows(side, stop_price, guard, "Stop order"):
            return None
        if last_price is not None:
            if side is OrderSide.SELL and stop_price >= last_price:
                self._log("error", f"Stop price {stop_price} is at or above last price {last_price}, not placing")
                return None
            if side is OrderSide.BUY and stop_price <= last_price:
                self._log("error", f"Stop price {stop_price} is at or below last price {last_price}, not placing")
                return None
        params = CreateOrderParams(
            symbol=self.symbol,
            side=side,
            type=OrderType.STOP_MARKET,
            quantity=round_qty_down_to_step(quantity, self.qty_step),
            stop_price=round_down_to_tick(stop_price, self.price_tick),
            time_in_force=TimeInForce.GTC,
            close_position=True,
        )
        return await self._submit(
            params, open_orders, f"Stop order placed | {side.value} STOP_MARKET @ {params.stop_price}", "stop"
        )

    async def place_trailing_stop(
        self,
        side: OrderSide,
        activation_price: Decimal,
        quantity: Decimal,
        callback_rate: Decimal,
        open_orders: Sequence[Order],
        *,
        guard: Optional[MarkPriceGuard] = None,
    ) -> Optional[Order]:
        """Place a reduce-only TRAILING_STOP_MARKET."""
        if self.is_locked(OrderType.TRAILING_STOP_MARKET):
            return None
        if not self._guard_allows(side, activation_price, guard, "Trailing stop"):
            return None
        rounded_qty = round_qty_down_to_step(quantity, self.qty_step)
        if rounded_qty <= 0:
            self._log("info", f"Trailing stop skipped, quantity {quantity} rounds to zero")
            return None
        params = CreateOrderParams(
            symbol=self.symbol,
            side=side,
            type=OrderType.TRAILING_STOP_MARKET,
            quantity=rounded_qty,
            activation_price=round_down_to_tick(activation_price, self.price_tick),
            callback_rate=callback_rate,
            time_in_force=TimeInForce.GTC,
            reduce_only=True,
        )
        return await self._submit(
            params,
            open_orders,
            f"Trailing stop placed | {side.value} activation={params.activation_price} callback_rate={callback_rate}",
        )

    async def market_close(
        self,
        side: OrderSide,
        quantity: Decimal,
        open_orders: Sequence[Order],
        *,
        guard: Optional[MarkPriceGuard] = None,
    ) -> Optional[Order]:
        """Close ``quantity`` at market, reduce-only."""
        if self.is_locked(OrderType.MARKET):
            return None
        expected = guard.expected_price if guard is not None else None
        if not self._guard_allows(side, expected, guard, "Market close"):
            return None
        rounded_qty = round_qty_down_to_step(quantity, self.qty_step)
        if rounded_qty <= 0:
            self._log("info", f"Market close skipped, quantity {quantity} rounds to zero")
            return None
        params = CreateOrderParams(
            symbol=self.symbol,
            side=side,
            type=OrderType.MARKET,
            quantity=rounded_qty,
            reduce_only=True,
        )
        return await self._submit(params, open_orders, f"Market close | {side.value} qty={rounded_qty}", "close")
