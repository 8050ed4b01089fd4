"""
Exchange gateway boundary.

Defines the abstract adapter the engines trade through, the error contract
they rely on, and an in-memory paper exchange for tests and demos.

The adapter delivers push data as full-replace snapshots (never diffs):
account, open orders, depth, ticker and klines. Commands are coroutines.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .logging_setup import logger
from .models import (
    AccountPosition,
    AccountSnapshot,
    CreateOrderParams,
    Depth,
    Kline,
    Order,
    OrderSide,
    OrderType,
    Ticker,
)

Unsubscribe = Callable[[], None]
AccountListener = Callable[[AccountSnapshot], None]
OrderListener = Callable[[List[Order]], None]
DepthListener = Callable[[Depth], None]
TickerListener = Callable[[Ticker], None]
KlineListener = Callable[[List[Kline]], None]

UNKNOWN_ORDER_CODE = -2011


class ExchangeError(Exception):
    """Base class for gateway failures."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class UnknownOrderError(ExchangeError):
    """The referenced order is unknown to the exchange (already filled or cancelled)."""


def is_unknown_order_error(error: BaseException) -> bool:
    """Return True if ``error`` means the target order no longer exists."""
    if isinstance(error, UnknownOrderError):
        return True
    if isinstance(error, ExchangeError) and error.code == UNKNOWN_ORDER_CODE:
        return True
    message = str(error)
    return "Unknown order" in message or '"code":-2011' in message


class StreamHub:
    """Registry of push-stream listeners keyed by stream name."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, key: str, listener: Callable[[Any], None]) -> Unsubscribe:
        self._listeners[key].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners.get(key, []):
                self._listeners[key].remove(listener)

        return unsubscribe

    def publish(self, key: str, payload: Any) -> None:
        for listener in list(self._listeners.get(key, [])):
            try:
                listener(payload)
            except Exception:
                logger.exception(f"Listener failed | stream={key}")

    def has_listeners(self, key: str) -> bool:
        return bool(self._listeners.get(key))


class ExchangeAdapter(ABC):
    """Abstract futures exchange used by the strategy engines.

    Each ``watch_*`` registers a listener for a full-replace snapshot stream
    and returns a callable that removes it.
    """

    @abstractmethod
    def watch_account(self, listener: AccountListener) -> Unsubscribe:
        pass

    @abstractmethod
    def watch_orders(self, listener: OrderListener) -> Unsubscribe:
        pass

    @abstractmethod
    def watch_depth(self, symbol: str, listener: DepthListener) -> Unsubscribe:
        pass

    @abstractmethod
    def watch_ticker(self, symbol: str, listener: TickerListener) -> Unsubscribe:
        pass

    @abstractmethod
    def watch_klines(self, symbol: str, interval: str, listener: KlineListener) -> Unsubscribe:
        pass

    @abstractmethod
    async def create_order(self, params: CreateOrderParams) -> Order:
        """Submit an order.

        Raises:
            UnknownOrderError: the order it depends on no longer exists
            ExchangeError: any other gateway failure
        """
        pass

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: int) -> None:
        pass

    @abstractmethod
    async def cancel_orders(self, symbol: str, order_ids: Sequence[int]) -> None:
        pass

    @abstractmethod
    async def cancel_all_orders(self, symbol: str) -> None:
        pass


class InMemoryAdapter(ExchangeAdapter):
    """A paper exchange used by tests and the demo.

    - Market orders fill immediately at the last ticker price and update a
      single net position; resting orders are kept open until cancelled
      (stops are never triggered).
    - Push snapshots caused by commands are delivered with ``call_soon``, i.e.
      after the command's response, the way a real order stream lags REST.
    - ``fail_next(method, error)`` queues an exception for the next call.
    """

    def __init__(self, symbol: str = "BTCUSDT"):
        self.symbol = symbol
        self.hub = StreamHub()
        self.open_orders: Dict[int, Order] = {}
        self.created: List[Order] = []
        self.cancelled: List[int] = []
        self.cancel_all_calls = 0
        self.position_amt = Decimal("0")
        self.entry_price = Decimal("0")
        self.mark_price: Optional[Decimal] = None
        self.last_price: Optional[Decimal] = None
        self.wallet_balance = Decimal("10000")
        self._errors: Dict[str, List[BaseException]] = defaultdict(list)
        self._next_id = 1
        self._clock_ms = 1_700_000_000_000

    # --- test controls ---

    def fail_next(self, method: str, error: BaseException) -> None:
        self._errors[method].append(error)

    def _raise_if_failing(self, method: str) -> None:
        if self._errors.get(method):
            raise self._errors[method].pop(0)

    def _now_ms(self) -> int:
        self._clock_ms += 1
        return self._clock_ms

    def _schedule(self, fn: Callable[[], None]) -> None:
        try:
            asyncio.get_running_loop().call_soon(fn)
        except RuntimeError:
            fn()

    async def flush(self) -> None:
        """Let scheduled push deliveries run."""
        for _ in range(3):
            await asyncio.sleep(0)

    # --- streams ---

    def watch_account(self, listener: AccountListener) -> Unsubscribe:
        return self.hub.subscribe("account", listener)

    def watch_orders(self, listener: OrderListener) -> Unsubscribe:
        return self.hub.subscribe("orders", listener)

    def watch_depth(self, symbol: str, listener: DepthListener) -> Unsubscribe:
        return self.hub.subscribe(f"depth:{symbol}", listener)

    def watch_ticker(self, symbol: str, listener: TickerListener) -> Unsubscribe:
        return self.hub.subscribe(f"ticker:{symbol}", listener)

    def watch_klines(self, symbol: str, interval: str, listener: KlineListener) -> Unsubscribe:
        return self.hub.subscribe(f"klines:{symbol}", listener)

    # --- market data drivers ---

    def account_snapshot(self) -> AccountSnapshot:
        unrealized = Decimal("0")
        if self.mark_price is not None and self.position_amt != 0:
            unrealized = (self.mark_price - self.entry_price) * self.position_amt
        position = AccountPosition(
            symbol=self.symbol,
            position_amt=self.position_amt,
            entry_price=self.entry_price,
            unrealized_profit=unrealized,
            mark_price=self.mark_price,
        )
        return AccountSnapshot(
            total_wallet_balance=self.wallet_balance,
            total_unrealized_profit=unrealized,
            positions=[position],
        )

    def push_account(self) -> None:
        self.hub.publish("account", self.account_snapshot())

    def push_orders(self) -> None:
        self.hub.publish("orders", list(self.open_orders.values()))

    def push_ticker(self, price) -> None:
        """Publish a new last price; the mark price follows it."""
        self.last_price = Decimal(str(price))
        self.mark_price = self.last_price
        self.hub.publish(
            f"ticker:{self.symbol}",
            Ticker(symbol=self.symbol, last_price=self.last_price, event_time=self._now_ms()),
        )
        self.push_account()

    def push_depth(self, bids: Iterable, asks: Iterable) -> None:
        depth = Depth(
            bids=[(Decimal(str(p)), Decimal(str(q))) for p, q in bids],
            asks=[(Decimal(str(p)), Decimal(str(q))) for p, q in asks],
            symbol=self.symbol,
            event_time=self._now_ms(),
        )
        self.hub.publish(f"depth:{self.symbol}", depth)

    def push_klines(self, klines: List[Kline]) -> None:
        self.hub.publish(f"klines:{self.symbol}", list(klines))

    def set_position(self, amount, entry_price, mark_price=None) -> None:
        self.position_amt = Decimal(str(amount))
        self.entry_price = Decimal(str(entry_price))
        if mark_price is not None:
            self.mark_price = Decimal(str(mark_price))

    # --- commands ---

    async def create_order(self, params: CreateOrderParams) -> Order:
        self._raise_if_failing("create_order")
        order_id = self._next_id
        self._next_id += 1
        now = self._now_ms()
        order = Order(
            order_id=order_id,
            client_order_id=f"paper-{order_id}",
            symbol=params.symbol,
            side=params.side,
            type=params.type,
            status="NEW",
            price=params.price or Decimal("0"),
            orig_qty=params.quantity or Decimal("0"),
            stop_price=params.stop_price or Decimal("0"),
            activate_price=params.activation_price,
            price_rate=params.callback_rate,
            time=now,
            update_time=now,
            reduce_only=params.reduce_only,
            close_position=params.close_position,
        )
        if params.type is OrderType.MARKET:
            filled = self._fill(params.side, order.orig_qty, params.reduce_only)
            order = order.model_copy(update={"status": "FILLED", "executed_qty": filled})
            self._schedule(self.push_account)
        else:
            self.open_orders[order_id] = order
        self.created.append(order)
        self._schedule(self.push_orders)
        return order

    def _fill(self, side: OrderSide, qty: Decimal, reduce_only: bool) -> Decimal:
        if self.last_price is None:
            raise ExchangeError("No market price to fill against")
        price = self.last_price
        signed = qty if side is OrderSide.BUY else -qty
        if reduce_only:
            if self.position_amt == 0 or (signed > 0) == (self.position_amt > 0):
                return Decimal("0")
            if abs(signed) > abs(self.position_amt):
                signed = -self.position_amt
        new_amt = self.position_amt + signed
        if new_amt == 0:
            self.entry_price = Decimal("0")
        elif self.position_amt == 0 or (self.position_amt > 0) == (signed > 0):
            self.entry_price = (
                self.entry_price * abs(self.position_amt) + price * abs(signed)
            ) / abs(new_amt)
        elif (new_amt > 0) != (self.position_amt > 0):
            self.entry_price = price
        self.position_amt = new_amt
        return abs(signed)

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        self._raise_if_failing("cancel_order")
        if order_id not in self.open_orders:
            raise UnknownOrderError('{"code":-2011,"msg":"Unknown order sent."}', code=UNKNOWN_ORDER_CODE)
        del self.open_orders[order_id]
        self.cancelled.append(order_id)
        self._schedule(self.push_orders)

    async def cancel_orders(self, symbol: str, order_ids: Sequence[int]) -> None:
        self._raise_if_failing("cancel_orders")
        missing = [oid for oid in order_ids if oid not in self.open_orders]
        for oid in order_ids:
            if oid in self.open_orders:
                del self.open_orders[oid]
                self.cancelled.append(oid)
        self._schedule(self.push_orders)
        if missing:
            raise UnknownOrderError(
                f'{{"code":-2011,"msg":"Unknown order sent: {missing}"}}', code=UNKNOWN_ORDER_CODE
            )

    async def cancel_all_orders(self, symbol: str) -> None:
        self._raise_if_failing("cancel_all_orders")
        self.cancel_all_calls += 1
        self.cancelled.extend(self.open_orders)
        self.open_orders.clear()
        self._schedule(self.push_orders)
