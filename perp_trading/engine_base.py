"""
Shared plumbing for the strategy engines.

An engine caches the latest full-replace snapshot of each push stream, runs
a periodic decision tick guarded against re-entrancy, and publishes a
read-only snapshot to ``update`` listeners. Push callbacks only replace
caches and release coordinator locks; all order mutations happen in the tick.
"""

import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set

from .async_event_loop import PeriodicTicker
from .config import StrategyCommon
from .exchange import ExchangeAdapter, Unsubscribe
from .models import AccountSnapshot, Depth, Order, OrderType, Ticker
from .order_coordinator import OrderCoordinator
from .position import PositionSnapshot, get_position
from .pricing import get_mid_or_last
from .trade_log import TradeLog

EVENTS = ("update",)


class EngineBase(ABC):
    """Base class for a single-symbol strategy engine.

    Args:
        config: Strategy parameters
        adapter: Exchange adapter
        clock: Wall-clock source in seconds (``time.time`` by default)
        name: Engine name used in log lines
    """

    def __init__(
        self,
        config: StrategyCommon,
        adapter: ExchangeAdapter,
        *,
        clock: Callable[[], float] = time.time,
        name: str = "engine",
    ):
        self.config = config
        self.adapter = adapter
        self.clock = clock
        self.trade_log = TradeLog(config.max_log_entries, clock=clock, name=name)
        self.coordinator = OrderCoordinator(
            adapter,
            config.symbol,
            self.trade_log.push,
            price_tick=config.price_tick,
            qty_step=config.qty_step,
            lock_timeout=config.lock_timeout_seconds,
        )

        self.account: Optional[AccountSnapshot] = None
        self.open_orders: List[Order] = []
        self.depth: Optional[Depth] = None
        self.ticker: Optional[Ticker] = None
        self.orders_snapshot_ready = False
        self.pending_cancel_ids: Set[int] = set()

        self.session_volume = Decimal("0")
        self._prev_position_amt = Decimal("0")
        self._position_initialized = False

        self._processing = False
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {event: [] for event in EVENTS}
        self._unsubscribers: List[Unsubscribe] = []
        self._ticker_loop: Optional[PeriodicTicker] = None

    # --- lifecycle ---

    @property
    @abstractmethod
    def tick_interval(self) -> float:
        pass

    def subscribe(self) -> None:
        """Register push-stream listeners; calling it twice is a no-op."""
        if self._unsubscribers:
            return
        self._watch("account", lambda: self.adapter.watch_account(self._on_account))
        self._watch("orders", lambda: self.adapter.watch_orders(self._on_orders))
        self._watch("depth", lambda: self.adapter.watch_depth(self.config.symbol, self._on_depth))
        self._watch("ticker", lambda: self.adapter.watch_ticker(self.config.symbol, self._on_ticker))
        self._subscribe_extra()

    def _subscribe_extra(self) -> None:
        pass

    def _watch(self, stream: str, register: Callable[[], Unsubscribe]) -> None:
        try:
            self._unsubscribers.append(register())
        except Exception as exc:
            self.trade_log.push("error", f"Subscribe to {stream} failed: {exc}")

    def unsubscribe(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def start(self) -> None:
        """Subscribe to streams and start ticking (needs a running loop)."""
        self.subscribe()
        if self._ticker_loop is None:
            self._ticker_loop = PeriodicTicker(self.tick, self.tick_interval)
        self._ticker_loop.start()

    async def stop(self) -> None:
        if self._ticker_loop is not None:
            await self._ticker_loop.stop()
        self.unsubscribe()
        self.coordinator.shutdown()

    # --- listeners ---

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event: {event}")
        if handler not in self._listeners[event]:
            self._listeners[event].append(handler)

    def off(self, event: str, handler: Callable[[Any], None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event: {event}")
        if handler in self._listeners[event]:
            self._listeners[event].remove(handler)

    def _emit_update(self) -> None:
        try:
            snapshot = self.get_snapshot()
        except Exception as exc:
            self.trade_log.push("error", f"Snapshot build failed: {exc}")
            return
        for handler in list(self._listeners["update"]):
            try:
                handler(snapshot)
            except Exception as exc:
                self.trade_log.push("error", f"Update listener failed: {exc}")

    @abstractmethod
    def get_snapshot(self) -> Any:
        pass

    # --- push handlers ---

    def _on_account(self, snapshot: AccountSnapshot) -> None:
        try:
            self.account = snapshot
            self._update_session_volume(self.position())
            self._emit_update()
        except Exception as exc:
            self.trade_log.push("error", f"Account push handling failed: {exc}")

    def _on_orders(self, orders: List[Order]) -> None:
        try:
            self.coordinator.sync_with_orders(orders)
            self.open_orders = [
                o for o in orders if o.type != OrderType.MARKET and o.symbol == self.config.symbol
            ]
            current_ids = {o.order_id for o in self.open_orders}
            self.pending_cancel_ids &= current_ids
            self._after_orders_update()
            self.orders_snapshot_ready = True
            self._emit_update()
        except Exception as exc:
            self.trade_log.push("error", f"Order push handling failed: {exc}")

    def _after_orders_update(self) -> None:
        pass

    def _on_depth(self, depth: Depth) -> None:
        try:
            self.depth = depth
            self._emit_update()
        except Exception as exc:
            self.trade_log.push("error", f"Depth push handling failed: {exc}")

    def _on_ticker(self, ticker: Ticker) -> None:
        try:
            self.ticker = ticker
            self._emit_update()
        except Exception as exc:
            self.trade_log.push("error", f"Ticker push handling failed: {exc}")

    # --- state ---

    def position(self) -> PositionSnapshot:
        return get_position(self.account, self.config.symbol, self.config.entry_price_epsilon)

    def _reference_price(self) -> Optional[Decimal]:
        return get_mid_or_last(self.depth, self.ticker)

    def _update_session_volume(self, position: PositionSnapshot) -> None:
        """Accumulate traded quote volume from position changes."""
        if not self._position_initialized:
            self._prev_position_amt = position.position_amt
            self._position_initialized = True
            return
        price = self._reference_price()
        delta = abs(position.position_amt - self._prev_position_amt)
        if price is not None and delta > 0:
            self.session_volume += delta * price
        self._prev_position_amt = position.position_amt

    def _forget_orders(self, order_ids: Set[int]) -> None:
        self.open_orders = [o for o in self.open_orders if o.order_id not in order_ids]
        self.pending_cancel_ids -= order_ids

    # --- tick ---

    async def tick(self) -> None:
        """Run one decision step; never raises."""
        if self._processing:
            return
        self._processing = True
        try:
            await self._tick()
        except Exception as exc:
            self.trade_log.push("error", f"Strategy loop error: {exc}")
            self._emit_update()
        finally:
            self._processing = False

    @abstractmethod
    async def _tick(self) -> None:
        pass
