"""
Async Aster futures adapter (Binance-compatible API) built on aiohttp.

Features:
- HMAC-SHA256 query signing with the ``X-MBX-APIKEY`` header
- Jittered exponential backoff for 429/418 responses
- Order commands (single, batch and cancel-all)
- Push streams turned into full-replace snapshots: each stream is
  bootstrapped from REST, then kept current from WebSocket events with the
  pure merge helpers below

Usage:
    async with AsyncAsterAdapter(api_key, api_secret, symbol="BTCUSDT") as adapter:
        engine = TrendEngine(config.trend, adapter)
        engine.start()
"""

import asyncio
import json
import random
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from pydantic import ValidationError

from .exchange import (
    AccountListener,
    DepthListener,
    ExchangeAdapter,
    ExchangeError,
    KlineListener,
    OrderListener,
    StreamHub,
    TickerListener,
    UNKNOWN_ORDER_CODE,
    UnknownOrderError,
    Unsubscribe,
)
from .logging_setup import logger
from .models import (
    AccountPosition,
    AccountSnapshot,
    CreateOrderParams,
    Depth,
    Kline,
    Order,
    Ticker,
    WORKING_STATUSES,
)
from .secrets import AsterCredentials
from .ws_client import RealTimeWebSocketClient

DEFAULT_BASE_URL = "https://fapi.asterdex.com"
DEFAULT_WS_URL = "wss://fstream.asterdex.com"
MAX_KLINES = 500
LISTEN_KEY_KEEPALIVE_SECONDS = 30 * 60


class AsterAPIError(ExchangeError):
    def __init__(self, message: str, code: Optional[int] = None, status: Optional[int] = None):
        super().__init__(message, code=code)
        self.status = status


class AsterRateLimitError(AsterAPIError):
    """Raised when rate limit is hit and backoff is exhausted."""
    pass


# --- payload parsing and snapshot merging (pure) ---


def parse_orders(raw: Sequence[Dict[str, Any]]) -> List[Order]:
    """Validate REST orders, skipping order types the engines never use."""
    orders = []
    for item in raw:
        try:
            orders.append(Order.model_validate(item))
        except ValidationError:
            logger.debug(f"Skipping unsupported order | type={item.get('type')} id={item.get('orderId')}")
    return orders


def apply_order_update(orders: List[Order], event: Dict[str, Any]) -> List[Order]:
    """Apply an ``ORDER_TRADE_UPDATE`` event to an open-orders snapshot.

    Returns a new list: the order is replaced or added while it is still
    working, and dropped once filled, cancelled or expired.
    """
    o = event["o"]
    try:
        order = Order(
            order_id=o["i"],
            client_order_id=o.get("c", ""),
            symbol=o["s"],
            side=o["S"],
            type=o.get("ot") or o["o"],
            status=o["X"],
            price=o.get("p", "0"),
            orig_qty=o.get("q", "0"),
            executed_qty=o.get("z", "0"),
            stop_price=o.get("sp", "0"),
            activate_price=o.get("AP"),
            price_rate=o.get("cr"),
            time=event.get("T", 0),
            update_time=o.get("T") or event.get("E", 0),
            reduce_only=o.get("R", False),
            close_position=o.get("cp", False),
        )
    except ValidationError:
        logger.debug(f"Ignoring update for unsupported order | type={o.get('o')} id={o.get('i')}")
        return list(orders)
    remaining = [existing for existing in orders if existing.order_id != order.order_id]
    if order.status in WORKING_STATUSES:
        previous = next((existing for existing in orders if existing.order_id == order.order_id), None)
        if previous is not None and previous.time:
            order = order.model_copy(update={"time": previous.time})
        remaining.append(order)
    return remaining


def apply_account_update(account: AccountSnapshot, event: Dict[str, Any]) -> AccountSnapshot:
    """Apply an ``ACCOUNT_UPDATE`` event to an account snapshot."""
    event_time = event.get("E", 0)
    positions = list(account.positions)
    for p in event.get("a", {}).get("P", []):
        side = p.get("ps", "BOTH")
        index = next(
            (i for i, pos in enumerate(positions) if pos.symbol == p["s"] and pos.position_side == side),
            None,
        )
        update = {
            "position_amt": Decimal(p["pa"]),
            "entry_price": Decimal(p["ep"]),
            "unrealized_profit": Decimal(p.get("up", "0")),
            "update_time": event_time,
        }
        if index is None:
            positions.append(AccountPosition(symbol=p["s"], position_side=side, **update))
        else:
            positions[index] = positions[index].model_copy(update=update)
    total_unrealized = sum((pos.unrealized_profit for pos in positions), Decimal("0"))
    changes: Dict[str, Any] = {
        "positions": positions,
        "update_time": event_time,
        "total_unrealized_profit": total_unrealized,
    }
    balances = event.get("a", {}).get("B", [])
    if balances:
        changes["total_wallet_balance"] = sum((Decimal(b["wb"]) for b in balances), Decimal("0"))
    return account.model_copy(update=changes)


def apply_mark_price(account: AccountSnapshot, symbol: str, mark_price: Decimal) -> AccountSnapshot:
    positions = [
        pos.model_copy(update={"mark_price": mark_price}) if pos.symbol == symbol else pos
        for pos in account.positions
    ]
    return account.model_copy(update={"positions": positions})


def parse_kline_event(event: Dict[str, Any]) -> Kline:
    k = event["k"]
    return Kline(
        open_time=k["t"],
        open=k["o"],
        high=k["h"],
        low=k["l"],
        close=k["c"],
        volume=k.get("v", "0"),
        close_time=k.get("T", 0),
        number_of_trades=k.get("n", 0),
        is_closed=k.get("x"),
    )


def parse_rest_kline(row: Sequence[Any]) -> Kline:
    return Kline(
        open_time=row[0],
        open=row[1],
        high=row[2],
        low=row[3],
        close=row[4],
        volume=row[5],
        close_time=row[6],
        number_of_trades=row[8],
    )


def merge_kline(klines: List[Kline], kline: Kline, limit: int = MAX_KLINES) -> List[Kline]:
    """Merge one candle into a series: replace the same open time or append a newer one."""
    merged = list(klines)
    if merged and merged[-1].open_time == kline.open_time:
        merged[-1] = kline
    elif not merged or kline.open_time > merged[-1].open_time:
        merged.append(kline)
    else:
        for i, existing in enumerate(merged):
            if existing.open_time == kline.open_time:
                merged[i] = kline
                break
    return merged[-limit:]


def parse_depth_event(event: Dict[str, Any]) -> Depth:
    return Depth(
        last_update_id=event.get("u", 0),
        bids=event.get("b", []),
        asks=event.get("a", []),
        event_time=event.get("E"),
        symbol=event.get("s"),
    )


def parse_ticker_event(event: Dict[str, Any]) -> Ticker:
    return Ticker(
        symbol=event["s"],
        last_price=event["c"],
        open_price=event.get("o", "0"),
        high_price=event.get("h", "0"),
        low_price=event.get("l", "0"),
        volume=event.get("v", "0"),
        quote_volume=event.get("q", "0"),
        event_time=event.get("E"),
    )


class AsyncAsterAdapter(ExchangeAdapter):
    """Live Aster futures adapter.

    Args:
        api_key: API key sent in ``X-MBX-APIKEY``
        api_secret: Secret used for HMAC-SHA256 signing
        symbol: Symbol whose mark price is merged into account snapshots
        base_url: REST base URL
        ws_url: WebSocket base URL
        timeout: Per-request timeout in seconds
        max_retries: Rate-limit retries before AsterRateLimitError
        max_backoff_seconds: Backoff ceiling
        recv_window: Signed request validity window in ms
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        symbol: str = "BTCUSDT",
        base_url: str = DEFAULT_BASE_URL,
        ws_url: str = DEFAULT_WS_URL,
        timeout: int = 10,
        max_retries: int = 5,
        max_backoff_seconds: float = 60.0,
        recv_window: int = 5000,
    ):
        self.credentials = AsterCredentials(api_key, api_secret)
        self.symbol = symbol.upper()
        self.base_url = base_url.rstrip("/")
        self.ws_url = ws_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.recv_window = recv_window
        self.session: Optional[aiohttp.ClientSession] = None

        self.hub = StreamHub()
        self._account: Optional[AccountSnapshot] = None
        self._orders: List[Order] = []
        self._orders_loaded = False
        self._klines: Dict[str, List[Kline]] = {}
        self._started: Dict[str, asyncio.Task] = {}
        self._clients: List[RealTimeWebSocketClient] = []
        self._listen_key: Optional[str] = None

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        for task in self._started.values():
            task.cancel()
        for client in self._clients:
            await client.stop()
        self._clients = []
        self._started = {}
        self._orders_loaded = False
        if self.session:
            await self.session.close()
            self.session = None

    # --- REST ---

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.credentials.sign(params, self.recv_window)

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff."""
        delay = base * (2 ** attempt)
        delay = min(delay, max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _raise_for_payload(status: int, text: str) -> None:
        try:
            payload = json.loads(text)
        except ValueError:
            payload = {}
        code = payload.get("code") if isinstance(payload, dict) else None
        message = payload.get("msg", text) if isinstance(payload, dict) else text
        if code == UNKNOWN_ORDER_CODE:
            raise UnknownOrderError(text, code=code)
        raise AsterAPIError(f"{status}: {message}", code=code, status=status)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        signed: bool = False,
        attempt: int = 0,
    ):
        """Execute a request with async rate-limit backoff and retry."""
        if not self.session:
            raise AsterAPIError("Session not initialized; use 'async with' context manager")

        query = self._sign(params or {}) if signed else dict(params or {})
        headers = self.credentials.headers()
        url = f"{self.base_url}{path}"

        try:
            async with self.session.request(
                method, url, params=query, headers=headers, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as resp:
                if resp.status in (418, 429):
                    if attempt >= self.max_retries:
                        raise AsterRateLimitError("Rate limited and max backoff attempts exceeded", status=resp.status)
                    retry_after = resp.headers.get("Retry-After")
                    if retry_after is not None and retry_after.isdigit():
                        delay = min(float(retry_after), self.max_backoff_seconds)
                    else:
                        delay = self._jittered_backoff(attempt, base=1.0, max_backoff=self.max_backoff_seconds)
                    logger.warning(f"Rate limited | path={path} attempt={attempt} delay={delay:.2f}s")
                    await asyncio.sleep(delay)
                    return await self._request(method, path, params, signed=signed, attempt=attempt + 1)

                text = await resp.text()
                if not (200 <= resp.status < 300):
                    self._raise_for_payload(resp.status, text)
                return json.loads(text) if text else None

        except asyncio.TimeoutError as e:
            raise AsterAPIError(f"Request timeout: {e}")
        except aiohttp.ClientError as e:
            raise AsterAPIError(f"Request failed: {e}")

    async def create_order(self, params: CreateOrderParams) -> Order:
        data = await self._request("POST", "/fapi/v1/order", params.to_request_params(), signed=True)
        order = Order.model_validate(data)
        logger.info(f"Order created | id={order.order_id} type={order.type.value} side={order.side.value}")
        return order

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        await self._request("DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id}, signed=True)

    async def cancel_orders(self, symbol: str, order_ids: Sequence[int]) -> None:
        results = await self._request(
            "DELETE",
            "/fapi/v1/batchOrders",
            {"symbol": symbol, "orderIdList": json.dumps([int(i) for i in order_ids])},
            signed=True,
        )
        # Batch cancels report per-order failures inside a 200 response
        failures = [r for r in results or [] if isinstance(r, dict) and "code" in r and r.get("code") != 200]
        if not failures:
            return
        if any(f.get("code") == UNKNOWN_ORDER_CODE for f in failures):
            raise UnknownOrderError(json.dumps(failures), code=UNKNOWN_ORDER_CODE)
        raise AsterAPIError(f"Batch cancel failed: {failures}", code=failures[0].get("code"))

    async def cancel_all_orders(self, symbol: str) -> None:
        await self._request("DELETE", "/fapi/v1/allOpenOrders", {"symbol": symbol}, signed=True)

    async def fetch_account(self) -> AccountSnapshot:
        return AccountSnapshot.model_validate(await self._request("GET", "/fapi/v2/account", signed=True))

    async def fetch_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        params = {"symbol": symbol} if symbol else {}
        return parse_orders(await self._request("GET", "/fapi/v1/openOrders", params, signed=True) or [])

    async def fetch_depth(self, symbol: str, limit: int = 20) -> Depth:
        data = await self._request("GET", "/fapi/v1/depth", {"symbol": symbol, "limit": limit})
        return Depth.model_validate({**data, "symbol": symbol})

    async def fetch_ticker(self, symbol: str) -> Ticker:
        return Ticker.model_validate(await self._request("GET", "/fapi/v1/ticker/24hr", {"symbol": symbol}))

    async def fetch_klines(self, symbol: str, interval: str, limit: int = 200) -> List[Kline]:
        rows = await self._request("GET", "/fapi/v1/klines", {"symbol": symbol, "interval": interval, "limit": limit})
        return [parse_rest_kline(row) for row in rows or []]

    async def create_listen_key(self) -> str:
        data = await self._request("POST", "/fapi/v1/listenKey")
        return data["listenKey"]

    async def keepalive_listen_key(self) -> None:
        await self._request("PUT", "/fapi/v1/listenKey")

    # --- streams ---

    def _ensure_stream(self, key: str, starter) -> None:
        if key in self._started:
            return
        task = asyncio.get_running_loop().create_task(starter())
        task.add_done_callback(lambda t, k=key: self._on_stream_task_done(k, t))
        self._started[key] = task

    def _on_stream_task_done(self, key: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.opt(exception=task.exception()).error(f"Stream bootstrap failed | stream={key}")
            self._started.pop(key, None)

    async def _open_ws(self, streams: List[str], handler) -> None:
        client = RealTimeWebSocketClient(self.ws_url, max_backoff_seconds=self.max_backoff_seconds)
        self._clients.append(client)
        await client.start(streams, handler)

    def watch_account(self, listener: AccountListener) -> Unsubscribe:
        unsubscribe = self.hub.subscribe("account", listener)
        self._ensure_stream("user", self._start_user_stream)
        if self._account is not None:
            listener(self._account)
        return unsubscribe

    def watch_orders(self, listener: OrderListener) -> Unsubscribe:
        unsubscribe = self.hub.subscribe("orders", listener)
        self._ensure_stream("user", self._start_user_stream)
        if self._orders_loaded:
            listener(list(self._orders))
        return unsubscribe

    def watch_depth(self, symbol: str, listener: DepthListener) -> Unsubscribe:
        unsubscribe = self.hub.subscribe(f"depth:{symbol}", listener)
        self._ensure_stream(f"depth:{symbol}", lambda: self._start_depth_stream(symbol))
        return unsubscribe

    def watch_ticker(self, symbol: str, listener: TickerListener) -> Unsubscribe:
        unsubscribe = self.hub.subscribe(f"ticker:{symbol}", listener)
        self._ensure_stream(f"ticker:{symbol}", lambda: self._start_ticker_stream(symbol))
        return unsubscribe

    def watch_klines(self, symbol: str, interval: str, listener: KlineListener) -> Unsubscribe:
        key = f"klines:{symbol}:{interval}"
        unsubscribe = self.hub.subscribe(key, listener)
        self._ensure_stream(key, lambda: self._start_kline_stream(symbol, interval))
        return unsubscribe

    async def _start_user_stream(self) -> None:
        self._account = await self.fetch_account()
        self._orders = await self.fetch_open_orders(self.symbol)
        self._orders_loaded = True
        self.hub.publish("account", self._account)
        self.hub.publish("orders", list(self._orders))

        self._listen_key = await self.create_listen_key()
        await self._open_ws([self._listen_key], self._on_user_event)
        await self._open_ws([f"{self.symbol.lower()}@markPrice@1s"], self._on_mark_price)
        logger.info(f"User stream started | symbol={self.symbol}")

        while True:
            await asyncio.sleep(LISTEN_KEY_KEEPALIVE_SECONDS)
            try:
                await self.keepalive_listen_key()
            except ExchangeError as e:
                logger.warning(f"Listen key keepalive failed | error={e}")

    async def _on_user_event(self, event: Dict[str, Any]) -> None:
        kind = event.get("e")
        if kind == "ORDER_TRADE_UPDATE":
            self._orders = apply_order_update(self._orders, event)
            self.hub.publish("orders", list(self._orders))
        elif kind == "ACCOUNT_UPDATE" and self._account is not None:
            self._account = apply_account_update(self._account, event)
            self.hub.publish("account", self._account)
        elif kind == "listenKeyExpired":
            logger.warning("Listen key expired, user stream must be restarted")

    async def _on_mark_price(self, event: Dict[str, Any]) -> None:
        if self._account is None or "p" not in event:
            return
        self._account = apply_mark_price(self._account, event.get("s", self.symbol), Decimal(event["p"]))
        self.hub.publish("account", self._account)

    async def _start_depth_stream(self, symbol: str) -> None:
        self.hub.publish(f"depth:{symbol}", await self.fetch_depth(symbol))

        async def on_depth(event: Dict[str, Any]) -> None:
            self.hub.publish(f"depth:{symbol}", parse_depth_event(event))

        await self._open_ws([f"{symbol.lower()}@depth20@100ms"], on_depth)

    async def _start_ticker_stream(self, symbol: str) -> None:
        self.hub.publish(f"ticker:{symbol}", await self.fetch_ticker(symbol))

        async def on_ticker(event: Dict[str, Any]) -> None:
            self.hub.publish(f"ticker:{symbol}", parse_ticker_event(event))

        await self._open_ws([f"{symbol.lower()}@ticker"], on_ticker)

    async def _start_kline_stream(self, symbol: str, interval: str) -> None:
        key = f"klines:{symbol}:{interval}"
        self._klines[key] = await self.fetch_klines(symbol, interval)
        self.hub.publish(key, list(self._klines[key]))

        async def on_kline(event: Dict[str, Any]) -> None:
            self._klines[key] = merge_kline(self._klines.get(key, []), parse_kline_event(event))
            self.hub.publish(key, list(self._klines[key]))

        await self._open_ws([f"{symbol.lower()}@kline_{interval}"], on_kline)
