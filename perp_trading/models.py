"""
Exchange wire models for perpetual-futures trading.

All monetary values are parsed into Decimal. Field aliases follow the
Binance-compatible futures API spoken by Aster (``positionAmt``,
``orderId``, ...) so payloads from REST responses and push streams can be
validated directly, while Python code uses snake_case attribute names.

Examples:
    >>> order = Order.model_validate({
    ...     "orderId": 42, "symbol": "BTCUSDT", "side": "SELL",
    ...     "type": "STOP_MARKET", "status": "NEW", "stopPrice": "64950.1",
    ... })
    >>> order.stop_price
    Decimal('64950.1')
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class OrderSide(str, Enum):
    """Order side: BUY or SELL."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    """Order types the coordinator submits and tracks."""

    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP_MARKET = "STOP_MARKET"
    TRAILING_STOP_MARKET = "TRAILING_STOP_MARKET"


class TimeInForce(str, Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"
    GTX = "GTX"  # post-only


# Order statuses for which the exchange is still working the order
WORKING_STATUSES = frozenset({"NEW", "PARTIALLY_FILLED"})


class ExchangeModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Order(ExchangeModel):
    """An order as reported by the exchange.

    The engines never own order identity: they only mirror what the
    order stream reports and express intent to create or cancel.
    """

    order_id: int = Field(alias="orderId")
    client_order_id: str = Field("", alias="clientOrderId")
    symbol: str
    side: OrderSide
    type: OrderType
    status: str = "NEW"
    price: Decimal = Decimal("0")
    orig_qty: Decimal = Field(Decimal("0"), alias="origQty")
    executed_qty: Decimal = Field(Decimal("0"), alias="executedQty")
    stop_price: Decimal = Field(Decimal("0"), alias="stopPrice")
    activate_price: Optional[Decimal] = Field(None, alias="activatePrice")
    price_rate: Optional[Decimal] = Field(None, alias="priceRate")
    time: int = 0
    update_time: int = Field(0, alias="updateTime")
    reduce_only: bool = Field(False, alias="reduceOnly")
    close_position: bool = Field(False, alias="closePosition")

    @property
    def is_working(self) -> bool:
        return self.status in WORKING_STATUSES

    @property
    def last_touched(self) -> int:
        """Most recent exchange timestamp for this order (ms)."""
        return self.update_time or self.time or 0


class AccountPosition(ExchangeModel):
    symbol: str
    position_amt: Decimal = Field(Decimal("0"), alias="positionAmt")
    entry_price: Decimal = Field(Decimal("0"), alias="entryPrice")
    unrealized_profit: Decimal = Field(Decimal("0"), alias="unrealizedProfit")
    position_side: str = Field("BOTH", alias="positionSide")
    mark_price: Optional[Decimal] = Field(None, alias="markPrice")
    update_time: int = Field(0, alias="updateTime")


class AccountSnapshot(ExchangeModel):
    can_trade: bool = Field(True, alias="canTrade")
    update_time: int = Field(0, alias="updateTime")
    total_wallet_balance: Decimal = Field(Decimal("0"), alias="totalWalletBalance")
    total_unrealized_profit: Decimal = Field(Decimal("0"), alias="totalUnrealizedProfit")
    available_balance: Optional[Decimal] = Field(None, alias="availableBalance")
    positions: List[AccountPosition] = Field(default_factory=list)


class Depth(ExchangeModel):
    """Order book snapshot: ``bids``/``asks`` are ``(price, qty)`` pairs, best first."""

    last_update_id: int = Field(0, alias="lastUpdateId")
    bids: List[Tuple[Decimal, Decimal]] = Field(default_factory=list)
    asks: List[Tuple[Decimal, Decimal]] = Field(default_factory=list)
    event_time: Optional[int] = Field(None, alias="eventTime")
    symbol: Optional[str] = None


class Ticker(ExchangeModel):
    symbol: str
    last_price: Decimal = Field(alias="lastPrice")
    open_price: Decimal = Field(Decimal("0"), alias="openPrice")
    high_price: Decimal = Field(Decimal("0"), alias="highPrice")
    low_price: Decimal = Field(Decimal("0"), alias="lowPrice")
    volume: Decimal = Decimal("0")
    quote_volume: Decimal = Field(Decimal("0"), alias="quoteVolume")
    event_time: Optional[int] = Field(None, alias="eventTime")


class Kline(ExchangeModel):
    open_time: int = Field(alias="openTime")
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")
    close_time: int = Field(0, alias="closeTime")
    number_of_trades: int = Field(0, alias="numberOfTrades")
    is_closed: Optional[bool] = Field(None, alias="isClosed")


class CreateOrderParams(ExchangeModel):
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    activation_price: Optional[Decimal] = None
    callback_rate: Optional[Decimal] = None
    time_in_force: Optional[TimeInForce] = None
    reduce_only: bool = False
    close_position: bool = False

    def to_request_params(self) -> Dict[str, Any]:
        """Render as exchange request parameters (strings, camelCase keys)."""
        params: Dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.type.value,
        }
        # closePosition orders close the whole position and take no quantity
        if self.quantity is not None and not self.close_position:
            params["quantity"] = str(self.quantity)
        if self.price is not None:
            params["price"] = str(self.price)
        if self.stop_price is not None:
            params["stopPrice"] = str(self.stop_price)
        if self.activation_price is not None:
            params["activationPrice"] = str(self.activation_price)
        if self.callback_rate is not None:
            params["callbackRate"] = str(self.callback_rate)
        if self.time_in_force is not None:
            params["timeInForce"] = self.time_in_force.value
        if self.reduce_only:
            params["reduceOnly"] = "true"
        if self.close_position:
            params["closePosition"] = "true"
        return params
