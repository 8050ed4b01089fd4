"""
Price math and order guards.

Prices and quantities are snapped to exchange granularity by truncating
toward zero, so a rounded quantity never exceeds what was asked for and a
rounded stop never widens the loss limit.

Examples:
    >>> from decimal import Decimal
    >>> round_down_to_tick(Decimal("100.129"), Decimal("0.01"))
    Decimal('100.12')
    >>> is_order_price_allowed_by_mark(OrderSide.BUY, Decimal("101"), Decimal("100"), Decimal("0.005"))
    False
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Optional, Tuple

from .models import Depth, OrderSide, Ticker

ZERO = Decimal("0")


def round_down_to_tick(value: Decimal, tick: Decimal) -> Decimal:
    """Truncate ``value`` toward zero to a multiple of ``tick``.

    A non-positive tick leaves the value unchanged.
    """
    if tick <= 0:
        return value
    return (value / tick).to_integral_value(rounding=ROUND_DOWN) * tick


def round_qty_down_to_step(qty: Decimal, step: Decimal) -> Decimal:
    """Truncate a quantity toward zero to a multiple of ``step``."""
    return round_down_to_tick(qty, step)


def is_order_price_allowed_by_mark(
    side: OrderSide,
    order_price: Optional[Decimal],
    mark_price: Optional[Decimal],
    max_pct: Decimal,
) -> bool:
    """Return True if ``order_price`` is within the allowed deviation from mark.

    A BUY must not exceed ``mark * (1 + max_pct)``; a SELL must not fall below
    ``mark * (1 - max_pct)``. Without a usable order price or a positive mark
    there is nothing to compare against and the check passes.
    """
    if order_price is None or mark_price is None or mark_price <= 0:
        return True
    pct = max(ZERO, max_pct)
    if side is OrderSide.BUY:
        return order_price <= mark_price * (1 + pct)
    return order_price >= mark_price * (1 - pct)


@dataclass(frozen=True)
class MarkPriceGuard:
    """Mark-price deviation guard attached to a submission.

    ``expected_price`` is the price checked for orders without a limit price
    (market orders and market closes).
    """

    mark_price: Optional[Decimal]
    max_pct: Decimal
    expected_price: Optional[Decimal] = None

    def allows(self, side: OrderSide, price: Optional[Decimal]) -> bool:
        return is_order_price_allowed_by_mark(side, price, self.mark_price, self.max_pct)


def get_top_prices(depth: Optional[Depth]) -> Tuple[Optional[Decimal], Optional[Decimal]]:
    """Best bid and best ask, or None for an empty side."""
    if depth is None:
        return None, None
    bid = depth.bids[0][0] if depth.bids else None
    ask = depth.asks[0][0] if depth.asks else None
    return bid, ask


def get_mid_or_last(depth: Optional[Depth], ticker: Optional[Ticker]) -> Optional[Decimal]:
    """Mid of the top of book, falling back to the ticker's last price."""
    bid, ask = get_top_prices(depth)
    if bid is not None and ask is not None:
        return (bid + ask) / 2
    if ticker is not None:
        return ticker.last_price
    return None


@dataclass(frozen=True)
class DepthStats:
    buy_sum: Decimal
    sell_sum: Decimal
    imbalance: str  # "buy_dominant", "sell_dominant" or "balanced"
    skip_buy_side: bool
    skip_sell_side: bool


def compute_depth_stats(depth: Optional[Depth], levels: int = 10, ratio: Decimal = Decimal("3")) -> DepthStats:
    """Aggregate the top ``levels`` of each book side and classify imbalance.

    A book whose ask quantity exceeds ``ratio`` times its bid quantity is
    sell dominant, and quoting a bid into it is skipped; the mirror case
    skips the ask.
    """
    bids = depth.bids[:levels] if depth is not None else []
    asks = depth.asks[:levels] if depth is not None else []
    buy_sum = sum((qty for _, qty in bids), ZERO)
    sell_sum = sum((qty for _, qty in asks), ZERO)
    imbalance = "balanced"
    if buy_sum > sell_sum * ratio:
        imbalance = "buy_dominant"
    elif sell_sum > buy_sum * ratio:
        imbalance = "sell_dominant"
    return DepthStats(
        buy_sum=buy_sum,
        sell_sum=sell_sum,
        imbalance=imbalance,
        skip_buy_side=imbalance == "sell_dominant",
        skip_sell_side=imbalance == "buy_dominant",
    )


def compute_position_pnl(position_amt: Decimal, entry_price: Decimal, bid: Decimal, ask: Decimal) -> Decimal:
    """P&L of closing now: a long sells at the bid, a short buys at the ask."""
    qty = abs(position_amt)
    if position_amt > 0:
        return (bid - entry_price) * qty
    if position_amt < 0:
        return (entry_price - ask) * qty
    return ZERO


def should_stop_loss(
    position_amt: Decimal,
    entry_price: Decimal,
    unrealized_profit: Optional[Decimal],
    bid: Decimal,
    ask: Decimal,
    loss_limit: Decimal,
    flat_epsilon: Decimal = Decimal("0.00001"),
) -> bool:
    """Return True if the position has breached ``-loss_limit``.

    Either the top-of-book derived P&L is below the limit, or the exchange
    reported unrealized P&L is while the derived P&L is not positive.
    """
    if abs(position_amt) < flat_epsilon:
        return False
    pnl = compute_position_pnl(position_amt, entry_price, bid, ask)
    if pnl < -loss_limit:
        return True
    return unrealized_profit is not None and unrealized_profit < -loss_limit and pnl <= 0
