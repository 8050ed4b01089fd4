"""
Position snapshot derivation and protective stop math.

This module provides:
- PositionSnapshot, recomputed from every account snapshot (never mutated)
- SMA over closed candles for the trend entry signal
- Base stop-loss and trailing-stop activation prices
- compute_profit_lock_target(), the stepped profit lock

The profit lock is a ratchet: a stop only ever moves in the protective
direction (up for a long, down for a short), by at least one tick, and never
past the trailing stop's activation price. Once the trailing stop has
activated, the lock hands over and stops moving.

Examples:
    >>> from decimal import Decimal
    >>> compute_profit_lock_target(
    ...     position_amt=Decimal("1"),
    ...     entry_price=Decimal("100"),
    ...     last_price=Decimal("101.5"),
    ...     pnl=Decimal("1.5"),
    ...     unrealized_profit=None,
    ...     current_stop=Decimal("99"),
    ...     trailing_activation=Decimal("102"),
    ...     trigger_usd=Decimal("1"),
    ...     step_usd=Decimal("0.5"),
    ...     tick=Decimal("0.1"),
    ... )
    Decimal('101.0')
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import List, Optional

from .models import AccountSnapshot, Kline, OrderSide
from .pricing import round_down_to_tick

ZERO = Decimal("0")


@dataclass(frozen=True)
class PositionSnapshot:
    """Net position for one symbol.

    Attributes:
        position_amt: Signed base quantity (positive long, negative short)
        entry_price: Average entry price (0 while unknown)
        unrealized_profit: Exchange-reported unrealized P&L
        mark_price: Positive mark price, or None if the exchange gave none
    """

    position_amt: Decimal = ZERO
    entry_price: Decimal = ZERO
    unrealized_profit: Decimal = ZERO
    mark_price: Optional[Decimal] = None

    def is_flat(self, epsilon: Decimal) -> bool:
        return abs(self.position_amt) < epsilon

    @property
    def direction(self) -> Optional[str]:
        if self.position_amt > 0:
            return "long"
        if self.position_amt < 0:
            return "short"
        return None

    @property
    def close_side(self) -> OrderSide:
        """Side of the order that reduces this position."""
        return OrderSide.SELL if self.position_amt > 0 else OrderSide.BUY


def get_position(
    account: Optional[AccountSnapshot],
    symbol: str,
    exposure_epsilon: Decimal = Decimal("1e-8"),
) -> PositionSnapshot:
    """Select the position for ``symbol`` from an account snapshot.

    Prefers the one-way (``BOTH``) position with exposure, then the largest
    exposure, then whatever entry the exchange listed first.
    """
    if account is None:
        return PositionSnapshot()
    positions = [p for p in account.positions if p.symbol == symbol]
    if not positions:
        return PositionSnapshot()
    with_exposure = [p for p in positions if abs(p.position_amt) > exposure_epsilon]
    selected = next((p for p in with_exposure if p.position_side == "BOTH"), None)
    if selected is None and with_exposure:
        selected = max(with_exposure, key=lambda p: abs(p.position_amt))
    if selected is None:
        selected = positions[0]
    mark = selected.mark_price if selected.mark_price is not None and selected.mark_price > 0 else None
    return PositionSnapshot(
        position_amt=selected.position_amt,
        entry_price=selected.entry_price,
        unrealized_profit=selected.unrealized_profit,
        mark_price=mark,
    )


def get_sma(klines: List[Kline], length: int) -> Optional[Decimal]:
    """Simple moving average of the last ``length`` closes.

    Candles explicitly flagged as still open are ignored. Returns None when
    fewer than ``length`` candles are available.
    """
    closed = [k for k in klines if k.is_closed is not False]
    if length <= 0 or len(closed) < length:
        return None
    closes = [k.close for k in closed[-length:]]
    return sum(closes, ZERO) / length


def calc_stop_loss_price(entry_price: Decimal, qty: Decimal, direction: str, loss: Decimal) -> Decimal:
    """Price at which the position has lost ``loss`` quote currency."""
    qty = abs(qty)
    if direction == "long":
        return entry_price - loss / qty
    return entry_price + loss / qty


def calc_trailing_activation_price(entry_price: Decimal, qty: Decimal, direction: str, profit: Decimal) -> Decimal:
    """Price at which the position has gained ``profit`` quote currency."""
    qty = abs(qty)
    if direction == "long":
        return entry_price + profit / qty
    return entry_price - profit / qty


def compute_profit_lock_target(
    position_amt: Decimal,
    entry_price: Decimal,
    last_price: Decimal,
    pnl: Decimal,
    unrealized_profit: Optional[Decimal],
    current_stop: Optional[Decimal],
    trailing_activation: Optional[Decimal],
    trigger_usd: Decimal,
    step_usd: Decimal,
    tick: Decimal,
) -> Optional[Decimal]:
    """Compute the next stepped profit-lock stop, if the stop should move.

    Once profit reaches ``trigger_usd``, the stop is placed ``steps`` price
    increments of ``step_usd / qty`` beyond entry, where ``steps`` grows by one
    for every further ``step_usd`` of profit. Profit is the better of the
    price-derived and the exchange-reported P&L.

    Args:
        position_amt: Signed position size
        entry_price: Average entry price
        last_price: Latest trade price
        pnl: P&L derived from entry and ``last_price``
        unrealized_profit: Exchange-reported unrealized P&L, if known
        current_stop: Stop price of the resting stop order, if any
        trailing_activation: Activation price of the trailing stop, if known
        trigger_usd: Profit at which the first step is taken
        step_usd: Profit per additional step
        tick: Price tick (also the minimum improvement)

    Returns:
        The new stop price, or None when no move is needed. A returned stop
        is always strictly on the protective side of ``last_price`` and short
        of the trailing activation price.
    """
    qty = abs(position_amt)
    tick = max(tick, Decimal("1e-9"))
    if qty == 0 or step_usd <= 0:
        return None
    is_long = position_amt > 0

    # The trailing stop owns the exit once its activation price is reached
    if trailing_activation is not None:
        if is_long and last_price >= trailing_activation - tick:
            return None
        if not is_long and last_price <= trailing_activation + tick:
            return None

    basis = pnl if unrealized_profit is None else max(pnl, unrealized_profit)
    trigger_usd = max(ZERO, trigger_usd)
    if basis < trigger_usd:
        return None

    steps = 1 + ((basis - trigger_usd) / step_usd).to_integral_value(rounding=ROUND_FLOOR)
    step_px = step_usd / qty
    raw = entry_price + steps * step_px if is_long else entry_price - steps * step_px
    target = round_down_to_tick(raw, tick)

    if trailing_activation is not None:
        if is_long:
            target = min(target, trailing_activation - tick)
        else:
            target = max(target, trailing_activation + tick)

    if is_long and target > last_price - tick:
        return None
    if not is_long and target < last_price + tick:
        return None

    if current_stop is not None:
        if is_long and target < current_stop + tick:
            return None
        if not is_long and target > current_stop - tick:
            return None
    return target
