"""
Desired-vs-open order reconciliation for quoting strategies.

make_order_plan() is pure: it never talks to the exchange. Callers cancel
``to_cancel`` and then place ``to_place``.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Sequence

from .models import Order, OrderSide


@dataclass(frozen=True)
class DesiredOrder:
    """What one resting quote should look like on this tick."""

    side: OrderSide
    price: Decimal
    amount: Decimal
    reduce_only: bool = False


@dataclass
class OrderPlan:
    to_cancel: List[Order] = field(default_factory=list)
    to_place: List[DesiredOrder] = field(default_factory=list)


def make_order_plan(
    open_orders: Sequence[Order],
    desired: Sequence[DesiredOrder],
    tolerance: Decimal,
    qty_tolerance: Decimal = Decimal("1e-8"),
) -> OrderPlan:
    """Diff open orders against the desired quote set.

    An open order is kept iff some still-unmatched desired order has the same
    side and reduce-only flag, a price within ``tolerance`` and the same
    quantity. Matching is one-to-one. Unkept open orders are cancelled and
    unmatched desired orders are placed.

    Args:
        open_orders: Resting orders, excluding those already being cancelled
        desired: Orders the strategy wants resting right now
        tolerance: Maximum price difference for an open order to be kept
        qty_tolerance: Maximum quantity difference treated as equal

    Returns:
        OrderPlan with orders to cancel and desired orders to place
    """
    unmatched = list(desired)
    plan = OrderPlan()
    for order in open_orders:
        match = None
        for candidate in unmatched:
            if (
                candidate.side == order.side
                and candidate.reduce_only == order.reduce_only
                and abs(candidate.price - order.price) <= tolerance
                and abs(candidate.amount - order.orig_qty) <= qty_tolerance
            ):
                match = candidate
                break
        if match is None:
            plan.to_cancel.append(order)
        else:
            unmatched.remove(match)
    plan.to_place = unmatched
    return plan
