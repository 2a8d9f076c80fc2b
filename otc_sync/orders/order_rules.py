"""
Pure order rules used by the UI layer.

All functions take ``now`` (unix seconds) explicitly, defaulting to the
wall clock, so results depend only on (order, account, constants, now).

Boundaries:
    - an order is expired from ``expires_at`` onwards (not fillable at it)
    - the maker may cancel up to and including ``grace_ends_at``
    - cleanup becomes possible strictly after ``grace_ends_at``
"""

from __future__ import annotations

import time
from typing import Iterable, List, Optional

from otc_sync.orders.models import LedgerConstants, Order, OrderStatus, is_zero_address, same_address

EXPIRED_LABEL = "Expired"


def _now(now: Optional[float]) -> float:
    return time.time() if now is None else now


def is_expired(order: Order, constants: LedgerConstants, now: Optional[float] = None) -> bool:
    return _now(now) >= constants.expires_at(order)


def can_fill_order(
    order: Order,
    account: Optional[str],
    constants: LedgerConstants,
    now: Optional[float] = None,
) -> bool:
    """Active, not expired, requester is not the maker, and taker is anyone or the requester."""
    if order.status is not OrderStatus.ACTIVE or not account:
        return False
    if is_expired(order, constants, now):
        return False
    if same_address(order.maker, account):
        return False
    return is_zero_address(order.taker) or same_address(order.taker, account)


def can_cancel_order(
    order: Order,
    account: Optional[str],
    constants: LedgerConstants,
    now: Optional[float] = None,
) -> bool:
    """Active, within the grace period, and requester is the maker."""
    if order.status is not OrderStatus.ACTIVE or not account:
        return False
    if _now(now) > constants.grace_ends_at(order):
        return False
    return same_address(order.maker, account)


def get_order_status(order: Order, constants: LedgerConstants, now: Optional[float] = None) -> str:
    """Displayed status: ledger terminal status wins, otherwise Active or Expired."""
    if order.status.is_terminal:
        return order.status.value
    if is_expired(order, constants, now):
        return EXPIRED_LABEL
    return OrderStatus.ACTIVE.value


def is_cleanup_eligible(order: Order, constants: LedgerConstants, now: Optional[float] = None) -> bool:
    return _now(now) > constants.grace_ends_at(order)


def cleanup_candidates(
    orders: Iterable[Order],
    constants: LedgerConstants,
    now: Optional[float] = None,
) -> List[Order]:
    """
    Orders the next cleanup transaction would process.

    The contract walks ids in ascending order and stops at the first order
    whose grace period has not ended, so only that contiguous prefix counts.
    """
    ts = _now(now)
    ready: List[Order] = []
    for order in sorted(orders, key=lambda o: o.id):
        if not is_cleanup_eligible(order, constants, ts):
            break
        ready.append(order)
    return ready


def cleanup_reward(orders: Iterable[Order]) -> int:
    """Sum of creation fees paid out to whoever cleans up ``orders``."""
    return sum(o.creation_fee for o in orders)


def format_time_left(order: Order, constants: LedgerConstants, now: Optional[float] = None) -> str:
    """Remaining lifetime as ``"<d>d <h>h"``, or ``"Expired"``."""
    left = constants.expires_at(order) - _now(now)
    if left <= 0:
        return EXPIRED_LABEL
    days = int(left // 86400)
    hours = int((left % 86400) // 3600)
    return f"{days}d {hours}h"
