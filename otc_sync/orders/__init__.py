"""
Orders package.

This package contains the order model, the order cache and the pure order rules.
"""

from otc_sync.orders.models import ANYONE, DealMetrics, LedgerConstants, Order, OrderStatus, ZERO_ADDRESS
from otc_sync.orders.order_cache import CacheChange, OrderCache
from otc_sync.orders.order_rules import (
    can_cancel_order,
    can_fill_order,
    cleanup_candidates,
    cleanup_reward,
    format_time_left,
    get_order_status,
)

__all__ = [
    "ANYONE",
    "DealMetrics",
    "LedgerConstants",
    "Order",
    "OrderStatus",
    "ZERO_ADDRESS",
    "CacheChange",
    "OrderCache",
    "can_cancel_order",
    "can_fill_order",
    "cleanup_candidates",
    "cleanup_reward",
    "format_time_left",
    "get_order_status",
]
