"""
Live ledger event kinds and payload normalization.

Decoded contract logs use the contract's camelCase argument names; the
rest of the engine works with snake_case payload dicts built here.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Optional


class EventKind(Enum):
    """Contract events the engine listens to (value = Solidity event name)."""
    ORDER_CREATED = "OrderCreated"
    ORDER_FILLED = "OrderFilled"
    ORDER_CANCELED = "OrderCanceled"
    ORDER_CLEANED_UP = "OrderCleanedUp"
    RETRY_ORDER = "RetryOrder"
    CLEANUP_FEES_DISTRIBUTED = "CleanupFeesDistributed"
    CLEANUP_ERROR = "CleanupError"

    @property
    def mutates_cache(self) -> bool:
        return self in _CACHE_EVENTS


_CACHE_EVENTS = frozenset({
    EventKind.ORDER_CREATED,
    EventKind.ORDER_FILLED,
    EventKind.ORDER_CANCELED,
    EventKind.ORDER_CLEANED_UP,
    EventKind.RETRY_ORDER,
})

_ARG_NAMES = {
    "orderId": "order_id",
    "sellToken": "sell_token",
    "sellAmount": "sell_amount",
    "buyToken": "buy_token",
    "buyAmount": "buy_amount",
    "fee": "creation_fee",
    "orderCreationFee": "creation_fee",
    "oldOrderId": "old_order_id",
    "newOrderId": "new_order_id",
    "tries": "retry_count",
}

_INT_FIELDS = frozenset({
    "order_id",
    "sell_amount",
    "buy_amount",
    "timestamp",
    "creation_fee",
    "old_order_id",
    "new_order_id",
    "retry_count",
    "amount",
})


def normalize_event_args(
    args: Mapping[str, Any],
    block_number: Optional[int] = None,
    log_index: Optional[int] = None,
    tx_hash: Optional[str] = None,
) -> Dict[str, Any]:
    """Rename decoded event args to payload keys and coerce integer fields."""
    payload: Dict[str, Any] = {}
    for name, value in args.items():
        key = _ARG_NAMES.get(name, name)
        payload[key] = int(value) if key in _INT_FIELDS else value
    payload["block_number"] = block_number
    payload["log_index"] = log_index
    if tx_hash is not None:
        payload["tx_hash"] = tx_hash
    return payload
