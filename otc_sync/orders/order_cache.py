"""
OrderCache: authoritative in-memory view of marketplace orders.

The cache is the only owner of Order records. It is mutated from two
sources, both on the event loop thread:

- ``replace_all`` after a bulk resync (whole snapshot swap)
- ``apply_event`` for each live ledger event, in delivery order

No method performs I/O, so every call runs to completion without yielding
and readers never observe a half-applied change.

Invariants:
    - status only moves ACTIVE -> FILLED / CANCELED; stale terminal
      transitions are rejected
    - an id removed by OrderCleanedUp, RetryOrder or ``remove`` never
      re-enters the cache (ledger ids are not reused)
    - duplicate OrderCreated delivery is idempotent
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from otc_sync.ledger.events import EventKind
from otc_sync.orders.models import ANYONE, DealMetrics, Order, OrderStatus

log = logging.getLogger("otc_sync")


@dataclass
class CacheChange:
    """Description of one applied mutation."""
    kind: EventKind
    order_id: int
    order: Optional[Order] = None           # Resulting record, None if removed
    removed_ids: Tuple[int, ...] = ()
    previous_status: Optional[OrderStatus] = None


class OrderCache:
    """
    Single-writer order store.

    Usage:
        cache = OrderCache()
        cache.replace_all(bulk_result.orders)

        change = cache.apply_event(EventKind.ORDER_FILLED, {"order_id": 7})
        if change:
            hub.publish("order-filled", change)

        active = cache.list(OrderStatus.ACTIVE)
    """

    def __init__(self, log_event: Optional[Callable[..., None]] = None) -> None:
        self._log = log_event or self._default_log
        self._orders: Dict[int, Order] = {}
        self._tombstones: Set[int] = set()
        self._version = 0

        self._handlers: Dict[EventKind, Callable[[Mapping[str, Any]], Optional[CacheChange]]] = {
            EventKind.ORDER_CREATED: self._on_created,
            EventKind.ORDER_FILLED: lambda p: self._on_terminal(EventKind.ORDER_FILLED, p, OrderStatus.FILLED),
            EventKind.ORDER_CANCELED: lambda p: self._on_terminal(EventKind.ORDER_CANCELED, p, OrderStatus.CANCELED),
            EventKind.ORDER_CLEANED_UP: self._on_cleaned_up,
            EventKind.RETRY_ORDER: self._on_retry,
        }

        self._stats = {
            "snapshots_installed": 0,
            "events_applied": 0,
            "events_ignored": 0,
            "stale_transitions": 0,
            "duplicates": 0,
            "tombstoned_dropped": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event == "cache_stale_transition" else logging.DEBUG
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    def replace_all(self, orders: Iterable[Order], range_start: Optional[int] = None) -> int:
        """
        Install a fresh snapshot, discarding the previous one.

        Args:
            orders: Records read from the ledger
            range_start: First id the ledger still holds; tombstones below it are pruned

        Returns:
            Number of orders installed
        """
        if range_start is not None:
            self._tombstones = {i for i in self._tombstones if i >= range_start}

        snapshot: Dict[int, Order] = {}
        dropped = 0
        for order in orders:
            if order.id in self._tombstones:
                dropped += 1
                continue
            snapshot[order.id] = order

        # Single reference swap
        self._orders = snapshot
        self._version += 1
        self._stats["snapshots_installed"] += 1
        self._stats["tombstoned_dropped"] += dropped

        self._log("cache_snapshot_installed", orders=len(snapshot), dropped=dropped, version=self._version)
        return len(snapshot)

    # -------------------------------------------------------------------------
    # Event Application
    # -------------------------------------------------------------------------

    def apply_event(self, kind: EventKind, payload: Mapping[str, Any]) -> Optional[CacheChange]:
        """
        Apply one live event.

        Returns:
            CacheChange describing the mutation, or None if the event was a
            no-op (unknown id, duplicate, stale transition, non-cache kind)
        """
        handler = self._handlers.get(kind)
        if handler is None:
            return None

        change = handler(payload)
        if change is None:
            self._stats["events_ignored"] += 1
        else:
            self._stats["events_applied"] += 1
            self._version += 1
        return change

    def _on_created(self, payload: Mapping[str, Any]) -> Optional[CacheChange]:
        order_id = int(payload["order_id"])
        if order_id in self._orders or order_id in self._tombstones:
            self._stats["duplicates"] += 1
            self._log("cache_duplicate_create", order_id=order_id, removed=order_id in self._tombstones)
            return None

        order = Order(
            id=order_id,
            maker=payload["maker"],
            taker=payload.get("taker") or ANYONE,
            sell_token=payload["sell_token"],
            sell_amount=int(payload["sell_amount"]),
            buy_token=payload["buy_token"],
            buy_amount=int(payload["buy_amount"]),
            creation_timestamp=int(payload["timestamp"]),
            status=OrderStatus.ACTIVE,
            retry_count=int(payload.get("retry_count", 0) or 0),
            creation_fee=int(payload.get("creation_fee", 0) or 0),
        )
        self._orders[order_id] = order
        self._log("cache_order_created", order_id=order_id)
        return CacheChange(kind=EventKind.ORDER_CREATED, order_id=order_id, order=order)

    def _on_terminal(
        self,
        kind: EventKind,
        payload: Mapping[str, Any],
        status: OrderStatus,
    ) -> Optional[CacheChange]:
        order_id = int(payload["order_id"])
        order = self._orders.get(order_id)
        if order is None:
            self._log("cache_event_unknown_order", kind=kind.value, order_id=order_id)
            return None
        if order.status.is_terminal:
            self._stats["stale_transitions"] += 1
            self._log(
                "cache_stale_transition",
                order_id=order_id,
                current=order.status.value,
                rejected=status.value,
            )
            return None

        previous = order.status
        order.status = status
        self._log("cache_order_status", order_id=order_id, status=status.value)
        return CacheChange(kind=kind, order_id=order_id, order=order, previous_status=previous)

    def _on_cleaned_up(self, payload: Mapping[str, Any]) -> Optional[CacheChange]:
        order_id = int(payload["order_id"])
        self._tombstones.add(order_id)
        removed = self._orders.pop(order_id, None)
        if removed is None:
            self._log("cache_event_unknown_order", kind=EventKind.ORDER_CLEANED_UP.value, order_id=order_id)
            return None
        self._log("cache_order_cleaned_up", order_id=order_id)
        return CacheChange(
            kind=EventKind.ORDER_CLEANED_UP,
            order_id=order_id,
            removed_ids=(order_id,),
            previous_status=removed.status,
        )

    def _on_retry(self, payload: Mapping[str, Any]) -> Optional[CacheChange]:
        old_id = int(payload["old_order_id"])
        new_id = int(payload["new_order_id"])
        retry_count = int(payload.get("retry_count", 0) or 0)

        old = self._orders.get(old_id)
        self._tombstones.add(old_id)
        if old is None:
            self._log("cache_event_unknown_order", kind=EventKind.RETRY_ORDER.value, order_id=old_id)
            return None

        # Remove and insert without yielding: readers see either both or neither
        del self._orders[old_id]
        if new_id in self._tombstones:
            reissued = None
        elif new_id in self._orders:
            reissued = self._orders[new_id]
            reissued.retry_count = retry_count
        else:
            timestamp = payload.get("timestamp")
            reissued = replace(
                old,
                id=new_id,
                creation_timestamp=int(timestamp) if timestamp is not None else old.creation_timestamp,
                retry_count=retry_count,
                status=OrderStatus.ACTIVE,
                deal_metrics=None,
            )
            self._orders[new_id] = reissued

        self._log("cache_order_retried", old_order_id=old_id, new_order_id=new_id, retry_count=retry_count)
        return CacheChange(
            kind=EventKind.RETRY_ORDER,
            order_id=new_id,
            order=reissued,
            removed_ids=(old_id,),
            previous_status=old.status,
        )

    # -------------------------------------------------------------------------
    # Direct Mutations
    # -------------------------------------------------------------------------

    def remove(self, ids: Iterable[int]) -> List[int]:
        """
        Bulk delete (e.g. several orders cleaned up in one transaction).

        Returns:
            Ids that were present and removed
        """
        removed: List[int] = []
        for order_id in ids:
            order_id = int(order_id)
            self._tombstones.add(order_id)
            if self._orders.pop(order_id, None) is not None:
                removed.append(order_id)
        if removed:
            self._version += 1
            self._log("cache_orders_removed", order_ids=removed)
        return removed

    def set_deal_metrics(self, order_id: int, metrics: Optional[DealMetrics]) -> bool:
        """Attach derived metrics; identity fields are left untouched."""
        order = self._orders.get(order_id)
        if order is None:
            return False
        order.deal_metrics = metrics
        return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, order_id: int) -> Optional[Order]:
        return self._orders.get(order_id)

    def list(self, status: Optional[OrderStatus] = None) -> List[Order]:
        """Orders sorted by id, optionally filtered by status."""
        orders = self._orders
        return [orders[k] for k in sorted(orders) if status is None or orders[k].status is status]

    def ids(self) -> List[int]:
        return sorted(self._orders)

    def tokens(self) -> Set[str]:
        """Every token address referenced by a cached order."""
        tokens: Set[str] = set()
        for order in self._orders.values():
            tokens.add(order.sell_token)
            tokens.add(order.buy_token)
        return tokens

    def counts_by_status(self) -> Dict[str, int]:
        counts = Counter(o.status.value for o in self._orders.values())
        return {s.value: counts.get(s.value, 0) for s in OrderStatus}

    def was_removed(self, order_id: int) -> bool:
        return order_id in self._tombstones

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "orders": len(self._orders),
            "tombstones": len(self._tombstones),
            "version": self._version,
        }
