"""
OrderSyncEngine: the facade the UI layer talks to.

The engine owns the wiring between components:

    - ConnectionSupervisor: connect, bulk resync, live feed, reconnects
    - OrderCache: the order records
    - DealMetricsCalculator + PriceFeed + TokenMetadataCache: valuation
    - SubscriptionHub: change notifications to consumers

Consumers only read through the query methods and listen through
``subscribe``; nothing outside the engine mutates the cache.

Usage:
    engine = build_engine(settings)
    engine.subscribe("order-filled", on_filled)
    await engine.start()
    for order in engine.get_orders(OrderStatus.ACTIVE):
        if engine.can_fill_order(order, account):
            ...
    await engine.stop()
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING, Union

from otc_sync.core.subscription_hub import Callback, EventName, HubEvent, SubscriptionHub
from otc_sync.ledger.events import EventKind
from otc_sync.orchestrator.connection_supervisor import (
    ConnectionState,
    ConnectionSupervisor,
    SupervisorConfig,
    SyncReport,
)
from otc_sync.orders import order_rules
from otc_sync.orders.models import LedgerConstants, Order, OrderStatus
from otc_sync.orders.order_cache import OrderCache
from otc_sync.pricing.deal_metrics import DealMetricsCalculator
from otc_sync.pricing.price_feed import PriceFeed, PriceFeedEvent
from otc_sync.pricing.token_metadata import TokenMetadataCache

if TYPE_CHECKING:
    from otc_sync.ledger.gateway import LedgerGateway
    from otc_sync.monitoring.sync_metrics import SyncMetrics

log = logging.getLogger("otc_sync")

_HUB_EVENTS: Dict[EventKind, HubEvent] = {
    EventKind.ORDER_CREATED: HubEvent.ORDER_CREATED,
    EventKind.ORDER_FILLED: HubEvent.ORDER_FILLED,
    EventKind.ORDER_CANCELED: HubEvent.ORDER_CANCELED,
    EventKind.ORDER_CLEANED_UP: HubEvent.ORDER_CLEANED_UP,
    EventKind.RETRY_ORDER: HubEvent.ORDER_RETRIED,
    EventKind.CLEANUP_FEES_DISTRIBUTED: HubEvent.CLEANUP_FEES_DISTRIBUTED,
    EventKind.CLEANUP_ERROR: HubEvent.CLEANUP_ERROR,
}


@dataclass
class CleanupSummary:
    """Orders the next cleanup call would process and the fees it would pay out."""
    order_ids: List[int] = field(default_factory=list)
    reward: int = 0

    @property
    def ready(self) -> int:
        return len(self.order_ids)


class OrderSyncEngine:
    """Public interface of the order sync engine."""

    def __init__(
        self,
        gateway: "LedgerGateway",
        cache: Optional[OrderCache] = None,
        hub: Optional[SubscriptionHub] = None,
        price_feed: Optional[PriceFeed] = None,
        token_metadata: Optional[TokenMetadataCache] = None,
        calculator: Optional[DealMetricsCalculator] = None,
        supervisor_config: Optional[SupervisorConfig] = None,
        log_event: Optional[Callable[..., None]] = None,
        metrics: Optional["SyncMetrics"] = None,
    ) -> None:
        self.gateway = gateway
        self.cache = cache if cache is not None else OrderCache()
        self.hub = hub if hub is not None else SubscriptionHub()
        self.price_feed = price_feed
        if token_metadata is None:
            token_metadata = TokenMetadataCache(gateway.read_token_metadata)
        self.token_metadata = token_metadata
        self.calculator = calculator if calculator is not None else DealMetricsCalculator(token_metadata)
        self._log_event = log_event or self._default_log
        self._metrics = metrics

        self.supervisor = ConnectionSupervisor(
            gateway,
            self.cache,
            self.hub,
            supervisor_config,
            on_snapshot=self._on_snapshot,
            on_event=self._on_live_event,
            metrics=metrics,
        )
        if self.price_feed is not None:
            if self.price_feed.token_source is None:
                self.price_feed.token_source = self.cache.tokens
            self.price_feed.add_listener(self._on_price_event)

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.INFO if event in ("engine_started", "engine_stopped") else logging.DEBUG
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        await self.supervisor.start()
        self._log_event("engine_started")

    async def stop(self) -> None:
        await self.supervisor.stop()
        if self.price_feed is not None:
            await self.price_feed.stop()
        await self.gateway.close()
        await self.hub.drain()
        self._log_event("engine_stopped", orders=len(self.cache))

    @property
    def state(self) -> ConnectionState:
        return self.supervisor.state

    @property
    def constants(self) -> Optional[LedgerConstants]:
        return self.gateway.constants

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, event_name: EventName, callback: Callback) -> Callback:
        return self.hub.subscribe(event_name, callback)

    def unsubscribe(self, event_name: EventName, callback: Callback) -> bool:
        return self.hub.unsubscribe(event_name, callback)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_orders(self, status: Optional[Union[OrderStatus, str]] = None) -> List[Order]:
        """Cached orders sorted by id, with deal metrics attached."""
        if isinstance(status, str):
            status = OrderStatus(status)
        return self.cache.list(status)

    def get_order(self, order_id: int) -> Optional[Order]:
        return self.cache.get(order_id)

    def can_fill_order(self, order: Order, account: Optional[str], now: Optional[float] = None) -> bool:
        constants = self.constants
        if constants is None:
            return False
        return order_rules.can_fill_order(order, account, constants, now)

    def can_cancel_order(self, order: Order, account: Optional[str], now: Optional[float] = None) -> bool:
        constants = self.constants
        if constants is None:
            return False
        return order_rules.can_cancel_order(order, account, constants, now)

    def get_order_status(self, order: Order, now: Optional[float] = None) -> str:
        constants = self.constants
        if constants is None:
            return order.status.value
        return order_rules.get_order_status(order, constants, now)

    def time_left(self, order: Order, now: Optional[float] = None) -> Optional[str]:
        constants = self.constants
        if constants is None:
            return None
        return order_rules.format_time_left(order, constants, now)

    def cleanup_summary(self, now: Optional[float] = None) -> CleanupSummary:
        constants = self.constants
        if constants is None:
            return CleanupSummary()
        ready = order_rules.cleanup_candidates(self.cache.list(), constants, now)
        return CleanupSummary(order_ids=[o.id for o in ready], reward=order_rules.cleanup_reward(ready))

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def remove_orders(self, order_ids: Iterable[int]) -> List[int]:
        """Drop orders known to be gone (e.g. after a local cleanup transaction)."""
        removed = self.cache.remove(order_ids)
        if removed:
            self._update_cache_gauges()
            self.hub.publish(HubEvent.ORDERS_UPDATED, {"reason": "removed", "order_ids": removed})
        return removed

    async def refresh_prices(self) -> bool:
        if self.price_feed is None:
            return False
        result = await self.price_feed.refresh()
        return result.success

    def recompute_deal_metrics(self, orders: Optional[Iterable[Order]] = None) -> int:
        """Recompute and attach deal metrics; returns how many orders were updated."""
        count = 0
        for order in self.cache.list() if orders is None else orders:
            if self._attach_metrics(order):
                count += 1
        return count

    def _attach_metrics(self, order: Order) -> bool:
        if self.price_feed is not None:
            price_of = self.price_feed.get_price
            price_timestamp = self.price_feed.last_update
        else:
            price_of, price_timestamp = (lambda token: None), None
        metrics = self.calculator.compute(order, price_of, price_timestamp=price_timestamp)
        return self.cache.set_deal_metrics(order.id, metrics)

    # -------------------------------------------------------------------------
    # Component Callbacks
    # -------------------------------------------------------------------------

    async def _on_snapshot(self, report: SyncReport) -> None:
        await self.token_metadata.ensure(self.cache.tokens())
        updated = self.recompute_deal_metrics()
        self._update_cache_gauges()
        self._log_event("engine_snapshot", orders=report.order_count, metrics_attached=updated)
        if self.price_feed is not None:
            await self.price_feed.start()

    async def _on_live_event(self, kind: EventKind, payload: Dict[str, Any]) -> None:
        if not kind.mutates_cache:
            if self._metrics:
                self._metrics.live_events.labels(kind=kind.value, applied="forwarded").inc()
            self.hub.publish(_HUB_EVENTS[kind], payload)
            return

        change = self.cache.apply_event(kind, payload)
        if self._metrics:
            self._metrics.live_events.labels(kind=kind.value, applied=str(change is not None).lower()).inc()
        if change is None:
            return

        if change.order is not None:
            await self.token_metadata.ensure([change.order.sell_token, change.order.buy_token])
            self._attach_metrics(change.order)
        self._update_cache_gauges()
        self._log_event("engine_live_change", kind=kind.value, order_id=change.order_id)
        self.hub.publish(_HUB_EVENTS[kind], change)

    def _on_price_event(self, event: PriceFeedEvent, data: Any) -> None:
        if event is not PriceFeedEvent.REFRESH_COMPLETE:
            return
        updated = self.recompute_deal_metrics()
        self.hub.publish(HubEvent.ORDERS_UPDATED, {
            "reason": "prices",
            "count": updated,
            "timestamp": self.price_feed.last_update if self.price_feed else time.time(),
        })

    def _update_cache_gauges(self) -> None:
        if not self._metrics:
            return
        for status, count in self.cache.counts_by_status().items():
            self._metrics.cached_orders.labels(status=status).set(count)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "supervisor": self.supervisor.get_stats(),
            "cache": self.cache.get_stats(),
            "hub": self.hub.get_stats(),
            "ledger_governor": self.gateway.governor.get_stats(),
            "price_governor": self.price_feed.governor.get_stats() if self.price_feed else None,
        }
