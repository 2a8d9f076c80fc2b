"""
Prometheus metrics for the order sync engine.

Organized into: requests, sync, live events, cache, pricing.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class SyncMetrics:
    """Engine metrics on a private registry (safe to build many times in tests)."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Request Metrics ===
        self.governor_requests = Counter(
            'governor_requests_total',
            'Outbound requests completed by the governor',
            labelnames=['governor', 'outcome'],
            registry=reg
        )
        self.governor_rate_limited = Counter(
            'governor_rate_limited_total',
            'Rate-limit responses absorbed by cooldown retries',
            labelnames=['governor'],
            registry=reg
        )

        # === Sync Metrics ===
        self.resyncs = Counter(
            'resyncs_total',
            'Bulk resync attempts',
            labelnames=['outcome'],
            registry=reg
        )
        self.resync_duration_sec = Histogram(
            'resync_duration_sec',
            'Bulk resync duration (seconds)',
            buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
            registry=reg
        )
        self.skipped_ids = Counter(
            'bulk_load_skipped_ids_total',
            'Order ids skipped during bulk load',
            labelnames=['reason'],
            registry=reg
        )
        self.connection_state = Gauge(
            'connection_state',
            'Current connection state (1 for the active state)',
            labelnames=['state'],
            registry=reg
        )
        self.reconnect_attempts = Counter(
            'reconnect_attempts_total',
            'Reconnection attempts',
            registry=reg
        )

        # === Live Event Metrics ===
        self.live_events = Counter(
            'live_events_total',
            'Live ledger events received',
            labelnames=['kind', 'applied'],
            registry=reg
        )

        # === Cache Metrics ===
        self.cached_orders = Gauge(
            'cached_orders',
            'Orders held in the cache',
            labelnames=['status'],
            registry=reg
        )

        # === Pricing Metrics ===
        self.price_refreshes = Counter(
            'price_refreshes_total',
            'Price feed refreshes',
            labelnames=['outcome'],
            registry=reg
        )
        self.priced_tokens = Gauge(
            'priced_tokens',
            'Tokens with a known market price',
            registry=reg
        )

    def set_connection_state(self, state_name: str, all_states) -> None:
        for name in all_states:
            self.connection_state.labels(state=name).set(1 if name == state_name else 0)
