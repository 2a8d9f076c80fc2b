"""
EngineFactory: explicit construction of a fully wired OrderSyncEngine.

Every component is created here and passed in; nothing is a module
global, so tests can swap any piece through ``EngineDependencies``.

Usage:
    from otc_sync.engine_factory import build_engine

    engine = build_engine(Settings.load())
    await engine.start()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, TYPE_CHECKING

import httpx

from otc_sync.core.subscription_hub import SubscriptionHub
from otc_sync.engine import OrderSyncEngine
from otc_sync.infra.request_governor import GovernorConfig, RequestGovernor
from otc_sync.ledger.gateway import GatewayConfig, LedgerGateway, Web3Factory
from otc_sync.monitoring.sync_metrics import SyncMetrics
from otc_sync.orchestrator.connection_supervisor import SupervisorConfig
from otc_sync.orders.order_cache import OrderCache
from otc_sync.pricing.price_feed import PriceFeed, PriceFeedConfig
from otc_sync.pricing.token_metadata import TokenMetadataCache

if TYPE_CHECKING:
    from otc_sync.config.config import Settings


@dataclass
class EngineDependencies:
    """Optional overrides; anything left as None is built from Settings."""
    metrics: Optional[SyncMetrics] = None
    web3_factory: Optional[Web3Factory] = None
    http_client: Optional[httpx.AsyncClient] = None
    hub: Optional[SubscriptionHub] = None
    cache: Optional[OrderCache] = None


def ledger_governor_config(cfg: "Settings") -> GovernorConfig:
    return GovernorConfig(
        name="ledger",
        min_interval_sec=cfg.ledger_min_interval_sec,
        max_concurrent=cfg.ledger_max_concurrent,
        rate_limit_cooldown_sec=cfg.rate_limit_cooldown_sec,
        max_rate_limit_retries=cfg.max_rate_limit_retries,
        max_attempts=cfg.request_max_attempts,
        backoff_base_sec=cfg.backoff_base_sec,
        backoff_max_sec=cfg.backoff_max_sec,
        timeout_sec=cfg.request_timeout_sec,
    )


def price_governor_config(cfg: "Settings") -> GovernorConfig:
    return GovernorConfig(
        name="prices",
        min_interval_sec=cfg.price_min_interval_sec,
        max_concurrent=1,
        rate_limit_cooldown_sec=cfg.rate_limit_cooldown_sec,
        max_rate_limit_retries=cfg.max_rate_limit_retries,
        max_attempts=cfg.request_max_attempts,
        backoff_base_sec=cfg.backoff_base_sec,
        backoff_max_sec=cfg.backoff_max_sec,
        timeout_sec=cfg.request_timeout_sec,
    )


def build_engine(cfg: "Settings", deps: Optional[EngineDependencies] = None) -> OrderSyncEngine:
    """Wire governor, gateway, cache, hub, pricing and supervisor from ``cfg``."""
    deps = deps or EngineDependencies()
    metrics = deps.metrics if deps.metrics is not None else SyncMetrics()

    gateway = LedgerGateway(
        GatewayConfig(
            rpc_url=cfg.rpc_url,
            fallback_rpc_urls=list(cfg.fallback_rpc_urls),
            contract_address=cfg.contract_address,
            batch_pause_sec=cfg.batch_pause_sec,
            event_poll_interval_sec=cfg.event_poll_interval_sec,
            log_chunk_blocks=cfg.log_chunk_blocks,
        ),
        RequestGovernor(ledger_governor_config(cfg), metrics=metrics),
        web3_factory=deps.web3_factory,
        metrics=metrics,
    )

    price_feed = PriceFeed(
        PriceFeedConfig(
            base_url=cfg.price_api_url,
            chunk_size=cfg.price_chunk_size,
            refresh_interval_sec=cfg.price_refresh_sec,
            min_interval_sec=cfg.price_min_interval_sec,
            timeout_sec=cfg.request_timeout_sec,
            extra_tokens=list(cfg.extra_price_tokens),
        ),
        governor=RequestGovernor(price_governor_config(cfg), metrics=metrics),
        client=deps.http_client,
        metrics=metrics,
    )

    return OrderSyncEngine(
        gateway,
        cache=deps.cache,
        hub=deps.hub,
        price_feed=price_feed,
        token_metadata=TokenMetadataCache(gateway.read_token_metadata, ttl_sec=cfg.metadata_ttl_sec),
        supervisor_config=SupervisorConfig(
            batch_size=cfg.bulk_batch_size,
            reconnect_base_delay_sec=cfg.reconnect_base_delay_sec,
            reconnect_max_delay_sec=cfg.reconnect_max_delay_sec,
            max_reconnect_attempts=cfg.max_reconnect_attempts,
        ),
        metrics=metrics,
    )


def engine_status(engine: OrderSyncEngine) -> dict[str, Any]:
    """Snapshot used by the /status endpoint and the operator script."""
    summary = engine.cleanup_summary()
    constants = engine.constants
    report = engine.supervisor.last_report
    return {
        "state": engine.state.value,
        "orders": engine.cache.counts_by_status(),
        "constants": {
            "order_expiry_sec": constants.order_expiry_seconds,
            "grace_period_sec": constants.grace_period_seconds,
        } if constants else None,
        "last_sync": report.to_dict() if report else None,
        "cleanup": {"ready": summary.ready, "reward": summary.reward},
        "prices_updated": engine.price_feed.last_update if engine.price_feed else None,
        "stats": engine.get_stats(),
    }
