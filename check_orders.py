"""Snapshot the escrow contract's orders once and print a summary."""
import asyncio
import logging

from otc_sync.config.config import Settings
from otc_sync.engine_factory import ledger_governor_config
from otc_sync.infra.logging_cfg import build_logger
from otc_sync.infra.request_governor import RequestGovernor
from otc_sync.ledger.gateway import GatewayConfig, LedgerGateway
from otc_sync.orders.order_cache import OrderCache
from otc_sync.orders.order_rules import cleanup_candidates, cleanup_reward, get_order_status


async def main() -> None:
    cfg = Settings.load()
    build_logger("otc_sync", level=logging.WARNING, file_path=None)

    gateway = LedgerGateway(
        GatewayConfig(
            rpc_url=cfg.rpc_url,
            fallback_rpc_urls=cfg.fallback_rpc_urls,
            contract_address=cfg.contract_address,
            batch_pause_sec=cfg.batch_pause_sec,
        ),
        RequestGovernor(ledger_governor_config(cfg)),
    )
    await gateway.connect()
    try:
        constants = await gateway.fetch_constants()
        first, nxt = await gateway.order_id_range()
        result = await gateway.bulk_load(first, nxt, cfg.bulk_batch_size)
    finally:
        await gateway.close()

    cache = OrderCache()
    cache.replace_all(result.orders)

    print(f"Network: {cfg.network_name} via {gateway.rpc_url}")
    print(f"Order ids: [{first}, {nxt})  loaded={len(cache)} empty={len(result.empty_ids)} failed={len(result.failed_ids)}")
    if result.failed_ids:
        print(f"  failed ids: {result.failed_ids}")
    print(f"Order expiry: {constants.order_expiry_seconds}s, grace period: {constants.grace_period_seconds}s")

    shown = {}
    for order in cache.list():
        label = get_order_status(order, constants)
        shown[label] = shown.get(label, 0) + 1
    print("\nOrders by status:")
    for label, n in sorted(shown.items()):
        print(f"  {label}: {n}")

    ready = cleanup_candidates(cache.list(), constants)
    print(f"\nCleanup ready: {len(ready)} orders, reward {cleanup_reward(ready)} wei")


if __name__ == "__main__":
    asyncio.run(main())
