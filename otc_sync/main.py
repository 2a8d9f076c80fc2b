"""
Entry point: run the order sync engine until interrupted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys

from otc_sync.config.config import Settings
from otc_sync.core.subscription_hub import HubEvent
from otc_sync.engine_factory import EngineDependencies, build_engine, engine_status
from otc_sync.infra.logging_cfg import build_logger
from otc_sync.monitoring.metrics_server import start_metrics_server
from otc_sync.monitoring.sync_metrics import SyncMetrics

log = logging.getLogger("otc_sync")


async def main() -> None:
    cfg = Settings.load()
    build_logger(
        "otc_sync",
        level=getattr(logging, cfg.log_level, logging.INFO),
        file_path=cfg.log_file or None,
        async_file=cfg.log_async_file,
    )

    metrics = SyncMetrics()
    engine = build_engine(cfg, EngineDependencies(metrics=metrics))

    def on_sync_complete(report) -> None:
        log.info(json.dumps({"event": "sync_complete", **report.to_dict()}, default=str))

    def on_connection_error(payload) -> None:
        log.error(json.dumps({"event": "connection_failed", **payload}, default=str))
        stop_event.set()

    stop_event = asyncio.Event()
    engine.subscribe(HubEvent.SYNC_COMPLETE, on_sync_complete)
    engine.subscribe(HubEvent.CONNECTION_ERROR, on_connection_error)

    srv = None
    if cfg.metrics_port:
        srv = await start_metrics_server(
            metrics,
            cfg.metrics_port,
            status_provider=lambda: engine_status(engine),
            state_provider=lambda: engine.state.value,
        )

    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    log.info(json.dumps({"event": "startup", "network": cfg.network_name, "contract": cfg.contract_address}))
    await engine.start()
    try:
        await stop_event.wait()
    except (asyncio.CancelledError, KeyboardInterrupt):
        log.info("Shutdown signal received, cleaning up...")
    finally:
        log.info("Stopping engine and servers...")
        await engine.stop()
        if srv is not None:
            srv.close()
            await srv.wait_closed()
        log.info("Shutdown complete")


def main_cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nEngine stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    main_cli()
