"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def env_list(key: str) -> List[str]:
    raw = os.getenv(key)
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    # Ledger
    rpc_url: str
    fallback_rpc_urls: List[str]
    contract_address: str | None
    network_name: str
    # Pricing
    price_api_url: str
    price_chunk_size: int
    price_refresh_sec: float
    price_min_interval_sec: float
    extra_price_tokens: List[str]
    # Request governor
    ledger_min_interval_sec: float
    ledger_max_concurrent: int
    rate_limit_cooldown_sec: float
    max_rate_limit_retries: int
    request_max_attempts: int
    backoff_base_sec: float
    backoff_max_sec: float
    request_timeout_sec: float
    # Sync
    bulk_batch_size: int
    batch_pause_sec: float
    reconnect_base_delay_sec: float
    reconnect_max_delay_sec: float
    max_reconnect_attempts: int
    event_poll_interval_sec: float
    log_chunk_blocks: int
    metadata_ttl_sec: float
    # Ops
    metrics_port: int  # 0 disables the metrics server
    log_file: str
    log_level: str
    log_async_file: bool

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging."""
        return self.__dict__.copy()

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        cfg = cls(
            rpc_url=os.getenv("OTC_RPC_URL", "https://polygon-rpc.com"),
            fallback_rpc_urls=env_list("OTC_FALLBACK_RPC_URLS"),
            contract_address=os.getenv("OTC_CONTRACT_ADDRESS") or None,
            network_name=os.getenv("OTC_NETWORK_NAME", "Polygon"),
            price_api_url=os.getenv("OTC_PRICE_API_URL", "https://api.dexscreener.com"),
            price_chunk_size=_int_env("OTC_PRICE_CHUNK_SIZE", 30),
            price_refresh_sec=_float_env("OTC_PRICE_REFRESH_SEC", 60.0),
            price_min_interval_sec=_float_env("OTC_PRICE_MIN_INTERVAL_SEC", 0.25),
            extra_price_tokens=env_list("OTC_EXTRA_PRICE_TOKENS"),
            ledger_min_interval_sec=_float_env("OTC_LEDGER_MIN_INTERVAL_SEC", 0.2),
            ledger_max_concurrent=_int_env("OTC_LEDGER_MAX_CONCURRENT", 4),
            rate_limit_cooldown_sec=_float_env("OTC_RATE_LIMIT_COOLDOWN_SEC", 1.0),
            max_rate_limit_retries=_int_env("OTC_MAX_RATE_LIMIT_RETRIES", 5),
            request_max_attempts=_int_env("OTC_REQUEST_MAX_ATTEMPTS", 3),
            backoff_base_sec=_float_env("OTC_BACKOFF_BASE_SEC", 0.2),
            backoff_max_sec=_float_env("OTC_BACKOFF_MAX_SEC", 5.0),
            request_timeout_sec=_float_env("OTC_REQUEST_TIMEOUT_SEC", 10.0),
            bulk_batch_size=_int_env("OTC_BULK_BATCH_SIZE", 10),
            batch_pause_sec=_float_env("OTC_BATCH_PAUSE_SEC", 0.0),
            reconnect_base_delay_sec=_float_env("OTC_RECONNECT_BASE_DELAY_SEC", 1.0),
            reconnect_max_delay_sec=_float_env("OTC_RECONNECT_MAX_DELAY_SEC", 30.0),
            max_reconnect_attempts=_int_env("OTC_MAX_RECONNECT_ATTEMPTS", 5),
            event_poll_interval_sec=_float_env("OTC_EVENT_POLL_INTERVAL_SEC", 4.0),
            log_chunk_blocks=_int_env("OTC_LOG_CHUNK_BLOCKS", 2000),
            metadata_ttl_sec=_float_env("OTC_METADATA_TTL_SEC", 3600.0),
            metrics_port=_int_env("OTC_METRICS_PORT", 9095),
            log_file=os.getenv("OTC_LOG_FILE", "otc_sync.log"),
            log_level=os.getenv("OTC_LOG_LEVEL", "INFO").upper(),
            log_async_file=env_bool("OTC_LOG_ASYNC_FILE", True),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        if self.ledger_max_concurrent < 1:
            raise ValueError("OTC_LEDGER_MAX_CONCURRENT must be >= 1")
        if self.ledger_min_interval_sec < 0 or self.price_min_interval_sec < 0:
            raise ValueError("Request spacing must be >= 0")
        if self.request_max_attempts < 1:
            raise ValueError("OTC_REQUEST_MAX_ATTEMPTS must be >= 1")
        if self.max_rate_limit_retries < 0:
            raise ValueError("OTC_MAX_RATE_LIMIT_RETRIES must be >= 0")
        if self.backoff_base_sec < 0 or self.backoff_base_sec > self.backoff_max_sec:
            raise ValueError("OTC_BACKOFF_BASE_SEC must be >= 0 and <= OTC_BACKOFF_MAX_SEC")
        if self.request_timeout_sec <= 0:
            raise ValueError("OTC_REQUEST_TIMEOUT_SEC must be > 0")
        if self.bulk_batch_size < 1:
            raise ValueError("OTC_BULK_BATCH_SIZE must be >= 1")
        if self.reconnect_base_delay_sec <= 0 or self.reconnect_base_delay_sec > self.reconnect_max_delay_sec:
            raise ValueError("OTC_RECONNECT_BASE_DELAY_SEC must be > 0 and <= OTC_RECONNECT_MAX_DELAY_SEC")
        if self.max_reconnect_attempts < 0:
            raise ValueError("OTC_MAX_RECONNECT_ATTEMPTS must be >= 0")
        if self.event_poll_interval_sec <= 0:
            raise ValueError("OTC_EVENT_POLL_INTERVAL_SEC must be > 0")
        if self.log_chunk_blocks < 1:
            raise ValueError("OTC_LOG_CHUNK_BLOCKS must be >= 1")
        if not 1 <= self.price_chunk_size <= 30:
            raise ValueError("OTC_PRICE_CHUNK_SIZE must be between 1 and 30")
        if self.price_refresh_sec <= 0:
            raise ValueError("OTC_PRICE_REFRESH_SEC must be > 0")
        if self.metrics_port < 0:
            raise ValueError("OTC_METRICS_PORT must be >= 0")

        if not self.contract_address:
            import logging
            logging.getLogger("otc_sync").warning(
                "WARNING: OTC_CONTRACT_ADDRESS not set. "
                "The engine cannot connect to the ledger without it."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    import logging
    import json

    logger = logging.getLogger("otc_sync")
    payload = {
        "event": "config_loaded",
        "network": cfg.network_name,
        "rpc_url": cfg.rpc_url,
        "fallback_rpc_urls": len(cfg.fallback_rpc_urls),
        "contract_address": cfg.contract_address,
        "ledger_min_interval_sec": cfg.ledger_min_interval_sec,
        "ledger_max_concurrent": cfg.ledger_max_concurrent,
        "bulk_batch_size": cfg.bulk_batch_size,
    }
    logger.info(json.dumps(payload))
