"""
USD price feed backed by the DexScreener token endpoint.

Prices are keyed by lowercase token address. A refresh replaces the whole
map; tokens without a market price are reported as estimated and valued
at the neutral price by DealMetricsCalculator.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

import httpx

from otc_sync.infra.request_governor import GovernorConfig, RequestGovernor

if TYPE_CHECKING:
    from otc_sync.monitoring.sync_metrics import SyncMetrics

log = logging.getLogger("otc_sync")


class PriceFeedEvent(str, Enum):
    REFRESH_START = "refresh-start"
    REFRESH_COMPLETE = "refresh-complete"
    REFRESH_ERROR = "refresh-error"


PriceListener = Callable[[PriceFeedEvent, Any], None]


@dataclass
class PriceFeedConfig:
    """Configuration for PriceFeed."""
    base_url: str = "https://api.dexscreener.com"
    chunk_size: int = 30                 # addresses per request (endpoint limit)
    refresh_interval_sec: float = 60.0
    min_interval_sec: float = 0.25       # stays under 300 requests/minute
    timeout_sec: float = 10.0
    extra_tokens: List[str] = field(default_factory=list)


@dataclass
class RefreshResult:
    success: bool
    message: str
    priced: int = 0


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _liquidity(pair: Dict[str, Any]) -> float:
    try:
        return float((pair.get("liquidity") or {}).get("usd") or 0)
    except (TypeError, ValueError):
        return 0.0


def extract_prices(pairs: Iterable[Dict[str, Any]], prices: Dict[str, Decimal]) -> None:
    """
    Fill ``prices`` from DexScreener pairs, most liquid pair first.

    The base token takes ``priceUsd``; the quote token is derived as
    ``base_price / priceNative``. Tokens already priced are left alone.
    """
    for pair in sorted(pairs, key=_liquidity, reverse=True):
        try:
            base = pair["baseToken"]["address"].lower()
            quote = pair["quoteToken"]["address"].lower()
        except (KeyError, TypeError, AttributeError):
            continue
        price_usd = _to_decimal(pair.get("priceUsd"))
        if price_usd is None:
            continue
        prices.setdefault(base, price_usd)
        if quote not in prices:
            native = _to_decimal(pair.get("priceNative"))
            if native:
                prices[quote] = prices[base] / native


class PriceFeed:
    """
    Periodically refreshed token prices.

    Usage:
        feed = PriceFeed(PriceFeedConfig(), token_source=cache.tokens)
        feed.add_listener(on_price_event)
        await feed.refresh()
        feed.get_price(token)          # Decimal or None
        await feed.start()             # background refresh loop
        await feed.stop()
    """

    def __init__(
        self,
        config: Optional[PriceFeedConfig] = None,
        governor: Optional[RequestGovernor] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_source: Optional[Callable[[], Iterable[str]]] = None,
        log_event: Optional[Callable[..., None]] = None,
        metrics: Optional["SyncMetrics"] = None,
    ) -> None:
        self.config = config or PriceFeedConfig()
        self._log_event = log_event or self._default_log
        self._metrics = metrics
        self.governor = governor or RequestGovernor(
            GovernorConfig(
                name="prices",
                min_interval_sec=self.config.min_interval_sec,
                max_concurrent=1,
                timeout_sec=self.config.timeout_sec,
            ),
            log_event=self._log_event,
            metrics=metrics,
        )
        # A shared client passed in is not closed by stop(); an owned one is
        # built on first use and rebuilt once stop() has closed it
        self._client = client
        self._owns_client = client is None
        self._transport = transport
        self.token_source = token_source

        self._prices: Dict[str, Decimal] = {}
        self._last_update: Optional[float] = None
        self._listeners: List[PriceListener] = []
        self._refresh_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._owns_client and (self._client is None or self._client.is_closed):
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                http2=True,
                timeout=self.config.timeout_sec,
                transport=self._transport,
            )
        return self._client

    def _default_log(self, event: str, **kwargs: Any) -> None:
        if event in ("price_refresh_error", "price_listener_error"):
            level = logging.ERROR
        elif event in ("price_chunk_error", "price_token_error", "governor_retry", "governor_rate_limited"):
            level = logging.WARNING
        elif event == "price_refresh_complete":
            level = logging.INFO
        else:
            level = logging.DEBUG
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, listener: PriceListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: PriceListener) -> bool:
        if listener not in self._listeners:
            return False
        self._listeners.remove(listener)
        return True

    def _notify(self, event: PriceFeedEvent, data: Any = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception as exc:
                self._log_event("price_listener_error", feed_event=event.value, err=str(exc))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_price(self, token: str) -> Optional[Decimal]:
        """USD price of ``token``, or None when no market price is known."""
        return self._prices.get(token.lower())

    def is_price_estimated(self, token: str) -> bool:
        return token.lower() not in self._prices

    @property
    def last_update(self) -> Optional[float]:
        return self._last_update

    @property
    def prices(self) -> Dict[str, Decimal]:
        return dict(self._prices)

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    def _tokens_to_price(self, tokens: Optional[Iterable[str]]) -> List[str]:
        wanted = set()
        if tokens is None and self.token_source is not None:
            tokens = self.token_source()
        for token in tokens or ():
            wanted.add(token.lower())
        for token in self.config.extra_tokens:
            wanted.add(token.lower())
        return sorted(wanted)

    async def refresh(self, tokens: Optional[Iterable[str]] = None) -> RefreshResult:
        """
        Refresh prices for ``tokens`` (default: the token source plus extra tokens).

        A call made while a refresh is running waits for that refresh.
        """
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._do_refresh(self._tokens_to_price(tokens)))
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _do_refresh(self, tokens: List[str]) -> RefreshResult:
        if not tokens:
            self._log_event("price_refresh_skipped", reason="no_tokens")
            return RefreshResult(success=True, message="No tokens to update")

        self._notify(PriceFeedEvent.REFRESH_START)
        started = time.time()
        try:
            prices = await self.fetch_prices(tokens)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log_event("price_refresh_error", tokens=len(tokens), err=str(exc) or type(exc).__name__)
            self._count_refresh("error")
            self._notify(PriceFeedEvent.REFRESH_ERROR, exc)
            return RefreshResult(success=False, message="Failed to update prices")

        self._prices = prices
        self._last_update = time.time()
        self._count_refresh("ok")
        if self._metrics:
            self._metrics.priced_tokens.set(len(prices))
        self._log_event(
            "price_refresh_complete",
            tokens=len(tokens),
            priced=len(prices),
            duration_ms=round((self._last_update - started) * 1000, 1),
        )
        self._notify(PriceFeedEvent.REFRESH_COMPLETE, len(prices))
        return RefreshResult(success=True, message="Prices updated successfully", priced=len(prices))

    def _count_refresh(self, outcome: str) -> None:
        if self._metrics:
            self._metrics.price_refreshes.labels(outcome=outcome).inc()

    async def fetch_prices(self, tokens: List[str]) -> Dict[str, Decimal]:
        """
        Fetch prices in chunks, then individually for tokens still missing.

        Raises the last request error if every request failed.
        """
        prices: Dict[str, Decimal] = {}
        requests = 0
        errors: List[BaseException] = []

        size = max(1, self.config.chunk_size)
        for i in range(0, len(tokens), size):
            chunk = tokens[i:i + size]
            requests += 1
            try:
                extract_prices(await self._fetch_pairs(chunk), prices)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                errors.append(exc)
                self._log_event("price_chunk_error", label="chunk", tokens=len(chunk), err=str(exc))

        for token in [t for t in tokens if t not in prices]:
            requests += 1
            try:
                extract_prices(await self._fetch_pairs([token]), prices)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                errors.append(exc)
                self._log_event("price_token_error", token=token, err=str(exc))

        if errors and len(errors) == requests:
            raise errors[-1]
        return prices

    async def _fetch_pairs(self, tokens: List[str]) -> List[Dict[str, Any]]:
        path = "/latest/dex/tokens/" + ",".join(tokens)

        async def op() -> Any:
            resp = await self.client.get(path)
            resp.raise_for_status()
            return resp.json()

        data = await self.governor.enqueue(op, label="dexscreener")
        pairs = data.get("pairs") if isinstance(data, dict) else None
        return pairs or []

    # -------------------------------------------------------------------------
    # Background Refresh
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._refresh_loop(), name="price-feed-refresh")

    async def _refresh_loop(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.config.refresh_interval_sec)

    async def stop(self) -> None:
        for task in (self._loop_task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._loop_task = None
        self._refresh_task = None
        if self._owns_client and self._client is not None:
            client, self._client = self._client, None
            await client.aclose()
