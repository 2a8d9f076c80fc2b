"""
ERC-20 metadata cache (decimals, symbol, name).

Reads go through the ledger gateway and therefore through its governor.
Lookups used while computing deal metrics are synchronous and never
touch the network; ``ensure`` must be awaited first for new tokens.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

log = logging.getLogger("otc_sync")

MetadataReader = Callable[[str], Awaitable[Tuple[int, str, str]]]


@dataclass(frozen=True)
class TokenMetadata:
    address: str
    decimals: int
    symbol: str
    name: str
    fetched_at: float = field(default_factory=time.time, compare=False)
    is_fallback: bool = False


FALLBACK_DECIMALS = 18
FALLBACK_SYMBOL = "UNKNOWN"
FALLBACK_NAME = "Unknown Token"

# Polygon tokens whose metadata is known without a read
KNOWN_TOKENS: Dict[str, Tuple[int, str, str]] = {
    "0x1bfd67037b42cf73acf2047067bd4f2c47d9bfd6": (8, "WBTC", "Wrapped Bitcoin"),
    "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359": (6, "USDC", "USD Coin"),
    "0xc2132d05d31c914a87c6611c10748aeb04b58e8f": (6, "USDT", "Tether USD"),
    "0x693ed886545970f0a3adf8c59af5ccdb6ddf0a76": (18, "LIB", "Liberdus"),
    "0x7ceb23fd6bc0add59e62ac25578270cff1b9f619": (18, "WETH", "Wrapped Ether"),
    "0x0d500b1d8e8ef31e21c99d1db9a6444d3adf1270": (18, "WPOL", "Wrapped Polygon Ecosystem Token"),
}


def fallback_metadata(address: str) -> TokenMetadata:
    return TokenMetadata(
        address=address.lower(),
        decimals=FALLBACK_DECIMALS,
        symbol=FALLBACK_SYMBOL,
        name=FALLBACK_NAME,
        is_fallback=True,
    )


class TokenMetadataCache:
    """
    TTL cache of token metadata.

    Usage:
        metadata = TokenMetadataCache(gateway.read_token_metadata, ttl_sec=3600)
        await metadata.ensure(cache.tokens())
        metadata.decimals(order.sell_token)
    """

    def __init__(
        self,
        reader: Optional[MetadataReader] = None,
        ttl_sec: float = 3600.0,
        known: Optional[Dict[str, Tuple[int, str, str]]] = None,
        clock: Callable[[], float] = time.time,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._reader = reader
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._log_event = log_event or self._default_log
        self._entries: Dict[str, TokenMetadata] = {}
        self._known = {k.lower(): v for k, v in (KNOWN_TOKENS if known is None else known).items()}

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event == "token_metadata_fallback" else logging.DEBUG
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    def _fresh(self, entry: Optional[TokenMetadata]) -> bool:
        return entry is not None and self._clock() - entry.fetched_at < self.ttl_sec

    def get(self, token: str) -> TokenMetadata:
        """Cached metadata, known metadata, or the fallback. Never reads."""
        key = token.lower()
        entry = self._entries.get(key)
        if entry is not None:
            return entry
        if key in self._known:
            decimals, symbol, name = self._known[key]
            return TokenMetadata(address=key, decimals=decimals, symbol=symbol, name=name)
        return fallback_metadata(key)

    def decimals(self, token: str) -> int:
        return self.get(token).decimals

    async def ensure(self, tokens: Iterable[str]) -> None:
        """Read metadata for tokens that are neither known nor freshly cached."""
        missing = sorted({t.lower() for t in tokens} - set(self._known))
        missing = [t for t in missing if not self._fresh(self._entries.get(t))]
        if not missing or self._reader is None:
            return
        entries = await asyncio.gather(*(self._read(t) for t in missing))
        for entry in entries:
            self._entries[entry.address] = entry

    async def _read(self, token: str) -> TokenMetadata:
        try:
            decimals, symbol, name = await self._reader(token)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log_event("token_metadata_fallback", token=token, err=str(exc) or type(exc).__name__)
            return TokenMetadata(
                address=token,
                decimals=FALLBACK_DECIMALS,
                symbol=FALLBACK_SYMBOL,
                name=FALLBACK_NAME,
                fetched_at=self._clock(),
                is_fallback=True,
            )
        self._log_event("token_metadata_loaded", token=token, symbol=symbol, decimals=decimals)
        return TokenMetadata(address=token, decimals=int(decimals), symbol=symbol, name=name, fetched_at=self._clock())

    def __len__(self) -> int:
        return len(self._entries)
