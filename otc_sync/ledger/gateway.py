"""
LedgerGateway: typed reads and the live event feed of the escrow contract.

Every RPC call goes through the RequestGovernor. Contract-level failures
(reverts, empty return data) are classified as permanent so the governor
does not retry them; transport failures are retried by the governor and,
once its budget is spent, surface to the caller of the individual read.

Live events:
    The feed polls contract logs from a block cursor, decodes them against
    the ABI and hands them to the handler in (block, log index) order. A
    poll that still fails after the governor's retries ends the feed and
    reports the error through ``on_disconnect``.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING, Union

from eth_utils import event_abi_to_log_topic, to_checksum_address, to_hex
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from otc_sync.infra.request_governor import PermanentRequestError, RequestGovernor
from otc_sync.ledger.abi import ERC20_METADATA_ABI, OTC_SWAP_ABI, event_abis
from otc_sync.ledger.events import EventKind, normalize_event_args
from otc_sync.orders.models import LedgerConstants, Order, is_zero_address

if TYPE_CHECKING:
    from otc_sync.monitoring.sync_metrics import SyncMetrics

log = logging.getLogger("otc_sync")

LiveHandler = Callable[[EventKind, Dict[str, Any]], Union[None, Awaitable[None]]]
DisconnectHandler = Callable[[BaseException], Union[None, Awaitable[None]]]
Web3Factory = Callable[[str], Any]


class LedgerUnavailableError(Exception):
    """Fatal setup error: no contract configured or no reachable RPC endpoint."""


class ContractCallError(PermanentRequestError):
    """A contract call reverted or returned no data."""


def _default_web3_factory(url: str) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(url))


@dataclass
class GatewayConfig:
    """Configuration for LedgerGateway."""
    rpc_url: str = ""
    fallback_rpc_urls: List[str] = field(default_factory=list)
    contract_address: Optional[str] = None

    # Bulk load
    batch_pause_sec: float = 0.0

    # Live feed
    event_poll_interval_sec: float = 4.0
    log_chunk_blocks: int = 2000


@dataclass
class BulkLoadResult:
    """Outcome of reading an id range."""
    orders: List[Order]
    range_start: int
    range_end: int
    empty_ids: List[int] = field(default_factory=list)   # never-created / deleted slots
    failed_ids: List[int] = field(default_factory=list)  # reads that failed after retries
    duration_ms: float = 0.0

    @property
    def partial(self) -> bool:
        return bool(self.failed_ids)


class LedgerGateway:
    """
    Connection to the escrow contract.

    Usage:
        gateway = LedgerGateway(GatewayConfig(rpc_url=..., contract_address=...), governor)
        await gateway.connect()
        constants = await gateway.fetch_constants()
        first, nxt = await gateway.order_id_range()
        result = await gateway.bulk_load(first, nxt, batch_size=10)
        await gateway.subscribe_live_events(handler, on_disconnect=on_lost)
    """

    def __init__(
        self,
        config: GatewayConfig,
        governor: RequestGovernor,
        web3_factory: Optional[Web3Factory] = None,
        log_event: Optional[Callable[..., None]] = None,
        metrics: Optional["SyncMetrics"] = None,
    ) -> None:
        self.config = config
        self.governor = governor
        self._web3_factory = web3_factory or _default_web3_factory
        self._log_event = log_event or self._default_log
        self._metrics = metrics

        self._w3: Any = None
        self._contract: Any = None
        self._rpc_url: Optional[str] = None
        self._constants: Optional[LedgerConstants] = None

        self._topics: Dict[bytes, EventKind] = {
            bytes(event_abi_to_log_topic(abi)): EventKind(name)
            for name, abi in event_abis(OTC_SWAP_ABI).items()
        }
        self._feed_task: Optional[asyncio.Task] = None
        self._cursor: Optional[int] = None

    def _default_log(self, event: str, **kwargs: Any) -> None:
        if event in ("ledger_feed_lost", "ledger_event_handler_error"):
            level = logging.ERROR
        elif event in ("ledger_rpc_unreachable", "ledger_order_read_failed", "ledger_log_decode_failed"):
            level = logging.WARNING
        elif event in ("ledger_connected", "ledger_bulk_load_complete", "ledger_constants", "ledger_feed_armed"):
            level = logging.INFO
        else:
            level = logging.DEBUG
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._contract is not None

    @property
    def rpc_url(self) -> Optional[str]:
        return self._rpc_url

    async def connect(self) -> None:
        """
        Connect to the first reachable RPC endpoint (primary, then fallbacks).

        Raises:
            LedgerUnavailableError: no contract address, or no endpoint answered
        """
        if not self.config.contract_address:
            raise LedgerUnavailableError("Contract address not configured")
        urls = [u for u in [self.config.rpc_url, *self.config.fallback_rpc_urls] if u]
        if not urls:
            raise LedgerUnavailableError("No RPC endpoint configured")

        address = to_checksum_address(self.config.contract_address)
        last_error: Optional[BaseException] = None
        for url in urls:
            w3 = self._web3_factory(url)
            try:
                chain_id = await self.governor.enqueue(lambda: w3.eth.chain_id, label="chain_id")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                self._log_event("ledger_rpc_unreachable", url=url, err=str(exc) or type(exc).__name__)
                continue

            self._w3 = w3
            self._rpc_url = url
            self._contract = w3.eth.contract(address=address, abi=OTC_SWAP_ABI)
            self._log_event("ledger_connected", url=url, chain_id=chain_id, contract=address)
            return

        raise LedgerUnavailableError(f"Failed to connect to any RPC endpoint: {last_error}")

    async def close(self) -> None:
        await self.unsubscribe_live_events()
        w3, self._w3, self._contract = self._w3, None, None
        if w3 is not None:
            disconnect = getattr(w3.provider, "disconnect", None)
            if disconnect is not None and inspect.iscoroutinefunction(disconnect):
                await disconnect()

    def _require_contract(self) -> Any:
        if self._contract is None:
            raise LedgerUnavailableError("Ledger gateway is not connected")
        return self._contract

    # -------------------------------------------------------------------------
    # Typed Reads
    # -------------------------------------------------------------------------

    async def _read(self, label: str, make_call: Callable[[], Awaitable[Any]]) -> Any:
        """Run one contract read through the governor, classifying contract errors."""
        async def op() -> Any:
            try:
                return await make_call()
            except (ContractLogicError, BadFunctionCallOutput) as exc:
                raise ContractCallError(f"{label}: {exc}") from exc

        return await self.governor.enqueue(op, label=label)

    async def block_number(self) -> int:
        self._require_contract()
        w3 = self._w3
        return int(await self.governor.enqueue(lambda: w3.eth.block_number, label="block_number"))

    async def fetch_constants(self) -> LedgerConstants:
        """Order expiry and grace period; read once and cached for the session."""
        if self._constants is not None:
            return self._constants
        fns = self._require_contract().functions
        expiry = await self._read("ORDER_EXPIRY", lambda: fns.ORDER_EXPIRY().call())
        grace = await self._read("GRACE_PERIOD", lambda: fns.GRACE_PERIOD().call())
        self._constants = LedgerConstants(order_expiry_seconds=int(expiry), grace_period_seconds=int(grace))
        self._log_event("ledger_constants", order_expiry_sec=int(expiry), grace_period_sec=int(grace))
        return self._constants

    @property
    def constants(self) -> Optional[LedgerConstants]:
        return self._constants

    async def order_id_range(self) -> Tuple[int, int]:
        """Half-open id range ``[firstOrderId, nextOrderId)`` currently held by the contract."""
        fns = self._require_contract().functions
        first = await self._read("firstOrderId", lambda: fns.firstOrderId().call())
        nxt = await self._read("nextOrderId", lambda: fns.nextOrderId().call())
        return int(first), int(nxt)

    async def creation_fee(self) -> int:
        fns = self._require_contract().functions
        return int(await self._read("orderCreationFeeAmount", lambda: fns.orderCreationFeeAmount().call()))

    async def read_order(self, order_id: int) -> Optional[Order]:
        """
        Read one order slot.

        Returns:
            The Order, or None for an empty slot (zero-address maker)

        Raises:
            ValueError for an unknown status code, or the read's last error
        """
        fns = self._require_contract().functions
        raw = await self._read("orders", lambda: fns.orders(order_id).call())
        if is_zero_address(raw[0] if not isinstance(raw, dict) else raw.get("maker")):
            return None
        return Order.from_ledger(order_id, raw)

    async def bulk_load(self, range_start: int, range_end: int, batch_size: int) -> BulkLoadResult:
        """
        Read every order in ``[range_start, range_end)`` in batches.

        Individual read failures are skipped and reported in ``failed_ids``.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        started = time.time()
        result = BulkLoadResult(orders=[], range_start=range_start, range_end=range_end)

        for batch_start in range(range_start, range_end, batch_size):
            ids = list(range(batch_start, min(batch_start + batch_size, range_end)))
            outcomes = await asyncio.gather(*(self.read_order(i) for i in ids), return_exceptions=True)
            for order_id, outcome in zip(ids, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    result.failed_ids.append(order_id)
                    self._count_skip("failed")
                    self._log_event(
                        "ledger_order_read_failed",
                        order_id=order_id,
                        err=str(outcome) or type(outcome).__name__,
                        error_type=type(outcome).__name__,
                    )
                elif outcome is None:
                    result.empty_ids.append(order_id)
                    self._count_skip("empty")
                else:
                    result.orders.append(outcome)

            if self.config.batch_pause_sec > 0 and batch_start + batch_size < range_end:
                await asyncio.sleep(self.config.batch_pause_sec)

        result.duration_ms = (time.time() - started) * 1000
        self._log_event(
            "ledger_bulk_load_complete",
            range_start=range_start,
            range_end=range_end,
            orders=len(result.orders),
            empty=len(result.empty_ids),
            failed=len(result.failed_ids),
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    def _count_skip(self, reason: str) -> None:
        if self._metrics:
            self._metrics.skipped_ids.labels(reason=reason).inc()

    async def read_token_metadata(self, token: str) -> Tuple[int, str, str]:
        """ERC-20 ``(decimals, symbol, name)`` of ``token``."""
        w3 = self._w3
        if w3 is None:
            raise LedgerUnavailableError("Ledger gateway is not connected")
        fns = w3.eth.contract(address=to_checksum_address(token), abi=ERC20_METADATA_ABI).functions
        decimals = await self._read("decimals", lambda: fns.decimals().call())
        symbol = await self._read("symbol", lambda: fns.symbol().call())
        name = await self._read("name", lambda: fns.name().call())
        return int(decimals), str(symbol), str(name)

    # -------------------------------------------------------------------------
    # Live Events
    # -------------------------------------------------------------------------

    @property
    def feed_active(self) -> bool:
        return self._feed_task is not None and not self._feed_task.done()

    async def subscribe_live_events(
        self,
        handler: LiveHandler,
        from_block: Optional[int] = None,
        on_disconnect: Optional[DisconnectHandler] = None,
    ) -> None:
        """
        Arm the live feed.

        Args:
            handler: Called as ``handler(kind, payload)`` per event, in ledger order
            from_block: First block to deliver (default: the block after the current head)
            on_disconnect: Called once with the error if the feed dies
        """
        self._require_contract()
        await self.unsubscribe_live_events()
        if from_block is None:
            from_block = await self.block_number() + 1
        self._cursor = from_block
        self._feed_task = asyncio.create_task(self._poll_loop(handler, on_disconnect), name="ledger-live-feed")
        self._log_event("ledger_feed_armed", from_block=from_block)

    async def unsubscribe_live_events(self) -> None:
        task, self._feed_task = self._feed_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _poll_loop(self, handler: LiveHandler, on_disconnect: Optional[DisconnectHandler]) -> None:
        while True:
            try:
                await self.poll_once(handler)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event("ledger_feed_lost", err=str(exc) or type(exc).__name__, cursor=self._cursor)
                self._feed_task = None
                if on_disconnect is not None:
                    outcome = on_disconnect(exc)
                    if inspect.isawaitable(outcome):
                        await outcome
                return
            await asyncio.sleep(self.config.event_poll_interval_sec)

    async def poll_once(self, handler: LiveHandler) -> int:
        """
        Deliver every event between the cursor and the current head.

        Returns:
            Number of events delivered
        """
        contract = self._require_contract()
        w3 = self._w3
        head = await self.block_number()
        delivered = 0

        while self._cursor is not None and self._cursor <= head:
            from_block = self._cursor
            to_block = min(head, from_block + self.config.log_chunk_blocks - 1)
            params = {"address": contract.address, "fromBlock": from_block, "toBlock": to_block}
            entries = await self.governor.enqueue(lambda: w3.eth.get_logs(params), label="get_logs")

            for entry in sorted(entries, key=lambda e: (e["blockNumber"], e["logIndex"])):
                decoded = self._decode(entry)
                if decoded is None:
                    continue
                kind, payload = decoded
                try:
                    outcome = handler(kind, payload)
                    if inspect.isawaitable(outcome):
                        await outcome
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._log_event("ledger_event_handler_error", kind=kind.value, err=str(exc))
                delivered += 1

            self._cursor = to_block + 1

        return delivered

    def _decode(self, entry: Any) -> Optional[Tuple[EventKind, Dict[str, Any]]]:
        topics = entry.get("topics") or []
        if not topics:
            return None
        kind = self._topics.get(bytes(topics[0]))
        if kind is None:
            return None
        try:
            decoded = getattr(self._contract.events, kind.value)().process_log(entry)
        except Exception as exc:
            self._log_event("ledger_log_decode_failed", kind=kind.value, err=str(exc))
            return None
        tx_hash = decoded.get("transactionHash")
        payload = normalize_event_args(
            decoded["args"],
            block_number=decoded.get("blockNumber"),
            log_index=decoded.get("logIndex"),
            tx_hash=to_hex(tx_hash) if tx_hash else None,
        )
        return kind, payload
