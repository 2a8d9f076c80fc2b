"""
ConnectionSupervisor: lifecycle of the ledger connection.

State Diagram:

    DISCONNECTED ──start()──> CONNECTING ──> SYNCING ──> LIVE
                                  │            │  ▲        │
                                  ▼            ▼  │        ▼ (feed lost)
                                 RECONNECTING <───┴────────┘
                                  │
                                  ▼ (attempt ceiling)
                                 FAILED

    stop() returns to DISCONNECTED from any state.

Each sync pass connects, reads the ledger constants, records the head
block, bulk-loads the id range, installs the snapshot and arms the live
feed from the block after the recorded head. Results of a pass started
before the latest ``stop()``/``start()`` are discarded (generation guard).
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TYPE_CHECKING, Union

from otc_sync.core.subscription_hub import HubEvent, SubscriptionHub
from otc_sync.ledger.events import EventKind
from otc_sync.orders.order_cache import OrderCache

if TYPE_CHECKING:
    from otc_sync.ledger.gateway import LedgerGateway
    from otc_sync.monitoring.sync_metrics import SyncMetrics

log = logging.getLogger("otc_sync")

CONNECTION_FAILED_CODE = "WS_CONNECTION_FAILED"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SYNCING = "syncing"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


VALID_TRANSITIONS: Dict[ConnectionState, List[ConnectionState]] = {
    ConnectionState.DISCONNECTED: [
        ConnectionState.CONNECTING,
    ],
    ConnectionState.CONNECTING: [
        ConnectionState.SYNCING,        # Gateway reachable
        ConnectionState.RECONNECTING,   # Connect failed
        ConnectionState.FAILED,         # No reconnect attempts allowed
        ConnectionState.DISCONNECTED,
    ],
    ConnectionState.SYNCING: [
        ConnectionState.LIVE,           # Snapshot installed, feed armed
        ConnectionState.RECONNECTING,   # Sync aborted
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTED,
    ],
    ConnectionState.LIVE: [
        ConnectionState.RECONNECTING,   # Feed lost
        ConnectionState.DISCONNECTED,
    ],
    ConnectionState.RECONNECTING: [
        ConnectionState.SYNCING,        # Retry reached the gateway
        ConnectionState.FAILED,         # Attempt ceiling reached
        ConnectionState.DISCONNECTED,
    ],
    ConnectionState.FAILED: [
        ConnectionState.DISCONNECTED,
    ],
}


class InvalidTransitionError(Exception):
    """Raised on a state change not listed in VALID_TRANSITIONS."""


@dataclass
class StateTransition:
    """Record of a state transition."""
    from_state: ConnectionState
    to_state: ConnectionState
    timestamp_ms: int
    reason: Optional[str] = None


@dataclass
class SupervisorConfig:
    """Configuration for ConnectionSupervisor."""
    batch_size: int = 10
    reconnect_base_delay_sec: float = 1.0
    reconnect_max_delay_sec: float = 30.0
    max_reconnect_attempts: int = 5


@dataclass
class SyncReport:
    """Payload of ``sync-complete``."""
    order_count: int
    range_start: int
    range_end: int
    head_block: int
    empty_ids: List[int] = field(default_factory=list)
    failed_ids: List[int] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def partial(self) -> bool:
        return bool(self.failed_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "partial": self.partial}


SnapshotHook = Callable[[SyncReport], Union[None, Awaitable[None]]]
EventHook = Callable[[EventKind, Dict[str, Any]], Union[None, Awaitable[None]]]


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class ConnectionSupervisor:
    """
    Drives the gateway through connect, bulk resync and live feed.

    Usage:
        supervisor = ConnectionSupervisor(gateway, cache, hub, SupervisorConfig())
        await supervisor.start()
        ...
        await supervisor.stop()
    """

    def __init__(
        self,
        gateway: "LedgerGateway",
        cache: OrderCache,
        hub: SubscriptionHub,
        config: Optional[SupervisorConfig] = None,
        on_snapshot: Optional[SnapshotHook] = None,
        on_event: Optional[EventHook] = None,
        log_event: Optional[Callable[..., None]] = None,
        metrics: Optional["SyncMetrics"] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.hub = hub
        self.config = config or SupervisorConfig()
        self.on_snapshot = on_snapshot
        self.on_event = on_event or self._apply_to_cache
        self._log_event = log_event or self._default_log
        self._metrics = metrics
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._history: Deque[StateTransition] = deque(maxlen=100)
        self._generation = 0
        self._attempts = 0
        self._task: Optional[asyncio.Task] = None
        self._feed_lost = asyncio.Event()
        self._feed_error: Optional[BaseException] = None
        self._last_report: Optional[SyncReport] = None

        self._stats = {
            "syncs": 0,
            "partial_syncs": 0,
            "sync_failures": 0,
            "reconnects": 0,
            "stale_results_discarded": 0,
            "events_dispatched": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        if event in ("supervisor_failed",):
            level = logging.ERROR
        elif event in ("supervisor_sync_error", "supervisor_feed_lost", "supervisor_reconnect_scheduled"):
            level = logging.WARNING
        elif event in ("supervisor_state", "supervisor_sync_complete"):
            level = logging.INFO
        else:
            level = logging.DEBUG
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def last_report(self) -> Optional[SyncReport]:
        return self._last_report

    def get_history(self) -> List[StateTransition]:
        return list(self._history)

    def _transition(self, new_state: ConnectionState, reason: Optional[str] = None) -> None:
        old_state = self._state
        if new_state not in VALID_TRANSITIONS[old_state]:
            raise InvalidTransitionError(f"{old_state.value} -> {new_state.value}")
        self._state = new_state
        self._history.append(StateTransition(
            from_state=old_state,
            to_state=new_state,
            timestamp_ms=int(time.time() * 1000),
            reason=reason,
        ))
        if self._metrics:
            self._metrics.set_connection_state(new_state.value, [s.value for s in ConnectionState])
        self._log_event("supervisor_state", from_state=old_state.value, to_state=new_state.value, reason=reason)
        self.hub.publish(HubEvent.CONNECTION_STATE, {
            "from": old_state.value,
            "to": new_state.value,
            "reason": reason,
        })

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def reconnect_delay(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (0-based): base doubling, capped."""
        delay = self.config.reconnect_base_delay_sec * (2 ** attempt)
        return min(delay, self.config.reconnect_max_delay_sec)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Begin connecting; returns once the supervisor task is scheduled."""
        if self._task is not None and not self._task.done():
            return
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED, reason="restart")
        self._generation += 1
        self._attempts = 0
        self._transition(ConnectionState.CONNECTING, reason="start")
        self._task = asyncio.create_task(self._run(self._generation), name="connection-supervisor")

    async def stop(self) -> None:
        """Tear down the feed and return to DISCONNECTED."""
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.gateway.unsubscribe_live_events()
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED, reason="stop")

    async def wait_live(self, timeout: Optional[float] = None) -> bool:
        """Wait until LIVE or FAILED (for scripts and tests). True if LIVE."""
        async def _poll() -> None:
            while self._state not in (ConnectionState.LIVE, ConnectionState.FAILED):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout)
        return self._state is ConnectionState.LIVE

    async def _run(self, generation: int) -> None:
        while self._is_current(generation):
            try:
                report = await self._sync_once(generation)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not self._is_current(generation):
                    return
                self._stats["sync_failures"] += 1
                if self._metrics:
                    self._metrics.resyncs.labels(outcome="error").inc()
                self._log_event(
                    "supervisor_sync_error",
                    state=self._state.value,
                    err=str(exc) or type(exc).__name__,
                    error_type=type(exc).__name__,
                )
                if not await self._schedule_reconnect(generation, exc):
                    return
                continue

            if report is None:
                return

            await self._feed_lost.wait()
            if not self._is_current(generation):
                return
            error = self._feed_error
            self._log_event("supervisor_feed_lost", err=str(error) if error else None)
            await self.gateway.unsubscribe_live_events()
            if not await self._schedule_reconnect(generation, error):
                return

    async def _schedule_reconnect(self, generation: int, error: Optional[BaseException]) -> bool:
        """Enter RECONNECTING and sleep the backoff; False once FAILED."""
        if self._attempts >= self.config.max_reconnect_attempts:
            self._transition(ConnectionState.FAILED, reason="max_reconnect_attempts")
            self._log_event("supervisor_failed", attempts=self._attempts, err=str(error) if error else None)
            self.hub.publish(HubEvent.CONNECTION_ERROR, {
                "code": CONNECTION_FAILED_CODE,
                "message": "Failed to reconnect after maximum attempts",
                "attempts": self._attempts,
                "error": str(error) if error else None,
            })
            return False

        delay = self.reconnect_delay(self._attempts)
        self._attempts += 1
        self._stats["reconnects"] += 1
        if self._metrics:
            self._metrics.reconnect_attempts.inc()
        if self._state is not ConnectionState.RECONNECTING:
            self._transition(ConnectionState.RECONNECTING, reason=type(error).__name__ if error else "feed_lost")
        self._log_event(
            "supervisor_reconnect_scheduled",
            attempt=self._attempts,
            max_attempts=self.config.max_reconnect_attempts,
            delay_sec=delay,
        )
        await self._sleep(delay)
        return self._is_current(generation)

    async def _sync_once(self, generation: int) -> Optional[SyncReport]:
        started = time.time()
        await self.gateway.connect()
        if not self._is_current(generation):
            return self._discard("connect")
        self._transition(ConnectionState.SYNCING)

        await self.gateway.fetch_constants()
        head_block = await self.gateway.block_number()
        range_start, range_end = await self.gateway.order_id_range()
        result = await self.gateway.bulk_load(range_start, range_end, self.config.batch_size)
        if not self._is_current(generation):
            return self._discard("bulk_load")

        self.cache.replace_all(result.orders, range_start=range_start)
        report = SyncReport(
            order_count=len(result.orders),
            range_start=range_start,
            range_end=range_end,
            head_block=head_block,
            empty_ids=list(result.empty_ids),
            failed_ids=list(result.failed_ids),
        )
        if self.on_snapshot is not None:
            await _maybe_await(self.on_snapshot(report))
            if not self._is_current(generation):
                return self._discard("snapshot_hook")

        self._feed_lost = asyncio.Event()
        self._feed_error = None
        await self.gateway.subscribe_live_events(
            self._make_handler(generation),
            from_block=head_block + 1,
            on_disconnect=lambda exc: self._on_feed_lost(generation, exc),
        )
        if not self._is_current(generation):
            await self.gateway.unsubscribe_live_events()
            return self._discard("subscribe")

        report.duration_ms = (time.time() - started) * 1000
        attempts = self._attempts
        self._transition(ConnectionState.LIVE)
        self._attempts = 0
        self._last_report = report

        self._stats["syncs"] += 1
        if report.partial:
            self._stats["partial_syncs"] += 1
        if self._metrics:
            self._metrics.resyncs.labels(outcome="partial" if report.partial else "ok").inc()
            self._metrics.resync_duration_sec.observe(report.duration_ms / 1000)
        self._log_event(
            "supervisor_sync_complete",
            orders=report.order_count,
            range_start=range_start,
            range_end=range_end,
            head_block=head_block,
            failed=len(report.failed_ids),
            duration_ms=round(report.duration_ms, 1),
        )
        self.hub.publish(HubEvent.SYNC_COMPLETE, report)
        if attempts > 0:
            self.hub.publish(HubEvent.RECONNECTED, {"attempts": attempts, "report": report})
        return report

    def _discard(self, stage: str) -> None:
        self._stats["stale_results_discarded"] += 1
        self._log_event("supervisor_stale_result", stage=stage, generation=self._generation)
        return None

    def _on_feed_lost(self, generation: int, exc: BaseException) -> None:
        if not self._is_current(generation):
            return
        self._feed_error = exc
        self._feed_lost.set()

    def _make_handler(self, generation: int) -> EventHook:
        async def handler(kind: EventKind, payload: Dict[str, Any]) -> None:
            if not self._is_current(generation):
                return
            self._stats["events_dispatched"] += 1
            await _maybe_await(self.on_event(kind, payload))

        return handler

    def _apply_to_cache(self, kind: EventKind, payload: Dict[str, Any]) -> None:
        self.cache.apply_event(kind, payload)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "state": self._state.value,
            "attempts": self._attempts,
            "generation": self._generation,
        }
