"""
SubscriptionHub: publish/subscribe fan-out of cache changes to consumers.

Consumers (UI components) register callbacks per event name. ``publish``
calls them synchronously, in registration order. A failing callback is
logged and counted; it never stops the remaining callbacks and never
reaches the publisher.

Coroutine callbacks are scheduled on the running loop; their failures are
logged the same way once they finish.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Union

log = logging.getLogger("otc_sync")


class HubEvent(str, Enum):
    """Event names published by the engine."""
    ORDER_CREATED = "order-created"
    ORDER_FILLED = "order-filled"
    ORDER_CANCELED = "order-canceled"
    ORDER_CLEANED_UP = "order-cleaned-up"
    ORDER_RETRIED = "order-retried"
    ORDERS_UPDATED = "orders-updated"
    SYNC_COMPLETE = "sync-complete"
    CONNECTION_ERROR = "connection-error"
    CONNECTION_STATE = "connection-state"
    RECONNECTED = "reconnected"
    CLEANUP_FEES_DISTRIBUTED = "cleanup-fees-distributed"
    CLEANUP_ERROR = "cleanup-error"


EventName = Union[HubEvent, str]
Callback = Callable[[Any], Any]


def _name(event_name: EventName) -> str:
    return event_name.value if isinstance(event_name, HubEvent) else str(event_name)


@dataclass
class Publication:
    """History record of one publish call."""
    name: str
    data: Any
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))


class SubscriptionHub:
    """
    Callback registry keyed by event name.

    Usage:
        hub = SubscriptionHub()
        hub.subscribe(HubEvent.ORDER_FILLED, on_filled)
        hub.publish(HubEvent.ORDER_FILLED, change)
        hub.unsubscribe(HubEvent.ORDER_FILLED, on_filled)
    """

    DEFAULT_HISTORY_SIZE = 200

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._log = log_event or self._default_log
        self._subscribers: Dict[str, List[Callback]] = {}
        self._history: Deque[Publication] = deque(maxlen=history_size or None)
        self._history_enabled = history_size > 0
        self._pending: Set[asyncio.Future] = set()

        self._stats = {
            "published": 0,
            "delivered": 0,
            "callback_errors": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        exc = kwargs.pop("exc_info_obj", None)
        level = logging.ERROR if event == "hub_callback_error" else logging.DEBUG
        log.log(level, json.dumps({"event": event, **kwargs}, default=str), exc_info=exc)

    # -------------------------------------------------------------------------
    # Subscription Management
    # -------------------------------------------------------------------------

    def subscribe(self, event_name: EventName, callback: Callback) -> Callback:
        """
        Register ``callback`` for ``event_name``.

        The same callback may be registered more than once; it is then
        called once per registration.

        Returns:
            The callback (handy as a decorator)
        """
        name = _name(event_name)
        self._subscribers.setdefault(name, []).append(callback)
        self._log(
            "hub_subscribe",
            event_name=name,
            callback=getattr(callback, "__name__", repr(callback)),
            total_subscribers=len(self._subscribers[name]),
        )
        return callback

    def unsubscribe(self, event_name: EventName, callback: Callback) -> bool:
        """
        Remove one registration of ``callback``.

        Returns:
            True if removed, False if it was not registered
        """
        subs = self._subscribers.get(_name(event_name))
        if not subs or callback not in subs:
            return False
        subs.remove(callback)
        return True

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(self, event_name: EventName, data: Any = None) -> int:
        """
        Deliver ``data`` to every callback registered for ``event_name``.

        Returns:
            Number of callbacks that completed without raising
        """
        name = _name(event_name)
        self._stats["published"] += 1
        if self._history_enabled:
            self._history.append(Publication(name=name, data=data))

        delivered = 0
        # Snapshot: callbacks may (un)subscribe while we iterate
        for callback in list(self._subscribers.get(name, ())):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    self._schedule(name, callback, result)
            except Exception as exc:
                self._record_error(name, callback, exc)
                continue
            delivered += 1

        self._stats["delivered"] += delivered
        return delivered

    def _schedule(self, name: str, callback: Callback, awaitable: Any) -> None:
        future = asyncio.ensure_future(awaitable)
        self._pending.add(future)

        def _done(fut: asyncio.Future) -> None:
            self._pending.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                self._record_error(name, callback, exc)

        future.add_done_callback(_done)

    def _record_error(self, name: str, callback: Callback, exc: BaseException) -> None:
        self._stats["callback_errors"] += 1
        self._log(
            "hub_callback_error",
            event_name=name,
            callback=getattr(callback, "__name__", repr(callback)),
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info_obj=exc,
        )

    async def drain(self) -> None:
        """Wait for scheduled coroutine callbacks to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    def get_history(self, event_name: Optional[EventName] = None, limit: int = 100) -> List[Publication]:
        items = list(self._history)
        if event_name is not None:
            name = _name(event_name)
            items = [p for p in items if p.name == name]
        return items[-limit:]

    def get_subscriber_count(self, event_name: EventName) -> int:
        return len(self._subscribers.get(_name(event_name), ()))

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "subscriber_count": sum(len(s) for s in self._subscribers.values()),
            "pending_callbacks": len(self._pending),
        }

    def clear(self) -> None:
        """Drop all subscriptions and history (for testing)."""
        self._subscribers.clear()
        self._history.clear()
