"""
RequestGovernor: throttled, retrying gate for every outbound ledger / price read.

Every call to the RPC provider or the price service goes through ``enqueue``.
The governor enforces two limits at once:

- at most ``max_concurrent`` operations outstanding
- at least ``min_interval_sec`` between two operations being issued

Failure policy:
    Rate-limit class errors (provider code -32005, HTTP 429, or one of the
    provider throttling messages in RATE_LIMIT_MESSAGES) are retried after a
    fixed cooldown and do not consume the generic retry budget, up to
    ``max_rate_limit_retries``. Permanent errors propagate at once. Anything
    else is retried with exponential backoff (base delay doubling per attempt,
    capped) until ``max_attempts`` tries have failed, then the last error is
    re-raised to the caller.

The governor knows nothing about orders; its only side effect is timing.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TYPE_CHECKING, Union

import httpx

if TYPE_CHECKING:
    from otc_sync.monitoring.sync_metrics import SyncMetrics

log = logging.getLogger("otc_sync")

# JSON-RPC error code providers use for "request limit exceeded"
RATE_LIMIT_ERROR_CODE = -32005

# Throttling messages returned by RPC providers and HTTP APIs without a usable code
RATE_LIMIT_MESSAGES = (
    "rate limit exceeded",
    "rate limit reached",
    "exceeded the rate limit",
    "request limit exceeded",
    "too many requests",
    "you are being rate limited",
)

Operation = Callable[[], Union[Awaitable[Any], Any]]


class RateLimitedError(Exception):
    """Raised by a call site that detected provider throttling itself."""


class PermanentRequestError(Exception):
    """An error that retrying cannot fix (e.g. a reverted contract call)."""


def _error_code(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    candidates = [getattr(exc, "rpc_response", None)]
    if exc.args:
        candidates.append(exc.args[0])
    for source in candidates:
        if not isinstance(source, dict):
            continue
        err = source.get("error", source)
        if isinstance(err, dict) and isinstance(err.get("code"), int):
            return err["code"]
    return None


def is_rate_limit_error(exc: BaseException) -> bool:
    """Classify ``exc`` as provider rate limiting."""
    if isinstance(exc, RateLimitedError):
        return True
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return True
    if _error_code(exc) == RATE_LIMIT_ERROR_CODE:
        return True
    message = str(exc).lower()
    return any(phrase in message for phrase in RATE_LIMIT_MESSAGES)


@dataclass
class GovernorConfig:
    """Configuration for RequestGovernor."""
    name: str = "ledger"
    min_interval_sec: float = 0.2
    max_concurrent: int = 4

    # Rate-limit handling (does not count against max_attempts)
    rate_limit_cooldown_sec: float = 1.0
    max_rate_limit_retries: int = 5

    # Generic failures
    max_attempts: int = 3
    backoff_base_sec: float = 0.2
    backoff_max_sec: float = 5.0

    # Per-attempt timeout for awaitable operations
    timeout_sec: float = 10.0

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.min_interval_sec < 0:
            raise ValueError("min_interval_sec must be >= 0")


class RequestGovernor:
    """
    Rate-limited, retrying executor for outbound reads.

    Usage:
        governor = RequestGovernor(GovernorConfig(min_interval_sec=0.2))
        order = await governor.enqueue(lambda: contract.functions.orders(7).call(), label="orders")

    Waiters are admitted roughly FIFO: both the concurrency slots and the
    spacing lock are asyncio primitives that wake waiters in arrival order.
    """

    def __init__(
        self,
        config: Optional[GovernorConfig] = None,
        log_event: Optional[Callable[..., None]] = None,
        metrics: Optional["SyncMetrics"] = None,
        clock: Callable[[], float] = time.monotonic,
        history_size: int = 1000,
    ) -> None:
        self.config = config or GovernorConfig()
        self._log_event = log_event or self._default_log
        self._metrics = metrics
        self._clock = clock

        self._slots = asyncio.Semaphore(self.config.max_concurrent)
        self._spacing_lock = asyncio.Lock()
        self._last_issue: float = float("-inf")
        self._in_flight = 0
        self._issue_times: Deque[float] = deque(maxlen=history_size)

        self._stats = {
            "enqueued": 0,
            "issued": 0,
            "succeeded": 0,
            "failed": 0,
            "retries": 0,
            "rate_limited": 0,
            "max_in_flight": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event in ("governor_retry", "governor_rate_limited", "governor_gave_up") else logging.DEBUG
        log.log(level, json.dumps({"event": event, "governor": self.config.name, **kwargs}, default=str))

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def backoff_delay(self, failures: int) -> float:
        """Delay before the retry that follows the ``failures``-th failure."""
        delay = self.config.backoff_base_sec * (2 ** max(0, failures - 1))
        return min(delay, self.config.backoff_max_sec)

    async def enqueue(self, operation: Operation, label: str = "request") -> Any:
        """
        Run ``operation`` under the governor's limits and retry policy.

        Args:
            operation: Zero-argument callable returning a value or an awaitable
            label: Call-site name used in logs

        Returns:
            The operation's result

        Raises:
            The operation's last error once retries are exhausted, or a
            PermanentRequestError immediately.
        """
        self._stats["enqueued"] += 1
        failures = 0
        rate_limit_hits = 0

        while True:
            try:
                result = await self._issue(operation)
            except asyncio.CancelledError:
                raise
            except PermanentRequestError as exc:
                self._record_outcome("permanent")
                self._log_event("governor_permanent_error", label=label, err=str(exc))
                raise
            except Exception as exc:
                if is_rate_limit_error(exc) and rate_limit_hits < self.config.max_rate_limit_retries:
                    rate_limit_hits += 1
                    self._stats["rate_limited"] += 1
                    if self._metrics:
                        self._metrics.governor_rate_limited.labels(governor=self.config.name).inc()
                    self._log_event(
                        "governor_rate_limited",
                        label=label,
                        hits=rate_limit_hits,
                        cooldown_sec=self.config.rate_limit_cooldown_sec,
                    )
                    await asyncio.sleep(self.config.rate_limit_cooldown_sec)
                    continue

                failures += 1
                if failures >= self.config.max_attempts:
                    self._record_outcome("failed")
                    self._log_event(
                        "governor_gave_up",
                        label=label,
                        attempts=failures,
                        err=str(exc) or type(exc).__name__,
                        error_type=type(exc).__name__,
                    )
                    raise

                delay = self.backoff_delay(failures)
                self._stats["retries"] += 1
                self._log_event(
                    "governor_retry",
                    label=label,
                    attempt=failures,
                    delay_sec=delay,
                    err=str(exc) or type(exc).__name__,
                )
                await asyncio.sleep(delay)
                continue

            self._record_outcome("ok")
            return result

    async def _issue(self, operation: Operation) -> Any:
        async with self._slots:
            await self._await_spacing()
            self._in_flight += 1
            self._stats["issued"] += 1
            if self._in_flight > self._stats["max_in_flight"]:
                self._stats["max_in_flight"] = self._in_flight
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await asyncio.wait_for(result, timeout=self.config.timeout_sec)
                return result
            finally:
                self._in_flight -= 1

    async def _await_spacing(self) -> None:
        async with self._spacing_lock:
            # Loop: the event loop may wake a sleeper slightly before its deadline
            while True:
                wait = self._last_issue + self.config.min_interval_sec - self._clock()
                if wait <= 0:
                    break
                await asyncio.sleep(wait)
            self._last_issue = self._clock()
            self._issue_times.append(self._last_issue)

    def _record_outcome(self, outcome: str) -> None:
        if outcome == "ok":
            self._stats["succeeded"] += 1
        else:
            self._stats["failed"] += 1
        if self._metrics:
            self._metrics.governor_requests.labels(governor=self.config.name, outcome=outcome).inc()

    def issue_times(self) -> List[float]:
        """Clock readings at which operations were issued (oldest first)."""
        return list(self._issue_times)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "in_flight": self._in_flight, "name": self.config.name}
