"""
Structured logging setup for the order sync engine.

- Rich console output for operators
- JSON lines in a file, written from a background thread so the event loop never blocks
- Throttling for retry chatter that can fire in bursts while a provider rate-limits us
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler


CRITICAL = logging.CRITICAL         # Engine gave up (reconnect ceiling reached)
ERROR = logging.ERROR               # Failures requiring attention
WARNING = logging.WARNING           # Recoverable issues (retries, skipped ids, reconnects)
INFO = logging.INFO                 # Lifecycle events (sync complete, state changes)
DEBUG = logging.DEBUG               # Per-request and per-event chatter

# Events that may repeat many times per second during a provider outage
DEFAULT_THROTTLED_EVENTS = frozenset({
    "governor_rate_limited",
    "governor_retry",
    "ledger_order_read_failed",
    "price_chunk_error",
})


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues log records for a background writer thread.

    Records are dropped (and counted) when the queue is full.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="otc-log-writer")
        self._thread.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.emit(record)
            except Exception:
                self._target.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Suppresses repeats of selected JSON events for ``cooldown_sec``.

    The first occurrence always passes. Keys combine the event name with
    its ``label`` field so different call sites throttle independently.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = throttled_events or set(DEFAULT_THROTTLED_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = json.loads(record.getMessage())
        except (json.JSONDecodeError, TypeError):
            return True
        if not isinstance(data, dict):
            return True

        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('label', '')}"
        if now - self._last_seen.get(key, 0.0) < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = "otc_sync",
    level: int = logging.INFO,
    file_path: Optional[str] = "otc_sync.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the engine logger.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: Path to JSON log file (None disables file logging)
        async_file: Write the file from a background thread
        throttle_warnings: Throttle repetitive retry events on the console

    Returns:
        Configured logger instance (idempotent across calls)
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    stream_handler = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    if throttle_warnings:
        stream_handler.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(stream_handler)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        if async_file:
            async_handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
            async_handler.setLevel(level)
            logger.addHandler(async_handler)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data,
) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "sync_complete", level=INFO, orders=42)
    """
    payload = {"event": event, **data}
    logger.log(level, json.dumps(payload, default=str))
