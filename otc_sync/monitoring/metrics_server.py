"""
Minimal HTTP server for metrics, status and health.

- /metrics - Prometheus text exposition of the engine registry
- /status  - engine stats JSON
- /health  - liveness (200 unless the connection is FAILED)
- /ready   - readiness (200 once LIVE)
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from otc_sync.monitoring.sync_metrics import SyncMetrics

StatusProvider = Callable[[], Dict[str, Any]]
StateProvider = Callable[[], str]


def _response(status: bytes, content_type: bytes, body: bytes) -> bytes:
    return (
        b"HTTP/1.1 " + status + b"\r\n"
        b"Content-Type: " + content_type + b"\r\n"
        b"Connection: close\r\n\r\n"
        + body
    )


def route(
    path: str,
    metrics: SyncMetrics,
    status_provider: Optional[StatusProvider] = None,
    state_provider: Optional[StateProvider] = None,
) -> Tuple[bytes, bytes, bytes]:
    """Status line, content type and body for ``path``."""
    state = state_provider() if state_provider else "unknown"

    if path == "/health":
        healthy = state != "failed"
        body = json.dumps({"healthy": healthy, "state": state}).encode()
        return (b"200 OK" if healthy else b"503 Service Unavailable"), b"application/json", body

    if path == "/ready":
        ready = state == "live"
        body = json.dumps({"ready": ready, "state": state}).encode()
        return (b"200 OK" if ready else b"503 Service Unavailable"), b"application/json", body

    if path.startswith("/status"):
        if status_provider is None:
            return b"404 Not Found", b"text/plain", b""
        try:
            body = json.dumps(status_provider(), default=str).encode()
        except Exception:
            return b"500 Internal Server Error", b"text/plain", b""
        return b"200 OK", b"application/json", body

    return b"200 OK", CONTENT_TYPE_LATEST.encode(), generate_latest(metrics.registry)


async def start_metrics_server(
    metrics: SyncMetrics,
    port: int,
    status_provider: Optional[StatusProvider] = None,
    state_provider: Optional[StateProvider] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        req = await reader.read(2048)
        path_raw = b"/"
        first_line = req.split(b"\r\n", 1)[0]
        if b" " in first_line:
            parts = first_line.split(b" ")
            if len(parts) > 1:
                path_raw = parts[1]
        path = urlparse(path_raw.decode("utf-8", errors="ignore")).path

        status, content_type, body = route(path, metrics, status_provider, state_provider)
        writer.write(_response(status, content_type, body))
        await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, host, port)
