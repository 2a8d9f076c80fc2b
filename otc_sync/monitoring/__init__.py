"""
Monitoring package.

This package contains the Prometheus metrics and the metrics/status HTTP server.
"""

from otc_sync.monitoring.metrics_server import start_metrics_server
from otc_sync.monitoring.sync_metrics import SyncMetrics

__all__ = [
    "start_metrics_server",
    "SyncMetrics",
]
