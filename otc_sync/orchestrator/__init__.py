"""
Orchestrator package.

This package contains the connection supervisor that drives connect,
bulk resync, the live feed and reconnection.
"""

from otc_sync.orchestrator.connection_supervisor import (
    ConnectionState,
    ConnectionSupervisor,
    InvalidTransitionError,
    SupervisorConfig,
    SyncReport,
)

__all__ = [
    "ConnectionState",
    "ConnectionSupervisor",
    "InvalidTransitionError",
    "SupervisorConfig",
    "SyncReport",
]
