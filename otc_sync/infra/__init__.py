"""
Infrastructure package.

This package contains logging configuration and the rate-limited request governor.
"""

from otc_sync.infra.logging_cfg import build_logger, log_event
from otc_sync.infra.request_governor import (
    GovernorConfig,
    PermanentRequestError,
    RateLimitedError,
    RequestGovernor,
    is_rate_limit_error,
)

__all__ = [
    "build_logger",
    "log_event",
    "GovernorConfig",
    "PermanentRequestError",
    "RateLimitedError",
    "RequestGovernor",
    "is_rate_limit_error",
]
