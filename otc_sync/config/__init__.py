"""
Configuration package.

This package contains environment-driven settings loading and validation.
"""

from otc_sync.config.config import Settings, env_bool, env_list

__all__ = [
    "Settings",
    "env_bool",
    "env_list",
]
