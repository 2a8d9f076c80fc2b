"""
Core package.

This package contains the subscription hub and the event names it publishes.
"""

from otc_sync.core.subscription_hub import HubEvent, Publication, SubscriptionHub

__all__ = [
    "HubEvent",
    "Publication",
    "SubscriptionHub",
]
