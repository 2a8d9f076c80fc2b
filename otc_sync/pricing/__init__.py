"""
Pricing package.

This package contains the USD price feed, the token metadata cache and
the deal metrics calculator.
"""

from otc_sync.pricing.deal_metrics import DealMetricsCalculator, format_units
from otc_sync.pricing.price_feed import PriceFeed, PriceFeedConfig, PriceFeedEvent
from otc_sync.pricing.token_metadata import TokenMetadata, TokenMetadataCache

__all__ = [
    "DealMetricsCalculator",
    "format_units",
    "PriceFeed",
    "PriceFeedConfig",
    "PriceFeedEvent",
    "TokenMetadata",
    "TokenMetadataCache",
]
