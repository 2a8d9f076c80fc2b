"""
Ledger package.

This package contains the escrow contract ABI, live event kinds and the
gateway that reads orders and polls contract events.
"""

from otc_sync.ledger.abi import ERC20_METADATA_ABI, OTC_SWAP_ABI
from otc_sync.ledger.events import EventKind, normalize_event_args
from otc_sync.ledger.gateway import (
    BulkLoadResult,
    ContractCallError,
    GatewayConfig,
    LedgerGateway,
    LedgerUnavailableError,
)

__all__ = [
    "ERC20_METADATA_ABI",
    "OTC_SWAP_ABI",
    "EventKind",
    "normalize_event_args",
    "BulkLoadResult",
    "ContractCallError",
    "GatewayConfig",
    "LedgerGateway",
    "LedgerUnavailableError",
]
