"""
Order data model mirrored from the escrow contract.

Order records are owned by OrderCache. Derived values (expiry, grace end,
deal metrics) are computed from ledger-wide constants and the price feed
and are never written back to the ledger.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Union

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# A taker of ZERO_ADDRESS means the order can be filled by anyone
ANYONE = ZERO_ADDRESS


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive address comparison (checksum casing is cosmetic)."""
    if not a or not b:
        return False
    return a.lower() == b.lower()


def is_zero_address(addr: Optional[str]) -> bool:
    return not addr or addr.lower() == ZERO_ADDRESS


class OrderStatus(Enum):
    """
    Ledger status of an order.

    Transitions are monotone: ACTIVE -> FILLED or ACTIVE -> CANCELED.
    Cleaned-up and retried orders leave the cache entirely.
    """
    ACTIVE = "Active"
    FILLED = "Filled"
    CANCELED = "Canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.ACTIVE

    @classmethod
    def from_ledger(cls, code: int) -> "OrderStatus":
        """Map the contract's uint8 status enum; unknown codes raise ValueError."""
        try:
            return _LEDGER_STATUS_CODES[int(code)]
        except (KeyError, TypeError, ValueError):
            raise ValueError(f"unknown ledger status code {code!r}") from None


_LEDGER_STATUS_CODES = {
    0: OrderStatus.ACTIVE,
    1: OrderStatus.FILLED,
    2: OrderStatus.CANCELED,
}


@dataclass(frozen=True)
class LedgerConstants:
    """Contract-wide timing constants, fetched once per session."""
    order_expiry_seconds: int
    grace_period_seconds: int

    def expires_at(self, order: "Order") -> int:
        return order.creation_timestamp + self.order_expiry_seconds

    def grace_ends_at(self, order: "Order") -> int:
        return self.expires_at(order) + self.grace_period_seconds


@dataclass(frozen=True)
class DealMetrics:
    """Valuation of an order against current market prices."""
    price: Decimal                      # buy amount per unit of sell amount
    rate: Decimal                       # sell token USD / buy token USD
    deal: Decimal                       # price * rate, higher favors the taker
    sell_amount: Decimal
    buy_amount: Decimal
    formatted_sell_amount: str
    formatted_buy_amount: str
    sell_token_usd_price: Decimal
    buy_token_usd_price: Decimal
    sell_price_estimated: bool = False
    buy_price_estimated: bool = False
    price_timestamp: Optional[float] = None
    computed_at: float = field(default_factory=time.time)


# Field order of the contract's `orders(uint256)` getter
LEDGER_ORDER_FIELDS = (
    "maker",
    "taker",
    "sellToken",
    "sellAmount",
    "buyToken",
    "buyAmount",
    "timestamp",
    "status",
    "orderCreationFee",
    "tries",
)


@dataclass
class Order:
    """One escrow position."""
    id: int
    maker: str
    taker: str
    sell_token: str
    sell_amount: int
    buy_token: str
    buy_amount: int
    creation_timestamp: int
    status: OrderStatus = OrderStatus.ACTIVE
    retry_count: int = 0
    creation_fee: int = 0
    deal_metrics: Optional[DealMetrics] = None

    @property
    def is_open_to_anyone(self) -> bool:
        return is_zero_address(self.taker)

    @classmethod
    def from_ledger(cls, order_id: int, raw: Union[Sequence[Any], Dict[str, Any]]) -> "Order":
        """
        Build an Order from the tuple (or mapping) returned by ``orders(id)``.

        Raises ValueError for an unknown status code.
        """
        if isinstance(raw, dict):
            values = raw
        else:
            values = dict(zip(LEDGER_ORDER_FIELDS, raw))
        return cls(
            id=int(order_id),
            maker=values["maker"],
            taker=values.get("taker") or ANYONE,
            sell_token=values["sellToken"],
            sell_amount=int(values["sellAmount"]),
            buy_token=values["buyToken"],
            buy_amount=int(values["buyAmount"]),
            creation_timestamp=int(values["timestamp"]),
            status=OrderStatus.from_ledger(values["status"]),
            retry_count=int(values.get("tries", 0) or 0),
            creation_fee=int(values.get("orderCreationFee", 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
