"""
Pytest configuration and fixtures.
Adds the repo root to the Python path so tests can import otc_sync.
"""

import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from otc_sync.orders.models import ANYONE, LedgerConstants, Order, OrderStatus  # noqa: E402

MAKER = "0x11111111111111111111111111111111111111aa"
TAKER = "0x22222222222222222222222222222222222222bb"
OTHER = "0x3333333333333333333333333333333333333333"
SELL_TOKEN = "0xaAaAaAaaAaAaAaaAaAAAAAAAAaaaAaAaAaaAaaAa"
BUY_TOKEN = "0xbBbBBBBbbBBBbbbBbbBbbbbBBbBbbbbBbBbbBBbB"

DAY = 86400


def make_order(order_id=1, **overrides):
    fields = dict(
        id=order_id,
        maker=MAKER,
        taker=ANYONE,
        sell_token=SELL_TOKEN,
        sell_amount=100 * 10**6,
        buy_token=BUY_TOKEN,
        buy_amount=50 * 10**18,
        creation_timestamp=1_700_000_000,
        status=OrderStatus.ACTIVE,
        retry_count=0,
        creation_fee=10**15,
    )
    fields.update(overrides)
    return Order(**fields)


def created_payload(order_id, **overrides):
    payload = {
        "order_id": order_id,
        "maker": MAKER,
        "taker": ANYONE,
        "sell_token": SELL_TOKEN,
        "sell_amount": 100 * 10**6,
        "buy_token": BUY_TOKEN,
        "buy_amount": 50 * 10**18,
        "timestamp": 1_700_000_000,
        "creation_fee": 10**15,
    }
    payload.update(overrides)
    return payload


def ledger_row(maker=MAKER, status=0, timestamp=1_700_000_000, tries=0):
    """Tuple in the field order of the contract's orders(uint256) getter."""
    return (maker, ANYONE, SELL_TOKEN, 100 * 10**6, BUY_TOKEN, 50 * 10**18, timestamp, status, 10**15, tries)


@pytest.fixture
def constants():
    return LedgerConstants(order_expiry_seconds=7 * DAY, grace_period_seconds=7 * DAY)


@pytest.fixture
def order_factory():
    return make_order
