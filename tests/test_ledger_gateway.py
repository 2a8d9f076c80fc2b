"""
Tests for LedgerGateway with an in-memory web3 stand-in.
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from eth_utils import event_abi_to_log_topic
from web3.exceptions import ContractLogicError

from otc_sync.infra.request_governor import GovernorConfig, RequestGovernor
from otc_sync.ledger.abi import event_abis
from otc_sync.ledger.events import EventKind
from otc_sync.ledger.gateway import (
    ContractCallError,
    GatewayConfig,
    LedgerGateway,
    LedgerUnavailableError,
)
from otc_sync.orders.models import ZERO_ADDRESS, OrderStatus

from conftest import ledger_row

CONTRACT = "0x" + "ab" * 20


async def _value(v):
    return v


class _Call:
    def __init__(self, fn):
        self._fn = fn

    async def call(self):
        return self._fn()


class FakeFunctions:
    def __init__(self, rows, first=0, nxt=None, fail_first_read=()):
        self.rows = rows
        self.first = first
        self.next = len(rows) if nxt is None else nxt
        self.fail_first_read = set(fail_first_read)
        self.reads = {}

    def _read(self, order_id):
        self.reads[order_id] = self.reads.get(order_id, 0) + 1
        if order_id in self.fail_first_read and self.reads[order_id] == 1:
            raise asyncio.TimeoutError()
        row = self.rows[order_id]
        if isinstance(row, Exception):
            raise row
        return row

    def orders(self, order_id):
        return _Call(lambda: self._read(order_id))

    def firstOrderId(self):
        return _Call(lambda: self.first)

    def nextOrderId(self):
        return _Call(lambda: self.next)

    def ORDER_EXPIRY(self):
        return _Call(lambda: 7 * 86400)

    def GRACE_PERIOD(self):
        return _Call(lambda: 7 * 86400)


class FakeEvents:
    """contract.events.<Name>().process_log(entry) over pre-decoded entries."""

    def __getattr__(self, name):
        def factory():
            return SimpleNamespace(process_log=lambda entry: {
                "args": entry["args"],
                "blockNumber": entry["blockNumber"],
                "logIndex": entry["logIndex"],
                "transactionHash": None,
            })
        return factory


class FakeEth:
    def __init__(self, functions, head=100, chain_error=None):
        self.functions = functions
        self.head = head
        self.chain_error = chain_error
        self.get_logs = AsyncMock(return_value=[])

    @property
    def chain_id(self):
        if self.chain_error is not None:
            raise self.chain_error
        return _value(137)

    @property
    def block_number(self):
        return _value(self.head)

    def contract(self, address, abi):
        return SimpleNamespace(address=address, functions=self.functions, events=FakeEvents())


def fake_web3(eth):
    return SimpleNamespace(eth=eth, provider=SimpleNamespace())


def fast_governor(max_attempts=3):
    return RequestGovernor(GovernorConfig(
        min_interval_sec=0.0,
        max_concurrent=4,
        rate_limit_cooldown_sec=0.0,
        max_attempts=max_attempts,
        backoff_base_sec=0.0,
        backoff_max_sec=0.0,
        timeout_sec=1.0,
    ))


def topic(name):
    return event_abi_to_log_topic(event_abis()[name])


def log_entry(name, block, index, **args):
    return {"topics": [topic(name)], "blockNumber": block, "logIndex": index, "args": args}


async def connected_gateway(eth, max_attempts=3, **config):
    gateway = LedgerGateway(
        GatewayConfig(rpc_url="http://primary", contract_address=CONTRACT, **config),
        fast_governor(max_attempts),
        web3_factory=lambda url: fake_web3(eth),
    )
    await gateway.connect()
    return gateway


class TestConnect:

    @pytest.mark.asyncio
    async def test_missing_contract_address(self):
        gateway = LedgerGateway(GatewayConfig(rpc_url="http://primary"), fast_governor())
        with pytest.raises(LedgerUnavailableError):
            await gateway.connect()

    @pytest.mark.asyncio
    async def test_falls_back_to_next_rpc(self):
        """An unreachable primary endpoint is skipped in favour of a fallback."""
        good = FakeEth(FakeFunctions([]))
        bad = FakeEth(FakeFunctions([]), chain_error=ConnectionError("refused"))
        endpoints = {"http://primary": bad, "http://backup": good}
        gateway = LedgerGateway(
            GatewayConfig(rpc_url="http://primary", fallback_rpc_urls=["http://backup"], contract_address=CONTRACT),
            fast_governor(max_attempts=1),
            web3_factory=lambda url: fake_web3(endpoints[url]),
        )

        await gateway.connect()

        assert gateway.is_connected
        assert gateway.rpc_url == "http://backup"

    @pytest.mark.asyncio
    async def test_all_endpoints_down(self):
        bad = FakeEth(FakeFunctions([]), chain_error=ConnectionError("refused"))
        gateway = LedgerGateway(
            GatewayConfig(rpc_url="http://primary", fallback_rpc_urls=["http://backup"], contract_address=CONTRACT),
            fast_governor(max_attempts=1),
            web3_factory=lambda url: fake_web3(bad),
        )
        with pytest.raises(LedgerUnavailableError):
            await gateway.connect()

    @pytest.mark.asyncio
    async def test_reads_require_connection(self):
        gateway = LedgerGateway(GatewayConfig(contract_address=CONTRACT), fast_governor())
        with pytest.raises(LedgerUnavailableError):
            await gateway.order_id_range()


class TestReads:

    @pytest.mark.asyncio
    async def test_constants_cached(self):
        functions = FakeFunctions([])
        reads = []
        functions.ORDER_EXPIRY = lambda: _Call(lambda: reads.append(1) or 600)
        gateway = await connected_gateway(FakeEth(functions))
        assert gateway.constants is None

        constants = await gateway.fetch_constants()
        again = await gateway.fetch_constants()

        assert constants.order_expiry_seconds == 600
        assert constants.grace_period_seconds == 7 * 86400
        assert again is constants
        assert len(reads) == 1

    @pytest.mark.asyncio
    async def test_order_id_range(self):
        gateway = await connected_gateway(FakeEth(FakeFunctions([ledger_row()] * 3, first=1, nxt=3)))
        assert await gateway.order_id_range() == (1, 3)

    @pytest.mark.asyncio
    async def test_status_mapping(self):
        rows = [ledger_row(status=0), ledger_row(status=1), ledger_row(status=2)]
        gateway = await connected_gateway(FakeEth(FakeFunctions(rows)))

        statuses = [(await gateway.read_order(i)).status for i in range(3)]

        assert statuses == [OrderStatus.ACTIVE, OrderStatus.FILLED, OrderStatus.CANCELED]

    @pytest.mark.asyncio
    async def test_zero_maker_is_empty_slot(self):
        gateway = await connected_gateway(FakeEth(FakeFunctions([ledger_row(maker=ZERO_ADDRESS)])))
        assert await gateway.read_order(0) is None

    @pytest.mark.asyncio
    async def test_revert_is_permanent(self):
        functions = FakeFunctions([ContractLogicError("execution reverted")])
        gateway = await connected_gateway(FakeEth(functions))

        with pytest.raises(ContractCallError):
            await gateway.read_order(0)
        assert functions.reads[0] == 1


class TestBulkLoad:

    @pytest.mark.asyncio
    async def test_skip_empty_and_retry_transient(self):
        """ids [0..5): id 2 is empty, id 4 times out once then succeeds."""
        rows = [ledger_row(), ledger_row(), ledger_row(maker=ZERO_ADDRESS), ledger_row(), ledger_row()]
        functions = FakeFunctions(rows, fail_first_read={4})
        gateway = await connected_gateway(FakeEth(functions))

        result = await gateway.bulk_load(0, 5, batch_size=2)

        assert sorted(o.id for o in result.orders) == [0, 1, 3, 4]
        assert result.empty_ids == [2]
        assert result.failed_ids == []
        assert not result.partial
        assert functions.reads[4] == 2

    @pytest.mark.asyncio
    async def test_failures_are_skipped_and_reported(self):
        rows = [ledger_row(), ConnectionError("missing trie node"), ledger_row(status=9), ledger_row()]
        gateway = await connected_gateway(FakeEth(FakeFunctions(rows)), max_attempts=2)

        result = await gateway.bulk_load(0, 4, batch_size=10)

        assert [o.id for o in result.orders] == [0, 3]
        assert result.failed_ids == [1, 2]
        assert result.partial

    @pytest.mark.asyncio
    async def test_empty_range(self):
        gateway = await connected_gateway(FakeEth(FakeFunctions([])))
        result = await gateway.bulk_load(5, 5, batch_size=10)
        assert result.orders == [] and result.failed_ids == []


class TestLiveEvents:

    @pytest.mark.asyncio
    async def test_poll_delivers_in_ledger_order(self):
        eth = FakeEth(FakeFunctions([]), head=105)
        eth.get_logs.return_value = [
            log_entry("OrderFilled", 103, 0, orderId=7),
            log_entry("OrderCreated", 102, 5, orderId=8, maker="0x1", taker="0x0", sellToken="0xa",
                      sellAmount=1, buyToken="0xb", buyAmount=2, timestamp=5, fee=3),
            log_entry("OrderCanceled", 102, 1, orderId=6, maker="0x1", timestamp=5),
        ]
        gateway = await connected_gateway(eth)
        gateway._cursor = 101
        seen = []

        delivered = await gateway.poll_once(lambda kind, payload: seen.append((kind, payload["order_id"])))

        assert delivered == 3
        assert seen == [
            (EventKind.ORDER_CANCELED, 6),
            (EventKind.ORDER_CREATED, 8),
            (EventKind.ORDER_FILLED, 7),
        ]
        assert gateway._cursor == 106

    @pytest.mark.asyncio
    async def test_poll_reads_in_block_chunks(self):
        eth = FakeEth(FakeFunctions([]), head=125)
        gateway = await connected_gateway(eth, log_chunk_blocks=10)
        gateway._cursor = 101

        await gateway.poll_once(lambda kind, payload: None)

        ranges = [(c.args[0]["fromBlock"], c.args[0]["toBlock"]) for c in eth.get_logs.call_args_list]
        assert ranges == [(101, 110), (111, 120), (121, 125)]

    @pytest.mark.asyncio
    async def test_unknown_topics_ignored(self):
        eth = FakeEth(FakeFunctions([]), head=101)
        eth.get_logs.return_value = [{"topics": [b"\x01" * 32], "blockNumber": 101, "logIndex": 0}]
        gateway = await connected_gateway(eth)
        gateway._cursor = 101

        assert await gateway.poll_once(lambda kind, payload: None) == 0

    @pytest.mark.asyncio
    async def test_subscribe_arms_from_next_block(self):
        eth = FakeEth(FakeFunctions([]), head=50)
        gateway = await connected_gateway(eth, event_poll_interval_sec=10)

        await gateway.subscribe_live_events(lambda kind, payload: None)
        assert gateway.feed_active
        assert gateway._cursor == 51

        await gateway.unsubscribe_live_events()
        assert not gateway.feed_active

    @pytest.mark.asyncio
    async def test_feed_failure_reports_disconnect(self):
        eth = FakeEth(FakeFunctions([]), head=60)
        eth.get_logs.side_effect = ConnectionError("socket closed")
        gateway = await connected_gateway(eth, max_attempts=1, event_poll_interval_sec=0.01)
        lost = asyncio.Event()
        errors = []

        def on_disconnect(exc):
            errors.append(exc)
            lost.set()

        await gateway.subscribe_live_events(lambda kind, payload: None, from_block=55, on_disconnect=on_disconnect)
        await asyncio.wait_for(lost.wait(), timeout=1.0)

        assert isinstance(errors[0], ConnectionError)
        assert not gateway.feed_active
