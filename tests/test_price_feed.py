"""
Tests for PriceFeed against a mocked DexScreener endpoint.
"""
import asyncio
from decimal import Decimal

import httpx
import pytest

from otc_sync.infra.request_governor import GovernorConfig, RequestGovernor
from otc_sync.pricing.price_feed import PriceFeed, PriceFeedConfig, PriceFeedEvent, extract_prices

TOKEN_A = "0x" + "a1" * 20
TOKEN_B = "0x" + "b2" * 20
TOKEN_C = "0x" + "c3" * 20


def pair(base, quote, price_usd, price_native="1", liquidity=1000):
    return {
        "baseToken": {"address": base},
        "quoteToken": {"address": quote},
        "priceUsd": price_usd,
        "priceNative": price_native,
        "liquidity": {"usd": liquidity},
    }


class FakeDex:
    """Serves /latest/dex/tokens/{csv} from a per-token pair table."""

    def __init__(self, pairs_by_token=None, status=200):
        self.pairs_by_token = pairs_by_token or {}
        self.status = status
        self.requests = []

    def handler(self, request):
        tokens = request.url.path.rsplit("/", 1)[-1].split(",")
        self.requests.append(tokens)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "down"})
        pairs = []
        for token in tokens:
            pairs.extend(self.pairs_by_token.get(token, []))
        return httpx.Response(200, json={"pairs": pairs or None})


def make_feed(dex, tokens=(), **config):
    client = httpx.AsyncClient(transport=httpx.MockTransport(dex.handler), base_url="https://dex.test")
    governor = RequestGovernor(GovernorConfig(
        name="prices",
        min_interval_sec=0.0,
        max_concurrent=1,
        max_attempts=1,
        backoff_base_sec=0.0,
        backoff_max_sec=0.0,
    ))
    return PriceFeed(
        PriceFeedConfig(**config),
        governor=governor,
        client=client,
        token_source=lambda: list(tokens),
        log_event=lambda event, **kw: None,
    )


class TestExtractPrices:

    def test_most_liquid_pair_wins(self):
        prices = {}
        extract_prices([
            pair(TOKEN_A, TOKEN_C, "1.00", liquidity=10),
            pair(TOKEN_A, TOKEN_C, "2.00", liquidity=5000),
        ], prices)
        assert prices[TOKEN_A] == Decimal("2.00")

    def test_quote_price_derived_from_native(self):
        prices = {}
        extract_prices([pair(TOKEN_A.upper().replace("0X", "0x"), TOKEN_B, "10", price_native="4")], prices)
        assert prices[TOKEN_A] == Decimal("10")
        assert prices[TOKEN_B] == Decimal("2.5")

    def test_malformed_pairs_skipped(self):
        prices = {}
        extract_prices([{"baseToken": None}, pair(TOKEN_A, TOKEN_B, None), pair(TOKEN_C, TOKEN_B, "NaN")], prices)
        assert prices == {}


class TestRefresh:

    @pytest.mark.asyncio
    async def test_chunked_requests(self):
        tokens = ["0x%040x" % i for i in range(65)]
        dex = FakeDex({t: [pair(t, TOKEN_C, "1")] for t in tokens})
        feed = make_feed(dex, tokens, chunk_size=30)

        result = await feed.refresh()

        assert result.success
        assert [len(r) for r in dex.requests] == [30, 30, 5]
        assert feed.get_price(tokens[64]) == Decimal("1")

    @pytest.mark.asyncio
    async def test_missing_tokens_fetched_individually(self):
        dex = FakeDex({TOKEN_A: [pair(TOKEN_A, TOKEN_C, "3")]})
        feed = make_feed(dex, [TOKEN_A, TOKEN_B])

        await feed.refresh()

        assert dex.requests == [[TOKEN_A, TOKEN_B], [TOKEN_B]]
        assert feed.get_price(TOKEN_A.upper().replace("0X", "0x")) == Decimal("3")
        assert feed.get_price(TOKEN_B) is None
        assert feed.is_price_estimated(TOKEN_B)

    @pytest.mark.asyncio
    async def test_extra_tokens_included(self):
        dex = FakeDex({TOKEN_C: [pair(TOKEN_C, TOKEN_A, "5")]})
        feed = make_feed(dex, [], extra_tokens=[TOKEN_C])

        await feed.refresh()

        assert feed.get_price(TOKEN_C) == Decimal("5")

    @pytest.mark.asyncio
    async def test_no_tokens(self):
        dex = FakeDex()
        feed = make_feed(dex, [])

        result = await feed.refresh()

        assert result.success
        assert result.message == "No tokens to update"
        assert dex.requests == []

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_run(self):
        dex = FakeDex({TOKEN_A: [pair(TOKEN_A, TOKEN_B, "1")]})
        feed = make_feed(dex, [TOKEN_A])

        first, second = await asyncio.gather(feed.refresh(), feed.refresh())

        assert first is second
        assert len(dex.requests) == 1

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_prices(self):
        dex = FakeDex({TOKEN_A: [pair(TOKEN_A, TOKEN_B, "7")]})
        feed = make_feed(dex, [TOKEN_A])
        await feed.refresh()
        updated_at = feed.last_update

        dex.status = 500
        result = await feed.refresh()

        assert not result.success
        assert feed.get_price(TOKEN_A) == Decimal("7")
        assert feed.last_update == updated_at


class TestListeners:

    @pytest.mark.asyncio
    async def test_events_in_order(self):
        dex = FakeDex({TOKEN_A: [pair(TOKEN_A, TOKEN_B, "1", price_native="2")]})
        feed = make_feed(dex, [TOKEN_A])
        seen = []

        def broken(event, data):
            raise RuntimeError("listener bug")

        feed.add_listener(broken)
        feed.add_listener(lambda event, data: seen.append((event, data)))

        await feed.refresh()

        assert seen == [(PriceFeedEvent.REFRESH_START, None), (PriceFeedEvent.REFRESH_COMPLETE, 2)]

    @pytest.mark.asyncio
    async def test_error_event(self):
        dex = FakeDex(status=503)
        feed = make_feed(dex, [TOKEN_A])
        seen = []
        feed.add_listener(lambda event, data: seen.append(event))

        await feed.refresh()

        assert seen == [PriceFeedEvent.REFRESH_START, PriceFeedEvent.REFRESH_ERROR]

    @pytest.mark.asyncio
    async def test_owned_client_reopened_after_stop(self):
        dex = FakeDex({TOKEN_A: [pair(TOKEN_A, TOKEN_B, "3")]})
        feed = PriceFeed(
            PriceFeedConfig(base_url="https://dex.test", min_interval_sec=0.0),
            transport=httpx.MockTransport(dex.handler),
            token_source=lambda: [TOKEN_A],
            log_event=lambda event, **kw: None,
        )
        assert (await feed.refresh()).success
        first_client = feed.client

        await feed.stop()
        assert first_client.is_closed
        result = await feed.refresh()

        assert result.success
        assert feed.client is not first_client
        assert len(dex.requests) == 2
        await feed.stop()

    @pytest.mark.asyncio
    async def test_stop_leaves_shared_client_open(self):
        feed = make_feed(FakeDex(), [])
        await feed.start()
        await feed.stop()
        assert not feed.client.is_closed
        await feed.client.aclose()
