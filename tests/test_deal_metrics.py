"""
Tests for DealMetricsCalculator and TokenMetadataCache.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from otc_sync.pricing.deal_metrics import DealMetricsCalculator, format_units
from otc_sync.pricing.token_metadata import TokenMetadataCache

from conftest import BUY_TOKEN, SELL_TOKEN, make_order

KNOWN = {
    SELL_TOKEN: (6, "USDC", "USD Coin"),
    BUY_TOKEN: (18, "LIB", "Liberdus"),
}


@pytest.fixture
def calculator():
    return DealMetricsCalculator(TokenMetadataCache(known=KNOWN))


def prices(mapping):
    lowered = {k.lower(): Decimal(v) for k, v in mapping.items()}
    return lambda token: lowered.get(token.lower())


class TestDealMetrics:

    def test_price_rate_deal(self, calculator):
        """100 (6 dec) for 50 (18 dec) at $2 / $4: price 0.5, rate 0.5, deal 0.25."""
        order = make_order(1, sell_amount=100 * 10**6, buy_amount=50 * 10**18)

        m = calculator.compute(order, prices({SELL_TOKEN: "2", BUY_TOKEN: "4"}))

        assert m.price == Decimal("0.5")
        assert m.rate == Decimal("0.5")
        assert m.deal == Decimal("0.25")
        assert m.formatted_sell_amount == "100.0"
        assert m.formatted_buy_amount == "50.0"
        assert not m.sell_price_estimated and not m.buy_price_estimated

    def test_independent_of_raw_scale(self):
        """Same human amounts with 18/18 decimals give the same metrics."""
        calc = DealMetricsCalculator(TokenMetadataCache(known={SELL_TOKEN: (18, "A", "A"), BUY_TOKEN: (18, "B", "B")}))
        order = make_order(1, sell_amount=100 * 10**18, buy_amount=50 * 10**18)

        m = calc.compute(order, prices({SELL_TOKEN: "2", BUY_TOKEN: "4"}))

        assert (m.price, m.rate, m.deal) == (Decimal("0.5"), Decimal("0.5"), Decimal("0.25"))

    def test_missing_price_is_neutral_and_estimated(self, calculator):
        order = make_order(1)

        m = calculator.compute(order, prices({SELL_TOKEN: "2"}))

        assert m.buy_token_usd_price == Decimal(1)
        assert m.buy_price_estimated
        assert m.rate == Decimal(2)

    def test_failing_price_lookup_never_raises(self, calculator):
        def boom(token):
            raise RuntimeError("feed down")

        m = calculator.compute(make_order(1), boom)

        assert m.rate == Decimal(1)
        assert m.sell_price_estimated and m.buy_price_estimated

    def test_zero_price_treated_as_missing(self, calculator):
        m = calculator.compute(make_order(1), prices({SELL_TOKEN: "2", BUY_TOKEN: "0"}))
        assert m.buy_price_estimated
        assert m.rate == Decimal(2)

    def test_zero_sell_amount(self, calculator):
        m = calculator.compute(make_order(1, sell_amount=0), prices({}))
        assert m.price == 0
        assert m.deal == 0

    @pytest.mark.asyncio
    async def test_empty_metadata_cache_filled_later(self):
        """A cache injected empty is the one the calculator reads after it fills."""
        decimals = {SELL_TOKEN.lower(): (6, "USDC", "USD Coin"), BUY_TOKEN.lower(): (18, "LIB", "Liberdus")}
        metadata = TokenMetadataCache(AsyncMock(side_effect=lambda token: decimals[token]))
        calc = DealMetricsCalculator(metadata)
        assert calc.token_metadata is metadata

        await metadata.ensure([SELL_TOKEN, BUY_TOKEN])
        m = calc.compute(make_order(1), prices({SELL_TOKEN: "2", BUY_TOKEN: "4"}))

        assert (m.price, m.rate, m.deal) == (Decimal("0.5"), Decimal("0.5"), Decimal("0.25"))
        assert m.formatted_sell_amount == "100.0"


class TestFormatUnits:

    @pytest.mark.parametrize("raw,decimals,expected", [
        (100 * 10**6, 6, "100.0"),
        (1_500_000, 6, "1.5"),
        (1, 18, "0.000000000000000001"),
        (0, 18, "0.0"),
        (2**256 - 1, 18, "115792089237316195423570985008687907853269984665640564039457.584007913129639935"),
    ])
    def test_format(self, raw, decimals, expected):
        assert format_units(raw, decimals) == expected


class TestTokenMetadata:

    @pytest.mark.asyncio
    async def test_reads_then_caches(self):
        reader = AsyncMock(return_value=(8, "WBTC", "Wrapped Bitcoin"))
        cache = TokenMetadataCache(reader, known={})

        await cache.ensure(["0xABC"])
        await cache.ensure(["0xabc"])

        assert reader.await_count == 1
        assert cache.get("0xAbC").symbol == "WBTC"
        assert cache.decimals("0xabc") == 8

    @pytest.mark.asyncio
    async def test_ttl_expiry_rereads(self):
        now = {"t": 0.0}
        reader = AsyncMock(return_value=(6, "X", "X"))
        cache = TokenMetadataCache(reader, ttl_sec=10, known={}, clock=lambda: now["t"])

        await cache.ensure(["0x1"])
        now["t"] = 11.0
        await cache.ensure(["0x1"])

        assert reader.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_read_falls_back(self):
        reader = AsyncMock(side_effect=ConnectionError("rpc down"))
        cache = TokenMetadataCache(reader, known={})

        await cache.ensure(["0xdead"])

        meta = cache.get("0xdead")
        assert (meta.decimals, meta.symbol, meta.name) == (18, "UNKNOWN", "Unknown Token")
        assert meta.is_fallback

    @pytest.mark.asyncio
    async def test_known_tokens_skip_reads(self):
        reader = AsyncMock()
        cache = TokenMetadataCache(reader)

        await cache.ensure(["0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359"])

        reader.assert_not_awaited()
        assert cache.decimals("0x3c499c542cef5e3811e1192ce70d8cc03d5c3359") == 6

    def test_unknown_token_without_read(self):
        assert TokenMetadataCache(known={}).decimals("0xfeed") == 18
