"""
DealMetricsCalculator: valuation of an order against market prices.

    price = buy_amount / sell_amount        (taker receives per unit given)
    rate  = sell_usd / buy_usd
    deal  = price * rate                     (higher favors the taker)

Amounts are normalized by each token's decimals so the result does not
depend on raw unit scale. A token without a usable price is valued at 1
and flagged as estimated.
"""

from __future__ import annotations

import decimal
import logging
from decimal import Decimal
from typing import Callable, Optional, Tuple

from otc_sync.orders.models import DealMetrics, Order
from otc_sync.pricing.token_metadata import TokenMetadataCache

log = logging.getLogger("otc_sync")

NEUTRAL_PRICE = Decimal(1)

PriceOf = Callable[[str], Optional[Decimal]]

# uint256 amounts have up to 78 digits
_AMOUNT_PRECISION = 100


def to_decimal_amount(raw: int, decimals: int) -> Decimal:
    with decimal.localcontext() as ctx:
        ctx.prec = _AMOUNT_PRECISION
        return Decimal(int(raw)) / (Decimal(10) ** int(decimals))


def format_units(raw: int, decimals: int) -> str:
    """Human amount, always with a fractional part (``"100.0"``, ``"0.25"``)."""
    text = format(to_decimal_amount(raw, decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text + ".0" if "." not in text else text


class DealMetricsCalculator:
    """
    Usage:
        calc = DealMetricsCalculator(token_metadata)
        metrics = calc.compute(order, price_feed.get_price, price_timestamp=price_feed.last_update)
        cache.set_deal_metrics(order.id, metrics)
    """

    def __init__(self, token_metadata: Optional[TokenMetadataCache] = None) -> None:
        self.token_metadata = token_metadata if token_metadata is not None else TokenMetadataCache()

    @staticmethod
    def _usd_price(price_of: PriceOf, token: str) -> Tuple[Decimal, bool]:
        try:
            value = price_of(token)
        except Exception as exc:
            log.debug("price lookup failed for %s: %s", token, exc)
            return NEUTRAL_PRICE, True
        if value is None:
            return NEUTRAL_PRICE, True
        try:
            price = Decimal(str(value))
        except decimal.InvalidOperation:
            return NEUTRAL_PRICE, True
        if not price.is_finite() or price <= 0:
            return NEUTRAL_PRICE, True
        return price, False

    def compute(self, order: Order, price_of: PriceOf, price_timestamp: Optional[float] = None) -> DealMetrics:
        sell_decimals = self.token_metadata.decimals(order.sell_token)
        buy_decimals = self.token_metadata.decimals(order.buy_token)
        sell_amount = to_decimal_amount(order.sell_amount, sell_decimals)
        buy_amount = to_decimal_amount(order.buy_amount, buy_decimals)

        sell_usd, sell_estimated = self._usd_price(price_of, order.sell_token)
        buy_usd, buy_estimated = self._usd_price(price_of, order.buy_token)

        price = buy_amount / sell_amount if sell_amount else Decimal(0)
        rate = sell_usd / buy_usd

        return DealMetrics(
            price=price,
            rate=rate,
            deal=price * rate,
            sell_amount=sell_amount,
            buy_amount=buy_amount,
            formatted_sell_amount=format_units(order.sell_amount, sell_decimals),
            formatted_buy_amount=format_units(order.buy_amount, buy_decimals),
            sell_token_usd_price=sell_usd,
            buy_token_usd_price=buy_usd,
            sell_price_estimated=sell_estimated,
            buy_price_estimated=buy_estimated,
            price_timestamp=price_timestamp,
        )
