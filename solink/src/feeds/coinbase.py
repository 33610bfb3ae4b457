"""Coinbase Exchange feed.

Endpoint: wss://ws-feed.exchange.coinbase.com
Channel: ticker, one product id per pair (``BTC-USD``)
"""

from __future__ import annotations

import json
import logging

from ..Price import Price
from ..TradingPair import TradingPair
from .base import BaseFeed, register_feed

logger = logging.getLogger(__name__)


@register_feed
class CoinbaseFeed(BaseFeed):
    """Ticker stream from Coinbase Exchange. No API key required."""

    name = "coinbase"
    url = "wss://ws-feed.exchange.coinbase.com"

    def pair_symbol(self, pair: TradingPair) -> str:
        return pair.symbol("-", upper=True)

    def subscribe_messages(self, pair: TradingPair) -> list[dict]:
        return [
            {
                "type": "subscribe",
                "product_ids": [self.pair_symbol(pair)],
                "channels": ["ticker"],
            }
        ]

    def parse_message(self, raw: str | bytes) -> Price | None:
        msg = json.loads(raw)
        if not isinstance(msg, dict):
            return None

        if msg.get("type") == "error":
            logger.warning(f"[coinbase] Error from server: {msg.get('message')} {msg.get('reason', '')}")
            return None
        if msg.get("type") != "ticker":
            return None

        return self.make_price(msg["product_id"], msg["price"])
