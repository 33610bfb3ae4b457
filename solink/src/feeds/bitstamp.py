"""Bitstamp feed.

Endpoint: wss://ws.bitstamp.net
Channel: ``live_trades_<base><quote>`` (e.g. ``live_trades_btcusd``)
"""

from __future__ import annotations

import json
import logging

from ..Price import Price
from ..TradingPair import TradingPair
from .base import BaseFeed, register_feed

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "live_trades_"


@register_feed
class BitstampFeed(BaseFeed):
    """Live trades stream from Bitstamp."""

    name = "bitstamp"
    url = "wss://ws.bitstamp.net"

    def pair_symbol(self, pair: TradingPair) -> str:
        return pair.symbol()

    def subscribe_messages(self, pair: TradingPair) -> list[dict]:
        return [
            {
                "event": "bts:subscribe",
                "data": {"channel": f"{CHANNEL_PREFIX}{self.pair_symbol(pair)}"},
            }
        ]

    def parse_message(self, raw: str | bytes) -> Price | None:
        msg = json.loads(raw)
        if not isinstance(msg, dict):
            return None

        event = msg.get("event")
        if event == "bts:request_reconnect":
            logger.info("[bitstamp] Server requested reconnect")
            return None
        if event != "trade":
            return None

        channel = msg["channel"]
        if not channel.startswith(CHANNEL_PREFIX):
            return None

        data = msg["data"]
        # price_str keeps the exchange's exact decimal text
        raw_price = data.get("price_str") or data["price"]
        return self.make_price(channel[len(CHANNEL_PREFIX):], raw_price)
