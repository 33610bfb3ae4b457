"""Binance feed.

Endpoint: wss://stream.binance.com:9443/ws
Stream: ``<base><quote>@aggTrade``. Binance has no USD spot market, so USD
is quoted as USDC.
"""

from __future__ import annotations

import itertools
import json
import logging

from ..Price import Price
from ..TradingPair import TradingPair
from .base import BaseFeed, register_feed

logger = logging.getLogger(__name__)

SYMBOL_ALIASES = {"usd": "usdc"}


@register_feed
class BinanceFeed(BaseFeed):
    """Aggregated trades stream from Binance."""

    name = "binance"
    url = "wss://stream.binance.com:9443/ws"

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._request_ids = itertools.count(1)

    def pair_symbol(self, pair: TradingPair) -> str:
        return pair.symbol(upper=True, aliases=SYMBOL_ALIASES)

    def subscribe_messages(self, pair: TradingPair) -> list[dict]:
        stream = f"{self.pair_symbol(pair).lower()}@aggTrade"
        return [{"method": "SUBSCRIBE", "params": [stream], "id": next(self._request_ids)}]

    def parse_message(self, raw: str | bytes) -> Price | None:
        msg = json.loads(raw)
        if not isinstance(msg, dict):
            return None

        if "error" in msg:
            logger.warning(f"[binance] Error from server: {msg['error']}")
            return None
        if "result" in msg:
            # Subscription acknowledgement
            return None
        if msg.get("e") != "aggTrade":
            return None

        return self.make_price(msg["s"], msg["p"])
