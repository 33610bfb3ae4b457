"""OKX (formerly OKEx) feed.

Endpoint: wss://ws.okx.com:8443/ws/v5/public
Channel: ``tickers`` with ``instId`` such as ``BTC-USDC``. USD is quoted as
USDC. Binary frames are raw-deflate compressed and are inflated before
parsing.
"""

from __future__ import annotations

import json
import logging
import zlib

from ..Price import Price
from ..TradingPair import TradingPair
from .base import BaseFeed, register_feed

logger = logging.getLogger(__name__)

SYMBOL_ALIASES = {"usd": "usdc"}


def inflate_raw(data: bytes) -> str:
    """Decompress a raw-deflate frame (no zlib header).

    :raises zlib.error: If the frame is not valid deflate data.
    """
    decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
    return (decompressor.decompress(data) + decompressor.flush()).decode("utf-8")


@register_feed
class OkexFeed(BaseFeed):
    """Ticker stream from OKX."""

    name = "okex"
    url = "wss://ws.okx.com:8443/ws/v5/public"

    def pair_symbol(self, pair: TradingPair) -> str:
        return pair.symbol("-", upper=True, aliases=SYMBOL_ALIASES)

    def subscribe_messages(self, pair: TradingPair) -> list[dict]:
        return [
            {
                "op": "subscribe",
                "args": [{"channel": "tickers", "instId": self.pair_symbol(pair)}],
            }
        ]

    def parse_message(self, raw: str | bytes) -> Price | None:
        if isinstance(raw, (bytes, bytearray)):
            raw = inflate_raw(bytes(raw))

        msg = json.loads(raw)
        if not isinstance(msg, dict):
            return None

        if msg.get("event") == "error":
            logger.warning(f"[okex] Error from server: {msg.get('code')} {msg.get('msg')}")
            return None

        data = msg.get("data")
        if not data:
            return None

        inst_id = msg["arg"]["instId"]
        return self.make_price(inst_id, data[0]["last"])
