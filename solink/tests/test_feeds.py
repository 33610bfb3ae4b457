"""Unit tests for the exchange feeds and their connection loop."""

import json
import zlib
from unittest.mock import patch

import pytest

from solink.src.TradingPair import TradingPair
from solink.src.feeds import (
    BinanceFeed,
    BitstampFeed,
    CoinbaseFeed,
    FeedConfigError,
    OkexFeed,
    get_available_feeds,
    get_feed,
)
from solink.src.feeds.connection import ConnectionState, ReconnectingWebSocket

from conftest import BTC_USD, FakeWebSocket, StubFeed


def deflate_raw(text: str) -> bytes:
    compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
    return compressor.compress(text.encode()) + compressor.flush()


class TestRegistry:
    """Test the feed registry."""

    def test_available_feeds(self) -> None:
        assert get_available_feeds() == ["binance", "bitstamp", "coinbase", "okex"]

    def test_get_feed(self) -> None:
        assert isinstance(get_feed("coinbase"), CoinbaseFeed)

    def test_unknown_feed(self) -> None:
        with pytest.raises(FeedConfigError, match="Unknown feed 'ftx'"):
            get_feed("ftx")


class TestSymbols:
    """Test exchange symbols and subscribe frames."""

    def test_coinbase(self) -> None:
        feed = CoinbaseFeed()
        assert feed.pair_symbol(BTC_USD) == "BTC-USD"
        assert feed.subscribe_messages(BTC_USD) == [
            {"type": "subscribe", "product_ids": ["BTC-USD"], "channels": ["ticker"]}
        ]

    def test_bitstamp(self) -> None:
        feed = BitstampFeed()
        assert feed.subscribe_messages(BTC_USD) == [
            {"event": "bts:subscribe", "data": {"channel": "live_trades_btcusd"}}
        ]

    def test_binance_quotes_usd_as_usdc(self) -> None:
        feed = BinanceFeed()
        assert feed.pair_symbol(BTC_USD) == "BTCUSDC"
        first, = feed.subscribe_messages(BTC_USD)
        second, = feed.subscribe_messages(BTC_USD)
        assert first["params"] == ["btcusdc@aggTrade"]
        assert second["id"] == first["id"] + 1

    def test_okex(self) -> None:
        feed = OkexFeed()
        assert feed.subscribe_messages(BTC_USD) == [
            {"op": "subscribe", "args": [{"channel": "tickers", "instId": "BTC-USDC"}]}
        ]


class TestParsing:
    """Test turning exchange frames into prices."""

    async def test_coinbase_ticker(self) -> None:
        feed = CoinbaseFeed()
        await feed.subscribe(BTC_USD)

        price = feed.parse_message(
            json.dumps({"type": "ticker", "product_id": "BTC-USD", "price": "100.02"})
        )
        assert price.source == "coinbase"
        assert price.pair == BTC_USD
        assert price.decimals == 2
        assert price.value == 10002

    async def test_coinbase_non_ticker(self) -> None:
        feed = CoinbaseFeed()
        await feed.subscribe(BTC_USD)

        assert feed.parse_message(json.dumps({"type": "subscriptions"})) is None
        assert feed.parse_message(json.dumps({"type": "error", "message": "bad"})) is None

    async def test_untracked_symbol(self) -> None:
        feed = CoinbaseFeed()
        await feed.subscribe(BTC_USD)

        frame = {"type": "ticker", "product_id": "ETH-USD", "price": "2000"}
        assert feed.parse_message(json.dumps(frame)) is None

    async def test_bitstamp_trade(self) -> None:
        feed = BitstampFeed()
        await feed.subscribe(BTC_USD)

        frame = {
            "event": "trade",
            "channel": "live_trades_btcusd",
            "data": {"price": 100.0, "price_str": "100.01"},
        }
        assert feed.parse_message(json.dumps(frame)).value == 10001
        assert feed.parse_message(json.dumps({"event": "bts:request_reconnect"})) is None

    async def test_binance_agg_trade(self) -> None:
        feed = BinanceFeed()
        await feed.subscribe(BTC_USD)

        frame = {"e": "aggTrade", "s": "BTCUSDC", "p": "99.99000000"}
        price = feed.parse_message(json.dumps(frame))
        assert price.pair == BTC_USD
        assert price.value == 9999
        assert feed.parse_message(json.dumps({"result": None, "id": 1})) is None

    async def test_okex_compressed_frame(self) -> None:
        feed = OkexFeed()
        await feed.subscribe(BTC_USD)

        frame = json.dumps(
            {"arg": {"channel": "tickers", "instId": "BTC-USDC"}, "data": [{"last": "100.5"}]}
        )
        assert feed.parse_message(deflate_raw(frame)).value == 10050
        assert feed.parse_message(frame).value == 10050
        assert feed.parse_message(json.dumps({"event": "subscribe"})) is None

    @pytest.mark.parametrize("feed_class", [CoinbaseFeed, BitstampFeed, BinanceFeed, OkexFeed])
    @pytest.mark.parametrize("frame", ["[]", "null", '"ticker"', "1"])
    async def test_non_object_frames_ignored(self, feed_class, frame) -> None:
        feed = feed_class()
        await feed.subscribe(BTC_USD)
        assert feed.parse_message(frame) is None


class TestMessageHandling:
    """Test frame dispatch to listeners."""

    def test_malformed_frames_dropped(self) -> None:
        """Malformed frames never reach listeners and never raise."""
        feed = OkexFeed()
        received = []
        feed.add_listener(received.append)

        feed._on_message("not json")
        feed._on_message(b"\x00\x01garbage")
        feed._on_message(json.dumps({"arg": {"instId": "BTC-USDC"}, "data": [{}]}))

        assert received == []

    async def test_failing_listener_isolated(self) -> None:
        """One listener raising does not stop the others."""
        feed = StubFeed()
        await feed.subscribe(BTC_USD)
        received = []

        def broken(price) -> None:
            raise RuntimeError("boom")

        feed.add_listener(broken)
        feed.add_listener(received.append)
        feed.emit("100.00")

        assert [p.value for p in received] == [10000]

    async def test_remove_listener(self) -> None:
        feed = StubFeed()
        await feed.subscribe(BTC_USD)
        received = []
        feed.add_listener(received.append)
        feed.remove_listener(received.append)

        feed.emit("100.00")
        assert received == []

    async def test_non_object_frame_keeps_feed_alive(self) -> None:
        """A JSON array frame is skipped and the next ticker still arrives."""
        ticker = json.dumps({"type": "ticker", "product_id": "BTC-USD", "price": "100.00"})
        ws = FakeWebSocket(["[]", ticker])
        feed = CoinbaseFeed(connect=lambda url, **kwargs: ws)
        received = []
        feed.add_listener(received.append)
        await feed.subscribe(BTC_USD)

        await feed.connection._serve()

        assert [p.value for p in received] == [10000]

    async def test_nested_shape_errors_dropped(self) -> None:
        bitstamp, okex = BitstampFeed(), OkexFeed()
        received = []
        for feed in (bitstamp, okex):
            await feed.subscribe(BTC_USD)
            feed.add_listener(received.append)

        bitstamp._on_message(
            json.dumps({"event": "trade", "channel": "live_trades_btcusd", "data": []})
        )
        okex._on_message(json.dumps({"arg": [], "data": [{"last": "1"}]}))
        okex._on_message(json.dumps({"arg": {"instId": "BTC-USDC"}, "data": ["1"]}))

        assert received == []


class TestSubscriptions:
    """Test subscription bookkeeping across connections."""

    async def test_subscribe_is_idempotent(self) -> None:
        feed = CoinbaseFeed()
        await feed.subscribe(BTC_USD)
        await feed.subscribe(TradingPair("BTC", "USD"))

        assert feed.pairs == [BTC_USD]

    async def test_queued_until_connected(self) -> None:
        """Pairs subscribed before connecting are sent on open."""
        ws = FakeWebSocket(
            [json.dumps({"type": "ticker", "product_id": "BTC-USD", "price": "100.00"})]
        )
        feed = CoinbaseFeed(connect=lambda url, **kwargs: ws)
        received = []
        feed.add_listener(received.append)

        await feed.subscribe(BTC_USD)
        assert feed.pending_pairs == [BTC_USD]

        await feed.connection._serve()

        assert [json.loads(m) for m in ws.sent] == feed.subscribe_messages(BTC_USD)
        assert feed.pending_pairs == []
        assert [p.value for p in received] == [10000]

    async def test_resubscribe_on_reconnect(self) -> None:
        """Every new connection replays all subscriptions."""
        sockets = [FakeWebSocket(), FakeWebSocket()]
        feed = BitstampFeed(connect=lambda url, **kwargs: sockets.pop(0))
        first, second = sockets

        await feed.subscribe(BTC_USD)
        await feed.connection._serve()
        await feed.connection._serve()

        assert len(first.sent) == 1
        assert second.sent == first.sent

    async def test_subscribe_while_connected_sends_now(self) -> None:
        ws = FakeWebSocket()
        feed = CoinbaseFeed(connect=lambda url, **kwargs: ws)
        feed.connection._ws = ws
        feed.connection.state = ConnectionState.CONNECTED

        await feed.subscribe(BTC_USD)
        assert len(ws.sent) == 1


class TestReconnectingWebSocket:
    """Test the reconnect loop."""

    async def noop(self) -> None:
        pass

    def test_backoff_doubles_and_caps(self) -> None:
        conn = ReconnectingWebSocket("wss://x", self.noop, lambda m: None)
        delays = [conn.next_backoff() for _ in range(7)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    async def test_successful_connect_resets_backoff(self) -> None:
        conn = ReconnectingWebSocket(
            "wss://x", self.noop, lambda m: None, connect=lambda url, **kwargs: FakeWebSocket()
        )
        conn.next_backoff()
        conn.next_backoff()

        await conn._serve()
        assert conn.next_backoff() == 1.0

    async def test_run_retries_with_backoff(self) -> None:
        """Failed connects are retried with growing delays until closed."""
        attempts = []

        def connect(url, **kwargs):
            attempts.append(url)
            raise OSError("connection refused")

        conn = ReconnectingWebSocket("wss://x", self.noop, lambda m: None, connect=connect)
        delays = []

        async def fake_sleep(delay: float) -> None:
            delays.append(delay)
            if len(delays) == 3:
                await conn.close()

        with patch("solink.src.feeds.connection.asyncio.sleep", side_effect=fake_sleep):
            await conn.run()

        assert delays == [1.0, 2.0, 4.0]
        assert len(attempts) == 3
        assert conn.state is ConnectionState.DISCONNECTED

    async def test_unexpected_error_reconnects(self) -> None:
        """An error raised while handling frames ends the connection, not the loop."""
        sockets = [FakeWebSocket(["boom"]), FakeWebSocket(["ok"])]
        handled = []

        def on_message(message) -> None:
            if message == "boom":
                raise RuntimeError("handler bug")
            handled.append(message)

        conn = ReconnectingWebSocket(
            "wss://x", self.noop, on_message, connect=lambda url, **kwargs: sockets.pop(0)
        )

        async def fake_sleep(delay: float) -> None:
            if not sockets:
                await conn.close()

        with patch("solink.src.feeds.connection.asyncio.sleep", side_effect=fake_sleep):
            await conn.run()

        assert handled == ["ok"]
        assert sockets == []

    async def test_send_when_disconnected(self) -> None:
        conn = ReconnectingWebSocket("wss://x", self.noop, lambda m: None)
        assert await conn.send("hello") is False
