"""Base feed interface and feed registry.

Every exchange feed keeps one streaming connection (through the composed
:class:`~.connection.ReconnectingWebSocket`) and turns exchange messages
into :class:`~solink.src.Price.Price` events for the pairs it tracks.

Subclasses provide the exchange-specific capabilities:

    - ``name``/``url``/``decimals``: class variables
    - ``pair_symbol()``: the exchange's symbol for a pair
    - ``subscribe_messages()``: frames that subscribe one pair
    - ``parse_message()``: a ``Price`` or ``None`` for non-price frames

.. code-block:: python

    @register_feed
    class MyFeed(BaseFeed):
        name = "myexchange"
        url = "wss://stream.example.com"

        def pair_symbol(self, pair: TradingPair) -> str:
            return pair.symbol("-", upper=True)

        def subscribe_messages(self, pair: TradingPair) -> list[dict]:
            return [{"op": "subscribe", "market": self.pair_symbol(pair)}]

        def parse_message(self, raw: str | bytes) -> Price | None:
            msg = json.loads(raw)
            return self.make_price(msg["market"], msg["last"])
"""

from __future__ import annotations

import asyncio
import json
import logging
import zlib
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar

from websockets.exceptions import ConnectionClosed, WebSocketException

from ..Price import Price, to_fixed_point
from ..TradingPair import TradingPair
from .connection import ConnectionState, ReconnectingWebSocket

logger = logging.getLogger(__name__)

PriceListener = Callable[[Price], None]


class FeedError(Exception):
    """Base exception for feed errors."""

    pass


class FeedConfigError(FeedError):
    """Raised when a feed is requested or configured incorrectly."""

    pass


class BaseFeed(ABC):
    """Abstract base class for streaming exchange feeds.

    :cvar name: Unique identifier for this feed.
    :cvar url: Websocket endpoint.
    :cvar decimals: Fixed-point decimals of emitted prices.
    :ivar connection: Composed reconnecting websocket.
    """

    name: ClassVar[str] = ""
    url: ClassVar[str] = ""
    decimals: ClassVar[int] = 2

    def __init__(self, connect: Callable[..., Any] | None = None) -> None:
        """Initialize the feed.

        :param connect: Optional websocket connection factory (tests).
        """
        self._pairs: dict[str, TradingPair] = {}
        self._symbols: dict[str, TradingPair] = {}
        self._sent: set[str] = set()
        self._listeners: list[PriceListener] = []
        self._task: asyncio.Task | None = None
        self.connection = ReconnectingWebSocket(
            self.url,
            on_open=self._on_open,
            on_message=self._on_message,
            name=self.name,
            connect=connect,
        )

    @abstractmethod
    def pair_symbol(self, pair: TradingPair) -> str:
        """Return the exchange's symbol for ``pair``."""
        pass

    @abstractmethod
    def subscribe_messages(self, pair: TradingPair) -> list[dict]:
        """Return the JSON frames that subscribe ``pair``."""
        pass

    @abstractmethod
    def parse_message(self, raw: str | bytes) -> Price | None:
        """Parse one frame.

        :param raw: Frame as received.
        :returns: A price, or None if the frame is not a price update.
        :raises ValueError: (or KeyError/TypeError) on malformed frames;
            the caller drops them.
        """
        pass

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def pairs(self) -> list[TradingPair]:
        """Pairs this feed has been asked to track."""
        return list(self._pairs.values())

    @property
    def pending_pairs(self) -> list[TradingPair]:
        """Subscribed pairs not yet sent on the current connection."""
        return [p for key, p in self._pairs.items() if key not in self._sent]

    def add_listener(self, listener: PriceListener) -> None:
        """Register a callback for every emitted price."""
        self._listeners.append(listener)

    def remove_listener(self, listener: PriceListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def connect(self) -> asyncio.Task:
        """Start the connection loop in the background (idempotent).

        :returns: The task running the connection loop.
        """
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(
                self.connection.run(), name=f"feed-{self.name}"
            )
        return self._task

    async def close(self) -> None:
        """Stop the connection loop."""
        await self.connection.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def subscribe(self, pair: TradingPair) -> None:
        """Track ``pair``. Re-subscribing is a no-op.

        Before the connection is up the pair is queued and sent on connect.

        :param pair: Pair to track.
        """
        key = str(pair)
        if key in self._pairs:
            return

        self._pairs[key] = pair
        self._symbols[self.pair_symbol(pair)] = pair

        if self.connection.is_connected:
            await self._send_subscribe(pair)
        else:
            logger.debug(f"[{self.name}] Queued subscription for {pair}")

    def make_price(self, symbol: str, raw_value: Any) -> Price | None:
        """Build a price for an exchange symbol.

        :param symbol: Exchange symbol from the message.
        :param raw_value: Price as sent by the exchange.
        :returns: A Price, or None if the symbol is not tracked.
        :raises ValueError: If ``raw_value`` is not a valid price.
        """
        pair = self._symbols.get(symbol)
        if pair is None:
            return None
        return Price(
            source=self.name,
            pair=pair,
            decimals=self.decimals,
            value=to_fixed_point(raw_value, self.decimals),
        )

    async def _on_open(self) -> None:
        self._sent.clear()
        for pair in list(self._pairs.values()):
            await self._send_subscribe(pair)

    async def _send_subscribe(self, pair: TradingPair) -> None:
        try:
            for message in self.subscribe_messages(pair):
                if not await self.connection.send(json.dumps(message)):
                    return
        except (ConnectionClosed, WebSocketException) as e:
            # Resent by _on_open after the reconnect
            logger.warning(f"[{self.name}] Failed to subscribe {pair}: {e}")
            return
        self._sent.add(str(pair))
        logger.info(f"[{self.name}] Subscribed to {pair}")

    def _on_message(self, raw: str | bytes) -> None:
        try:
            price = self.parse_message(raw)
        except (ValueError, KeyError, TypeError, IndexError, AttributeError, zlib.error) as e:
            logger.debug(f"[{self.name}] Dropped malformed message ({e}): {raw[:200]!r}")
            return

        if price is None:
            return

        for listener in list(self._listeners):
            try:
                listener(price)
            except Exception:
                logger.exception(f"[{self.name}] Price listener failed")


# Registry of available feeds (populated by subclass imports)
FEED_REGISTRY: dict[str, type[BaseFeed]] = {}


def register_feed(cls: type[BaseFeed]) -> type[BaseFeed]:
    """Decorator to register a feed class in the global registry.

    :param cls: Feed class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If the feed has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Feed {cls.__name__} must define a 'name' class variable")
    FEED_REGISTRY[cls.name] = cls
    return cls


def get_feed(name: str, **kwargs: Any) -> BaseFeed:
    """Get a feed instance by name.

    :param name: Feed name (e.g., "coinbase", "bitstamp").
    :returns: Feed instance.
    :raises FeedConfigError: If the feed name is unknown.
    """
    if name not in FEED_REGISTRY:
        available = ", ".join(sorted(FEED_REGISTRY.keys()))
        raise FeedConfigError(f"Unknown feed '{name}'. Available: {available}")
    return FEED_REGISTRY[name](**kwargs)


def get_available_feeds() -> list[str]:
    """Get list of available feed names.

    :returns: Sorted list of registered feed names.
    """
    return sorted(FEED_REGISTRY.keys())
