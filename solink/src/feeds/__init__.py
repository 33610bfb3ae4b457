"""Exchange price feeds.

Importing this package registers every bundled feed:

.. code-block:: python

    >>> from solink.src.feeds import get_feed
    >>> feed = get_feed("coinbase")
"""

from .base import (
    FEED_REGISTRY,
    BaseFeed,
    FeedConfigError,
    FeedError,
    get_available_feeds,
    get_feed,
    register_feed,
)
from .binance import BinanceFeed
from .bitstamp import BitstampFeed
from .coinbase import CoinbaseFeed
from .connection import ConnectionState, ReconnectingWebSocket
from .okex import OkexFeed

__all__ = [
    "BaseFeed",
    "BinanceFeed",
    "BitstampFeed",
    "CoinbaseFeed",
    "ConnectionState",
    "FEED_REGISTRY",
    "FeedConfigError",
    "FeedError",
    "OkexFeed",
    "ReconnectingWebSocket",
    "get_available_feeds",
    "get_feed",
    "register_feed",
]
