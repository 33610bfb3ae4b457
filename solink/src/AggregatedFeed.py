"""AggregatedFeed: Per-pair fan-in of exchange feeds into a median stream.

Each source keeps a single slot holding its latest price. Every incoming
price overwrites its source slot and the median of the fresh, non-zero
slots is published to all attached consumers.

Consumers read through :meth:`AggregatedFeed.medians`, a lazy infinite
iterator. Each call attaches a new consumer that sees only updates published
after it attached. A slow consumer skips intermediate values and always
receives the latest one.

.. code-block:: python

    feed = AggregatedFeed([coinbase, bitstamp], "btc:usd", notifier)
    await feed.start()
    async for price in feed.medians():
        print(price.value)
"""

from __future__ import annotations

import asyncio
import logging
import time

from .ErrorNotifier import ErrorNotifier
from .Price import Price
from .PriceAggregator import AggregationResult, PriceAggregator
from .SourceManager import SourceManager
from .TradingPair import TradingPair
from .feeds import BaseFeed

logger = logging.getLogger(__name__)

MEDIAN_SOURCE = "median"


class LatestValueMailbox:
    """Holds one value; a new value replaces an unread one."""

    def __init__(self) -> None:
        self._value: Price | None = None
        self._ready = asyncio.Event()

    def put(self, value: Price) -> None:
        self._value = value
        self._ready.set()

    async def get(self) -> Price:
        await self._ready.wait()
        self._ready.clear()
        value = self._value
        self._value = None
        return value


class MedianStream:
    """Async iterator over medians, attached to its feed from creation.

    Not restartable: once closed it stops iterating.
    """

    def __init__(self, feed: AggregatedFeed) -> None:
        self._feed = feed
        self._mailbox = LatestValueMailbox()
        self._closed = False
        feed._attach(self._mailbox)

    def __aiter__(self) -> MedianStream:
        return self

    async def __anext__(self) -> Price:
        if self._closed:
            raise StopAsyncIteration
        return await self._mailbox.get()

    def close(self) -> None:
        """Detach from the feed."""
        if not self._closed:
            self._closed = True
            self._feed._detach(self._mailbox)


class AggregatedFeed:
    """Median of several exchange feeds for one pair.

    :ivar pair: Trading pair aggregated by this feed.
    :ivar feeds: Exchange feeds, possibly shared with other pairs.
    :ivar aggregator: Median engine with the freshness window.
    :ivar sources: Per-source update bookkeeping.
    :ivar last_median: Last published median, if any.
    :ivar decimals: Fixed-point decimals of published medians. Source prices
        are rescaled to it before aggregation.
    """

    DEFAULT_WATCHDOG_INTERVAL_SECONDS = 60.0

    def __init__(
        self,
        feeds: list[BaseFeed],
        pair: TradingPair | str,
        notifier: ErrorNotifier | None = None,
        freshness_seconds: float = PriceAggregator.DEFAULT_FRESHNESS_SECONDS,
        watchdog_interval_seconds: float = DEFAULT_WATCHDOG_INTERVAL_SECONDS,
        stale_timeout_seconds: float = SourceManager.DEFAULT_STALE_TIMEOUT_SECONDS,
        decimals: int | None = None,
    ) -> None:
        """Initialize the aggregated feed.

        :param feeds: Exchange feeds to combine.
        :param pair: Pair as TradingPair or ``base:quote`` string.
        :param notifier: Receives stale-source alerts.
        :param freshness_seconds: Maximum age of a price used in the median.
        :param watchdog_interval_seconds: How often to check for silent sources.
        :param stale_timeout_seconds: Silence after which a source is reported.
        :param decimals: Median precision; defaults to that of the first price received.
        """
        self.pair = pair if isinstance(pair, TradingPair) else TradingPair.from_string(pair)
        self.feeds = list(feeds)
        self.notifier = notifier or ErrorNotifier()
        self.aggregator = PriceAggregator(freshness_seconds)
        self.sources = SourceManager([f.name for f in self.feeds], stale_timeout_seconds)
        self.watchdog_interval_seconds = watchdog_interval_seconds
        self.decimals = decimals
        self.last_median: Price | None = None
        self.last_result: AggregationResult | None = None

        self._latest: dict[str, Price | None] = {f.name: None for f in self.feeds}
        self._mailboxes: list[LatestValueMailbox] = []
        self._watchdog: asyncio.Task | None = None
        self._started = False

    async def start(self) -> None:
        """Subscribe every feed to the pair and start the watchdog."""
        if self._started:
            return
        self._started = True

        for feed in self.feeds:
            feed.add_listener(self.on_price)
            await feed.subscribe(self.pair)

        self._watchdog = asyncio.create_task(
            self._run_watchdog(), name=f"watchdog-{self.pair}"
        )
        logger.info(
            f"{self.pair}: aggregating {', '.join(self.sources.sources)}"
        )

    async def close(self) -> None:
        """Stop the watchdog and detach from the feeds."""
        for feed in self.feeds:
            feed.remove_listener(self.on_price)
        if self._watchdog is not None:
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
            self._watchdog = None
        self._started = False

    def medians(self) -> MedianStream:
        """Attach a new consumer.

        :returns: Iterator yielding median prices published from now on.
        """
        return MedianStream(self)

    def on_price(self, price: Price) -> None:
        """Handle a price from any feed; other pairs are ignored."""
        if price.pair != self.pair:
            return

        if self.decimals is None:
            self.decimals = price.decimals
        elif price.decimals != self.decimals:
            logger.debug(
                f"{self.pair}: rescaling {price.source} price from {price.decimals} "
                f"to {self.decimals} decimals"
            )
            price = price.with_decimals(self.decimals)

        self._latest[price.source] = price
        self.sources.record_update(price.source, price.observed_at)

        result = self.aggregator.aggregate(self._latest)
        self.last_result = result
        if not result.success:
            logger.debug(f"{self.pair}: no median ({result.error})")
            return

        median = Price(
            source=MEDIAN_SOURCE,
            pair=self.pair,
            decimals=self.decimals,
            value=result.value,
        )
        self.last_median = median
        logger.debug(
            f"{self.pair}: median {median.value} from {result.metadata['count']} sources"
        )

        for mailbox in list(self._mailboxes):
            mailbox.put(median)

    def check_stale_sources(self, now: float | None = None) -> list[str]:
        """Report sources that went silent. Each stale episode is reported once.

        :param now: Reference time, defaults to the current time.
        :returns: Sources reported by this check.
        """
        if now is None:
            now = time.time()

        stale = self.sources.collect_newly_stale(now)
        for source in stale:
            silence = self.sources.silence(source, now)
            self.notifier.notify_soft(
                "stale_source",
                f"{source} has not updated {self.pair} for {silence:.0f}s",
                {"pair": str(self.pair), "source": source},
            )
        return stale

    async def _run_watchdog(self) -> None:
        while True:
            await asyncio.sleep(self.watchdog_interval_seconds)
            self.check_stale_sources()

    def _attach(self, mailbox: LatestValueMailbox) -> None:
        self._mailboxes.append(mailbox)

    def _detach(self, mailbox: LatestValueMailbox) -> None:
        if mailbox in self._mailboxes:
            self._mailboxes.remove(mailbox)
