"""PriceAggregator: Median of the latest fresh price per source.

Algorithm:
    1. Drop sources with no reading or a zero value
    2. Drop sources whose reading is not strictly younger than the freshness window
    3. Sort the remaining values ascending
    4. Odd count: middle value. Even count: floor average of the two middle values
    5. Return None if nothing remains

All values are fixed-point integers, so the median stays an integer.

.. code-block:: python

    >>> aggregator = PriceAggregator(freshness_seconds=300)
    >>> result = aggregator.aggregate(
    ...     {"coinbase": 10000, "bitstamp": 10002, "binance": 9999}
    ... )
    >>> result.value
    10000
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Mapping, TypedDict

from .Price import Price


class AggregationError(TypedDict, total=False):
    """Error information when aggregation fails.

    :ivar error: Error type identifier.
    :ivar available: Number of sources with any reading.
    :ivar stale: Sources excluded because their reading is too old.
    """

    error: str
    available: int
    stale: list[str]


class AggregationMetadata(TypedDict, total=False):
    """Metadata about a successful aggregation.

    :ivar sources: Sources used in the median.
    :ivar stale: Sources excluded because their reading is too old.
    :ivar count: Number of sources used.
    """

    sources: list[str]
    stale: list[str]
    count: int


@dataclass
class AggregationResult:
    """Result of price aggregation.

    :ivar value: Median fixed-point value, or None if no source qualified.
    :ivar metadata: Additional information about the aggregation.
    """

    value: int | None
    metadata: AggregationMetadata | AggregationError

    @property
    def success(self) -> bool:
        """Check if aggregation was successful."""
        return self.value is not None

    @property
    def error(self) -> str | None:
        """Get error type if aggregation failed."""
        if self.value is None:
            return self.metadata.get("error")
        return None


def median(values: list[int]) -> int | None:
    """Integer median.

    :param values: Fixed-point values.
    :returns: Middle value, floor average of the two middle values for an
        even count, or None for an empty list.

    .. code-block:: python

        >>> median([3, 1, 2])
        2
        >>> median([1, 2, 3, 4])
        2
        >>> median([]) is None
        True
    """
    if not values:
        return None

    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 1:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) // 2


class PriceAggregator:
    """Reduces the latest reading of each source to one median value.

    :ivar freshness_seconds: Readings must be strictly younger than this.

    .. code-block:: python

        >>> agg = PriceAggregator()
        >>> agg.aggregate({"a": 100, "b": 0}).value
        100
    """

    DEFAULT_FRESHNESS_SECONDS = 300.0  # 5 minutes

    def __init__(self, freshness_seconds: float = DEFAULT_FRESHNESS_SECONDS) -> None:
        """Initialize the aggregator.

        :param freshness_seconds: Maximum reading age (exclusive).
        :raises ValueError: If the window is not positive.
        """
        if freshness_seconds <= 0:
            raise ValueError("freshness_seconds must be positive")

        self.freshness_seconds = freshness_seconds

    def is_fresh(self, price: Price, now: float | None = None) -> bool:
        """Check whether ``price`` is inside the freshness window."""
        if now is None:
            now = time.time()
        return now - price.observed_at < self.freshness_seconds

    def aggregate(
        self,
        prices: Mapping[str, Price | int | None],
        *,
        now: float | None = None,
    ) -> AggregationResult:
        """Aggregate the latest reading per source into a median.

        Plain integers are treated as readings taken ``now``.

        :param prices: Source name to latest Price (or value, or None).
        :param now: Reference time, defaults to the current time.
        :returns: AggregationResult with the median and metadata.
        """
        if now is None:
            now = time.time()

        candidates: dict[str, int] = {}
        stale: list[str] = []
        available = 0

        for source, price in prices.items():
            if price is None:
                continue
            available += 1

            if isinstance(price, Price):
                if price.is_zero:
                    continue
                if not self.is_fresh(price, now):
                    stale.append(source)
                    continue
                candidates[source] = price.value
            elif price > 0:
                candidates[source] = price

        value = median(list(candidates.values()))
        if value is None:
            return AggregationResult(
                value=None,
                metadata={
                    "error": "no_fresh_sources",
                    "available": available,
                    "stale": stale,
                },
            )

        return AggregationResult(
            value=value,
            metadata={
                "sources": list(candidates.keys()),
                "stale": stale,
                "count": len(candidates),
            },
        )
