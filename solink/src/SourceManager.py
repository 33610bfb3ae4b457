"""SourceManager: Per-source update tracking and stale detection.

Every price received from a source is recorded. A source that has produced
no update for longer than ``stale_timeout_seconds`` is stale. Staleness is
reported once per episode: :meth:`SourceManager.collect_newly_stale` returns a
source the first time it is found stale, and a later update clears the flag.

.. code-block:: python

    >>> manager = SourceManager(["coinbase", "bitstamp"], stale_timeout_seconds=600)
    >>> manager.record_update("coinbase")
    >>> manager.get_source_status("coinbase").total_updates
    1
"""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class SourceStatus:
    """Tracks the status of a single source.

    :ivar last_update: Unix timestamp of the last update (0 if none yet).
    :ivar total_updates: Updates received since tracking began.
    :ivar is_stale: Whether the source is in a reported stale episode.
    """

    last_update: float = 0.0
    total_updates: int = 0
    is_stale: bool = False


class SourceManager:
    """Tracks when each source last produced a price.

    Sources that never updated are measured from the time tracking started.

    :ivar sources: List of tracked source names.
    :ivar stale_timeout_seconds: Silence after which a source is stale.
    """

    DEFAULT_STALE_TIMEOUT_SECONDS = 600  # 10 minutes

    def __init__(
        self,
        sources: list[str],
        stale_timeout_seconds: float = DEFAULT_STALE_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the source manager.

        :param sources: List of source names to track.
        :param stale_timeout_seconds: Silence after which a source is stale.
        """
        self.sources = list(sources)
        self.stale_timeout_seconds = stale_timeout_seconds
        self.started_at = time.time()
        self._status: dict[str, SourceStatus] = {s: SourceStatus() for s in sources}

    def record_update(self, source: str, at: float | None = None) -> None:
        """Record an update from a source, ending any stale episode.

        :param source: Source name that produced a price.
        :param at: Update time, defaults to now.
        """
        if source not in self._status:
            self.add_source(source)

        status = self._status[source]
        status.last_update = time.time() if at is None else at
        status.total_updates += 1
        status.is_stale = False

    def silence(self, source: str, now: float | None = None) -> float:
        """Seconds since the source last updated (or since tracking began).

        :param source: Source name to check.
        :returns: Seconds of silence, or 0 if the source is unknown.
        """
        status = self._status.get(source)
        if status is None:
            return 0.0
        if now is None:
            now = time.time()
        since = status.last_update or self.started_at
        return max(0.0, now - since)

    def is_source_stale(self, source: str, now: float | None = None) -> bool:
        """Check if a source has been silent longer than the timeout."""
        if source not in self._status:
            return False
        return self.silence(source, now) > self.stale_timeout_seconds

    def collect_newly_stale(self, now: float | None = None) -> list[str]:
        """Return sources that just became stale and flag them.

        A source is returned once per stale episode.

        :param now: Reference time, defaults to the current time.
        :returns: Source names entering a stale episode.
        """
        if now is None:
            now = time.time()

        newly_stale = []
        for source in self.sources:
            status = self._status[source]
            if not status.is_stale and self.is_source_stale(source, now):
                status.is_stale = True
                newly_stale.append(source)
        return newly_stale

    def get_source_status(self, source: str) -> SourceStatus | None:
        """Get the status of a specific source.

        :param source: Source name to query.
        :returns: SourceStatus or None if source not tracked.
        """
        return self._status.get(source)

    def add_source(self, source: str) -> None:
        """Add a new source to track.

        :param source: Source name to add.
        """
        if source not in self.sources:
            self.sources.append(source)
        if source not in self._status:
            self._status[source] = SourceStatus()
