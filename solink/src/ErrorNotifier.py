"""ErrorNotifier: Fan-out of soft and critical alerts.

Notifications are fire and forget. A notifier that raises is logged and
skipped so alerting can never break the caller.

.. code-block:: python

    >>> notifier = ErrorNotifier()  # logs through LogNotifier
    >>> notifier.notify_soft("stale_source", "coinbase silent for 600s")
"""

from __future__ import annotations

import logging
from typing import Any

from .notifiers import BaseNotifier, LogNotifier

logger = logging.getLogger(__name__)


class ErrorNotifier:
    """Dispatches alerts to every registered notifier.

    :ivar notifiers: Registered alert sinks.
    """

    def __init__(self, notifiers: list[BaseNotifier] | None = None) -> None:
        """Initialize the dispatcher.

        :param notifiers: Alert sinks, defaults to a single LogNotifier.
        """
        self.notifiers: list[BaseNotifier] = (
            list(notifiers) if notifiers is not None else [LogNotifier()]
        )

    def add_notifier(self, notifier: BaseNotifier) -> None:
        self.notifiers.append(notifier)

    def notify_soft(
        self, event: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        """Send a soft alert.

        :param event: Short event identifier (e.g. ``stale_source``).
        :param message: Human readable description.
        :param metadata: Optional structured details.
        """
        for notifier in self.notifiers:
            try:
                notifier.notify_soft(event, message, metadata)
            except Exception:
                logger.exception(f"Notifier {type(notifier).__name__} failed on soft alert")

    def notify_critical(
        self,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Send a critical alert.

        :param event: Short event identifier (e.g. ``submit_failed``).
        :param message: Human readable description.
        :param metadata: Optional structured details.
        :param error: The exception behind the alert, if any.
        """
        for notifier in self.notifiers:
            try:
                notifier.notify_critical(event, message, metadata, error)
            except Exception:
                logger.exception(
                    f"Notifier {type(notifier).__name__} failed on critical alert"
                )
