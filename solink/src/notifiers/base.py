"""Notifier interface and the logging notifier.

A notifier receives two levels of alerts:

    - soft: expected contention or degraded inputs, worth a look
    - critical: a submission or configuration failure that needs attention

Transports (chat bots, paging) implement :class:`BaseNotifier`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class BaseNotifier(ABC):
    """Abstract alert sink."""

    @abstractmethod
    def notify_soft(
        self, event: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        pass

    @abstractmethod
    def notify_critical(
        self,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> None:
        pass


def format_alert(event: str, message: str, metadata: dict[str, Any] | None) -> str:
    """Render an alert as ``[event]: message (k=v, ...)``."""
    text = f"[{event}]: {message}"
    if metadata:
        details = ", ".join(f"{k}={v}" for k, v in metadata.items())
        text = f"{text} ({details})"
    return text


class LogNotifier(BaseNotifier):
    """Writes soft alerts at WARNING and critical alerts at ERROR."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    def notify_soft(
        self, event: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        self.log.warning(format_alert(event, message, metadata))

    def notify_critical(
        self,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> None:
        text = format_alert(event, message, metadata)
        if error is not None:
            text = f"{text}: {error!r}"
        self.log.error(text)
