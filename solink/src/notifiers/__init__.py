"""Alert sinks used by :class:`~solink.src.ErrorNotifier.ErrorNotifier`."""

from .base import BaseNotifier, LogNotifier, format_alert

__all__ = ["BaseNotifier", "LogNotifier", "format_alert"]
