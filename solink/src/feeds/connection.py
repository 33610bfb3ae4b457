"""Reconnecting websocket loop shared by all exchange feeds.

The connection moves through ``DISCONNECTED -> CONNECTING -> CONNECTED``.
When the transport closes or errors it goes back to ``CONNECTING`` after an
exponential backoff (1s, 2s, 4s, ... capped at 30s). A successful connect
resets the backoff.

Feeds compose this helper instead of inheriting reconnect logic:

.. code-block:: python

    conn = ReconnectingWebSocket(
        "wss://ws.bitstamp.net",
        on_open=feed_on_open,
        on_message=feed_on_message,
        name="bitstamp",
    )
    task = asyncio.create_task(conn.run())
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    """Lifecycle of a feed connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ReconnectingWebSocket:
    """Keeps one websocket open, reconnecting with bounded backoff.

    :ivar url: Websocket endpoint.
    :ivar name: Label used in log lines.
    :ivar state: Current :class:`ConnectionState`.
    :ivar base_backoff_seconds: Delay after the first failed connection.
    :ivar max_backoff_seconds: Upper bound on the delay.
    """

    DEFAULT_BASE_BACKOFF_SECONDS = 1.0
    DEFAULT_MAX_BACKOFF_SECONDS = 30.0
    CONNECT_TIMEOUT_SECONDS = 30.0

    def __init__(
        self,
        url: str,
        on_open: Callable[[], Awaitable[None]],
        on_message: Callable[[str | bytes], None],
        name: str = "",
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        """Initialize the connection helper.

        :param url: Websocket endpoint to connect to.
        :param on_open: Coroutine called after every successful connect.
        :param on_message: Called with every received frame.
        :param name: Label for logging (usually the feed name).
        :param base_backoff_seconds: Delay after the first failure.
        :param max_backoff_seconds: Maximum delay between attempts.
        :param connect: Connection factory, defaults to ``websockets.connect``.
        """
        self.url = url
        self.name = name or url
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.state = ConnectionState.DISCONNECTED

        self._on_open = on_open
        self._on_message = on_message
        self._connect = connect or websockets.connect
        self._ws: Any = None
        self._failures = 0
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def next_backoff(self) -> float:
        """Record a failed or dropped connection and return the delay.

        :returns: Seconds to wait before reconnecting.
        """
        self._failures += 1
        return min(
            self.base_backoff_seconds * (2 ** (self._failures - 1)),
            self.max_backoff_seconds,
        )

    async def run(self) -> None:
        """Connect and pump messages until :meth:`close` is called."""
        while not self._closed:
            self.state = ConnectionState.CONNECTING
            try:
                await self._serve()
            except (ConnectionClosed, WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"[{self.name}] Connection lost: {e}")
            except Exception:
                logger.exception(f"[{self.name}] Unexpected error, reconnecting")
            finally:
                self._ws = None
                self.state = ConnectionState.DISCONNECTED

            if self._closed:
                break

            delay = self.next_backoff()
            logger.info(f"[{self.name}] Reconnecting in {delay:.1f}s")
            await asyncio.sleep(delay)

    async def _serve(self) -> None:
        connection = self._connect(
            self.url,
            open_timeout=self.CONNECT_TIMEOUT_SECONDS,
            ping_interval=20,
            ping_timeout=20,
            close_timeout=10,
        )
        async with connection as ws:
            self._ws = ws
            self.state = ConnectionState.CONNECTED
            self._failures = 0
            logger.info(f"[{self.name}] Connected to {self.url}")

            await self._on_open()
            async for message in ws:
                self._on_message(message)

        logger.warning(f"[{self.name}] Connection closed by server")

    async def send(self, text: str) -> bool:
        """Send a text frame if connected.

        :param text: Frame payload.
        :returns: False if not connected (nothing was sent).
        """
        ws = self._ws
        if ws is None or not self.is_connected:
            return False
        await ws.send(text)
        return True

    async def close(self) -> None:
        """Stop reconnecting and close the open socket, if any."""
        self._closed = True
        ws = self._ws
        if ws is not None:
            await ws.close()
