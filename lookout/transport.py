"""Push channel transport.

``WebSocketConnection`` is one live websocket to the server. Frames are
JSON text in both directions:

    {"event": "machines:list", "data": [...]}

``TransportMultiplexer`` owns the handler registry and outlives any single
connection: handlers registered with ``on`` are attached to every new
connection, and the ``connect`` handlers run again after each reconnect,
so consumers never have to re-subscribe themselves.
"""

import asyncio
import json
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional

from websockets.asyncio.client import connect as ws_connect

from lookout.errors import TransportUnavailable

logger = logging.getLogger(__name__)

CONNECT_EVENT = "connect"

EventHandler = Callable[[Any], None]


def _invoke(handler: EventHandler, event: str, payload: Any):
    try:
        handler(payload)
    except Exception as e:
        logger.error(f"Handler error for {event}: {e}", exc_info=True)


class WebSocketConnection:
    """A single live push-channel connection."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout
        self.on_close: Optional[Callable[[str], None]] = None
        self._ws = None
        self._connected = False
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._recv_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None

    @classmethod
    async def open(cls, url: str, timeout: float = 5.0) -> "WebSocketConnection":
        conn = cls(url, timeout=timeout)
        await conn.start()
        return conn

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self):
        """Open the websocket and start the receive and send loops."""
        logger.debug(f"Connecting to push channel: {self.url}")
        self._ws = await asyncio.wait_for(ws_connect(self.url), timeout=self.timeout)
        self._connected = True
        self._recv_task = asyncio.create_task(self._receive_loop())
        self._send_task = asyncio.create_task(self._send_loop())

    async def close(self):
        """Close the websocket. Does not fire ``on_close``."""
        self._connected = False
        for task in (self._recv_task, self._send_task):
            if task and not task.done():
                task.cancel()
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error closing websocket: {e}")

    def on(self, event: str, handler: EventHandler):
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: str, handler: EventHandler):
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event]

    def emit(self, event: str, payload: Any = None):
        """Queue an event for sending."""
        if not self._connected:
            raise TransportUnavailable(f"Cannot emit {event}: connection closed")
        self._outbox.put_nowait(json.dumps({"event": event, "data": payload}, default=str))

    async def _send_loop(self):
        """Send queued frames to the server."""
        try:
            while True:
                frame = await self._outbox.get()
                await self._ws.send(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Push channel send failed: {e}")

    async def _receive_loop(self):
        reason = "connection closed"
        try:
            async for raw in self._ws:
                self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = str(e) or e.__class__.__name__

        if self._connected:
            self._connected = False
            if self._send_task and not self._send_task.done():
                self._send_task.cancel()
            if self.on_close:
                self.on_close(reason)

    def _dispatch(self, raw):
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-JSON frame")
            return
        if not isinstance(message, dict) or "event" not in message:
            logger.debug(f"Ignoring frame without event: {message!r}")
            return

        event = message["event"]
        payload = message.get("data")
        for handler in list(self._handlers.get(event, [])):
            _invoke(handler, event, payload)


ConnectionFactory = Callable[[str], Awaitable[Any]]


class TransportMultiplexer:
    """Handler registry that survives reconnects of the push channel."""

    def __init__(
        self,
        connection_factory: Optional[ConnectionFactory] = None,
        reconnect_attempts: int = 10,
        reconnect_delay_ms: int = 2000,
        reconnect_max_delay_ms: int = 30000,
        connect_timeout: float = 5.0,
    ):
        if connection_factory is None:
            connection_factory = partial(WebSocketConnection.open, timeout=connect_timeout)
        self._connection_factory = connection_factory
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay_ms = reconnect_delay_ms
        self._reconnect_max_delay_ms = reconnect_max_delay_ms
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._connection = None
        self._url: Optional[str] = None
        self._closing = False
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.connected

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def handler_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._handlers.get(event, []))
        return sum(len(handlers) for handlers in self._handlers.values())

    # Connection lifecycle

    async def connect(self, url: str) -> bool:
        """Connect to the push channel. Returns True once connected.

        A failed attempt is logged and handed to the background reconnect
        loop; it never raises.
        """
        if self.is_connected:
            logger.info("Push channel already connected")
            return True

        self._url = url
        self._closing = False

        if self.is_reconnecting:
            logger.debug("Reconnect already in progress")
            return False

        try:
            await self._establish()
            return True
        except Exception as e:
            logger.warning(f"Push channel connect to {url} failed: {e}")
            self._schedule_reconnect()
            return False

    async def disconnect(self):
        """Close the connection and stop reconnecting. Handlers are kept."""
        self._closing = True

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None

        conn = self._connection
        self._connection = None
        if conn is not None:
            await conn.close()
            logger.info("Push channel disconnected")

    async def _establish(self):
        conn = await self._connection_factory(self._url)
        if self._closing:
            await conn.close()
            return

        conn.on_close = partial(self._handle_close, conn)
        for event, handlers in self._handlers.items():
            for handler in handlers:
                conn.on(event, handler)
        self._connection = conn
        logger.info(f"Push channel connected: {self._url}")

        for handler in list(self._handlers.get(CONNECT_EVENT, [])):
            _invoke(handler, CONNECT_EVENT, None)

    def _handle_close(self, conn, reason: str):
        if conn is not self._connection or self._closing:
            return
        self._connection = None
        logger.warning(f"Push channel lost: {reason}")
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self._closing or self._reconnect_attempts <= 0 or self.is_reconnecting:
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self):
        """Retry the connection with exponential backoff."""
        attempts = self._reconnect_attempts
        for attempt in range(1, attempts + 1):
            delay_ms = min(
                self._reconnect_delay_ms * (2 ** (attempt - 1)),
                self._reconnect_max_delay_ms,
            )
            await asyncio.sleep(delay_ms / 1000)
            if self._closing:
                return
            try:
                await self._establish()
                logger.info(f"Push channel reconnected after {attempt} attempt(s)")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Reconnect attempt {attempt}/{attempts} failed: {e}")

        logger.error(f"Giving up on push channel after {attempts} attempts")

    # Handlers

    def on(self, event: str, handler: EventHandler):
        """Register a handler; attached now if connected, else on connect."""
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

        if self.is_connected:
            self._connection.on(event, handler)

    def off(self, event: str, handler: EventHandler):
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event]

        if self._connection is not None:
            self._connection.off(event, handler)

    def emit(self, event: str, payload: Any = None) -> bool:
        """Send an event. Returns False (and logs) when not connected."""
        if not self.is_connected:
            logger.warning(f"Cannot emit {event}: push channel not connected")
            return False
        try:
            self._connection.emit(event, payload)
        except TransportUnavailable as e:
            logger.warning(str(e))
            return False
        return True
