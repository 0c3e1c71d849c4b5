"""
Middleware websocket client.

Holds one connection to the middleware push endpoint, keeps channel
subscriptions alive across reconnects and routes incoming messages to the
handler registered for their channel.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import websockets
import structlog

from mdw_sync.core.config import settings


logger = structlog.get_logger(__name__)

MessageHandler = Callable[[Any], Awaitable[None]]

CHANNEL_TRANSACTIONS = "Transactions"
CHANNEL_KEY_BLOCKS = "KeyBlocks"


class MiddlewareWebSocketClient:
    """Subscription-oriented client for the middleware websocket."""

    def __init__(self, url: Optional[str] = None, reconnect_delay: Optional[float] = None):
        self.logger = logger.bind(service="websocket_client")
        self.url = url or settings.websocket_url
        self.reconnect_delay = settings.websocket_reconnect_delay if reconnect_delay is None else reconnect_delay

        self._websocket = None
        self._handlers: Dict[str, MessageHandler] = {}
        self._sources: Dict[str, str] = {}
        self._subscribed: Set[str] = set()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()

        self.messages_received = 0
        self.reconnects = 0

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None and self._connected.is_set()

    def is_subscribed(self, channel: str) -> bool:
        return channel in self._subscribed

    async def start(self):
        """Start the connection loop in the background."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        """Release subscriptions and close the connection."""
        self._running = False

        for channel in list(self._handlers):
            try:
                await self.unsubscribe(channel)
            except Exception as e:
                self.logger.warning("Failed to unsubscribe", channel=channel, error=str(e))

        if self._websocket is not None:
            await self._websocket.close()

        if self._task and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def subscribe(self, channel: str, handler: MessageHandler, source: str = "mdw"):
        """Register a handler for a channel and subscribe if connected."""
        self._handlers[channel] = handler
        self._sources[channel] = source
        if self.is_connected:
            await self._send_subscribe(channel)

    async def unsubscribe(self, channel: str):
        self._handlers.pop(channel, None)
        source = self._sources.pop(channel, "mdw")
        if self.is_connected and channel in self._subscribed:
            await self._send({"op": "Unsubscribe", "payload": channel, "source": source})
        self._subscribed.discard(channel)

    async def _send(self, message: Dict[str, Any]):
        await self._websocket.send(json.dumps(message))

    async def _send_subscribe(self, channel: str):
        await self._send({"op": "Subscribe", "payload": channel, "source": self._sources.get(channel, "mdw")})
        self._subscribed.add(channel)
        self.logger.info("Subscribed to channel", channel=channel)

    async def _run(self):
        while self._running:
            try:
                async with websockets.connect(self.url) as websocket:
                    self._websocket = websocket
                    self._connected.set()
                    self.logger.info("Connected to middleware websocket", url=self.url)

                    for channel in list(self._handlers):
                        await self._send_subscribe(channel)

                    async for message in websocket:
                        await self._dispatch(message)

            except asyncio.CancelledError:
                raise
            except (websockets.exceptions.WebSocketException, OSError) as e:
                self.logger.warning("Middleware websocket disconnected", error=str(e))
            finally:
                self._websocket = None
                self._connected.clear()
                self._subscribed.clear()

            if self._running:
                self.reconnects += 1
                self.logger.info("Reconnecting to middleware websocket", delay=self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)

    async def _dispatch(self, raw_message):
        self.messages_received += 1
        try:
            message = json.loads(raw_message)
        except (TypeError, ValueError):
            self.logger.warning("Ignoring non-JSON websocket message")
            return

        # Subscription acknowledgements arrive as a list of channel names
        if not isinstance(message, dict):
            self.logger.debug("Websocket control message", message=message)
            return

        channel = message.get("subscription")
        handler = self._handlers.get(channel)
        if handler is None:
            return

        try:
            await handler(message.get("payload"))
        except Exception as e:
            self.logger.error("Websocket handler failed", channel=channel, error=str(e))
