"""
Polygon.io Stocks Stream Client

Minimal websocket client for the stocks cluster: authenticate, subscribe to
the configured channels, decode message arrays and hand each event to the
registered handler. Reconnects with exponential backoff until closed.
"""

import asyncio
import inspect
import json
import logging
import ssl
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import websockets
import websockets.exceptions


logger = logging.getLogger(__name__)


Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]

# data type -> channel prefix
CHANNEL_PREFIXES = {
    "bars": "AM",
    "quotes": "Q",
    "trades": "T",
}


def build_subscription(data_types: Iterable[str], symbols: Optional[Iterable[str]] = None) -> str:
    """
    Subscription parameter for the configured data types.

    ``["bars", "trades"]`` with no symbols gives ``"AM.*,T.*"``; with an
    allowlist each symbol gets its own channel.
    """
    symbols = list(symbols or [])
    channels: List[str] = []
    for data_type in data_types:
        prefix = CHANNEL_PREFIXES.get(data_type)
        if prefix is None:
            continue
        if symbols:
            channels.extend(f"{prefix}.{symbol}" for symbol in symbols)
        else:
            channels.append(f"{prefix}.*")
    return ",".join(channels)


class PolygonStreamClient:
    """WebSocket client for real-time Polygon.io data."""

    def __init__(self,
                 url: str,
                 api_key: str,
                 subscription: str,
                 bar_handler: Optional[Handler] = None,
                 quote_handler: Optional[Handler] = None,
                 trade_handler: Optional[Handler] = None,
                 on_reconnect: Optional[Callable[[], None]] = None,
                 base_reconnect_delay: float = 1.0,
                 max_reconnect_delay: float = 60.0):
        self.url = url
        self.api_key = api_key
        self.subscription = subscription
        self.handlers: Dict[str, Optional[Handler]] = {
            "AM": bar_handler,
            "Q": quote_handler,
            "T": trade_handler,
        }
        self.on_reconnect = on_reconnect
        self.base_reconnect_delay = base_reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay

        self.websocket = None
        self.connected = False
        self.authenticated = False
        self.reconnect_attempts = 0
        self.messages_received = 0
        self._closing = False

        logger.info(f"PolygonStreamClient initialized for {url} ({subscription})")

    async def listen(self) -> None:
        """Connect and dispatch messages until ``close()`` is called."""
        self._closing = False
        first_connect = True

        while not self._closing:
            try:
                async with websockets.connect(
                    self.url,
                    ssl=ssl.create_default_context() if self.url.startswith("wss") else None,
                    ping_interval=30,
                    ping_timeout=10,
                    close_timeout=10
                ) as websocket:
                    self.websocket = websocket
                    self.connected = True

                    if not first_connect and self.on_reconnect:
                        self.on_reconnect()
                    first_connect = False

                    await self._send({"action": "auth", "params": self.api_key})
                    await self._send({"action": "subscribe", "params": self.subscription})
                    logger.info(f"WebSocket connected, subscribed to {self.subscription}")

                    async for message in websocket:
                        await self.process_message(message)

            except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
                # ConnectionClosed and handshake rejections (HTTP 401/502) included
                logger.warning(f"WebSocket connection lost: {e!r}")

            except Exception as e:
                logger.error(f"WebSocket error: {e!r}")

            finally:
                self.connected = False
                self.authenticated = False
                self.websocket = None

            if self._closing:
                break

            delay = self._reconnect_delay()
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {self.reconnect_attempts})")
            await asyncio.sleep(delay)

    async def close(self) -> None:
        """Stop reconnecting and close the socket."""
        self._closing = True
        if self.websocket is not None:
            await self.websocket.close()

    async def process_message(self, raw: Union[str, bytes]) -> None:
        """Decode one frame and dispatch every event in it."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to decode message: {e}")
            return

        for msg in data if isinstance(data, list) else [data]:
            await self._dispatch(msg)

    async def _dispatch(self, msg: Dict[str, Any]) -> None:
        event_type = msg.get("ev")

        if event_type == "status":
            status = msg.get("status")
            if status == "auth_success":
                self.authenticated = True
                # backoff only resets once the key is accepted
                self.reconnect_attempts = 0
                logger.info("WebSocket authenticated successfully")
            elif status == "auth_failed":
                logger.error(f"Authentication failed: {msg.get('message')}")
            else:
                logger.debug(f"Status: {msg.get('message', status)}")
            return

        handler = self.handlers.get(event_type)
        if handler is None:
            return

        self.messages_received += 1
        try:
            result = handler(msg)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Message handler error for {event_type}: {e}")

    async def _send(self, message: dict) -> None:
        if self.websocket is None:
            raise ConnectionError("WebSocket not connected")
        await self.websocket.send(json.dumps(message))

    def _reconnect_delay(self) -> float:
        self.reconnect_attempts += 1
        return min(self.base_reconnect_delay * (2 ** (self.reconnect_attempts - 1)),
                   self.max_reconnect_delay)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'connected': self.connected,
            'authenticated': self.authenticated,
            'reconnect_attempts': self.reconnect_attempts,
            'messages_received': self.messages_received,
        }
