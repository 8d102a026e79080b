"""
Feed Transport
==============

Thin owner of one WebSocket connection to the market channel. It knows
nothing about reconnection or subscriptions: the supervisor drives it and
receives frames and close information back.
"""

import json
import ssl
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed

from ..utils.logger import get_logger


class FeedTransport:
    """
    Single upstream WebSocket connection.

    Keepalive pings are disabled at the library level; the supervisor sends
    its own pings and decides when the connection is dead.
    """

    def __init__(self, url: str, close_timeout: float = 10.0):
        self.url = url
        self.close_timeout = close_timeout
        self.logger = get_logger('transport')

        self.websocket = None
        self.close_code: Optional[int] = None
        self.close_reason: str = ""

    @property
    def is_open(self) -> bool:
        return self.websocket is not None and self.close_code is None

    async def connect(self) -> None:
        """Open the connection; raises on any failure to establish it"""
        ssl_context = ssl.create_default_context() if self.url.startswith("wss://") else None

        self.websocket = await websockets.connect(
            self.url,
            ssl=ssl_context,
            ping_interval=None,
            ping_timeout=None,
            close_timeout=self.close_timeout,
            max_size=None
        )

    async def send(self, payload: Union[Dict[str, Any], str]) -> None:
        """Send one text frame; dicts are JSON encoded"""
        if self.websocket is None:
            raise ConnectionError("Transport is not connected")
        message = payload if isinstance(payload, str) else json.dumps(payload)
        await self.websocket.send(message)

    async def ping(self) -> Awaitable[Any]:
        """Send a ping; the returned awaitable completes when the pong arrives"""
        if self.websocket is None:
            raise ConnectionError("Transport is not connected")
        return await self.websocket.ping()

    async def frames(self) -> AsyncIterator[Union[str, bytes]]:
        """Yield inbound frames until the connection closes for any reason"""
        if self.websocket is None:
            return
        try:
            async for message in self.websocket:
                yield message
        except ConnectionClosed:
            pass
        finally:
            self._record_close()

    def abort(self) -> None:
        """Drop the TCP connection without a closing handshake"""
        if self.websocket is not None:
            self.logger.warning("Terminating WebSocket connection")
            self.websocket.transport.abort()

    async def close(self, code: int = 1000, reason: str = "Normal shutdown") -> None:
        """Graceful close with a closing handshake"""
        if self.websocket is None:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        finally:
            self._record_close()

    def _record_close(self) -> None:
        if self.websocket is not None and self.close_code is None:
            self.close_code = self.websocket.close_code or 1006
            self.close_reason = self.websocket.close_reason or ""
