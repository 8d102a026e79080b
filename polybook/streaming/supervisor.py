"""
Connection Supervisor
=====================

Keeps one market-channel connection alive and subscribed.

All connection state lives in this object and is only touched by the
``run`` loop. Transport results, inbound frames, pongs, timer firings and
stop requests are posted to a mailbox and handled strictly one at a time,
so no locks are needed:

    Idle -> Connecting -> Open -> Subscribing -> Subscribed
                 |          \\________________________/
                 v                      | closed / dead heartbeat
               Idle <----- Closing <----+
                 |
                 +--> backoff timer --> Connecting ...

    any state --stop()--> Closed   (terminal, no reconnect)
"""

import asyncio
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .transport import FeedTransport
from ..utils.config import FeedConfig
from ..utils.logger import get_logger

BOOK_EVENT_TYPE = "book"


class ConnectionState(Enum):
    IDLE = "Idle"
    CONNECTING = "Connecting"
    OPEN = "Open"
    SUBSCRIBING = "Subscribing"
    SUBSCRIBED = "Subscribed"
    CLOSING = "Closing"
    CLOSED = "Closed"


CONNECTED_STATES = (ConnectionState.OPEN, ConnectionState.SUBSCRIBING, ConnectionState.SUBSCRIBED)


@dataclass
class HeartbeatState:
    """Liveness bookkeeping; ``last_pong`` is a monotonic timestamp in seconds"""
    last_pong: float = 0.0
    timer: Optional[asyncio.Task] = None


@dataclass
class ReconnectState:
    attempt_count: int = 0
    running: bool = False
    exhausted: bool = False
    timer: Optional[asyncio.Task] = None


@dataclass
class _Message:
    kind: str
    transport: Any = None
    payload: Any = None


def compute_backoff_delay(base_delay_ms: int, attempt: int, max_delay_ms: int = 60000) -> int:
    """
    Exponential backoff delay for a 1-based attempt number

    >>> [compute_backoff_delay(5000, n) for n in range(1, 7)]
    [5000, 10000, 20000, 40000, 60000, 60000]
    """
    if attempt < 1:
        raise ValueError("attempt numbers start at 1")
    return min(base_delay_ms * 2 ** (attempt - 1), max_delay_ms)


class ConnectionSupervisor:
    """
    Connection lifecycle manager for the market channel.

    Features:
    - Single live connection, never two concurrent connect attempts
    - Subscription to every configured asset after each (re)connect
    - Ping/pong heartbeat with dead-connection detection
    - Exponential backoff reconnection with a maximum attempt count
    - Cooperative shutdown via ``stop``
    """

    def __init__(self,
                 feed_config: FeedConfig,
                 asset_ids: Sequence[str],
                 on_book: Callable[[Dict[str, Any]], Any],
                 transport_factory: Optional[Callable[[str], Any]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = feed_config
        self.asset_ids: List[str] = list(asset_ids)
        self.on_book = on_book
        self.transport_factory = transport_factory or (
            lambda url: FeedTransport(url, close_timeout=feed_config.close_timeout_s)
        )
        self.clock = clock
        self.logger = get_logger('supervisor')

        # Connection state
        self.state = ConnectionState.IDLE
        self.subscribed = False
        self.transport = None
        self.heartbeat = HeartbeatState()
        self.reconnect = ReconnectState()

        self._mailbox: "asyncio.Queue[_Message]" = asyncio.Queue()
        self._connect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pong_waiters: set = set()

        # Message tracking
        self.stats = {
            'connects': 0,
            'connect_failures': 0,
            'frames_received': 0,
            'book_events': 0,
            'parse_errors': 0,
            'pings_sent': 0,
            'pongs_received': 0,
            'last_message_time': 0.0
        }

    @property
    def heartbeat_interval(self) -> float:
        return self.config.heartbeat_interval_ms / 1000.0

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def run(self) -> ConnectionState:
        """
        Connect and supervise until stopped or reconnects are exhausted

        Returns:
            The final state: ``CLOSED`` after ``stop``, ``IDLE`` when the
            maximum number of reconnect attempts was reached
        """
        self.reconnect.running = True
        self.reconnect.exhausted = False
        self._post("connect")

        try:
            while self.state is not ConnectionState.CLOSED and not self.reconnect.exhausted:
                message = await self._mailbox.get()
                await self._dispatch(message)
        finally:
            self._cancel_tasks()
            await self._discard_pending()

        return self.state

    def stop(self) -> None:
        """Request an explicit shutdown; safe to call from signal handlers"""
        self.reconnect.running = False
        self._post("stop")

    def get_connection_stats(self) -> Dict[str, Any]:
        """Get connection statistics"""
        return {
            **self.stats,
            'state': self.state.value,
            'subscribed': self.subscribed,
            'reconnect_attempts': self.reconnect.attempt_count,
            'exhausted': self.reconnect.exhausted,
            'running': self.reconnect.running,
            'url': self.config.ws_url
        }

    # ------------------------------------------------------------------ #
    # Mailbox
    # ------------------------------------------------------------------ #

    def _post(self, kind: str, transport: Any = None, payload: Any = None) -> None:
        self._mailbox.put_nowait(_Message(kind, transport, payload))

    async def _dispatch(self, message: _Message) -> None:
        handler = {
            "connect": self._handle_connect,
            "opened": self._handle_opened,
            "connect_failed": self._handle_connect_failed,
            "frame": self._handle_frame,
            "pong": self._handle_pong,
            "heartbeat": self._handle_heartbeat,
            "closed": self._handle_closed,
            "stop": self._handle_stop,
        }[message.kind]
        await handler(message)

    # ------------------------------------------------------------------ #
    # Connect
    # ------------------------------------------------------------------ #

    async def _handle_connect(self, message: _Message) -> None:
        if not self.reconnect.running:
            return
        if self.state is ConnectionState.CONNECTING or self.state in CONNECTED_STATES:
            self.logger.debug(f"Connect skipped, already {self.state.value}")
            return

        self.state = ConnectionState.CONNECTING
        transport = self.transport_factory(self.config.ws_url)
        self.transport = transport
        self.logger.info(f"Connecting to {self.config.ws_url}...")
        self._connect_task = asyncio.create_task(self._establish(transport), name="feed-connect")

    async def _establish(self, transport) -> None:
        try:
            await transport.connect()
        except Exception as e:
            self._post("connect_failed", transport, e)
        else:
            self._post("opened", transport)

    async def _handle_opened(self, message: _Message) -> None:
        transport = message.transport
        if transport is not self.transport or self.state is not ConnectionState.CONNECTING:
            # Stale attempt, e.g. stop() raced the handshake
            await transport.close()
            return

        self.state = ConnectionState.OPEN
        self.reconnect.attempt_count = 0
        self.heartbeat.last_pong = self.clock()
        self.stats['connects'] += 1
        self.logger.success("Connected to market channel")

        self._reader_task = asyncio.create_task(self._read_frames(transport), name="feed-reader")
        self._start_heartbeat()
        await self._subscribe()

    async def _handle_connect_failed(self, message: _Message) -> None:
        if message.transport is not self.transport or self.state is not ConnectionState.CONNECTING:
            return

        self.stats['connect_failures'] += 1
        self.logger.error(f"Connection error: {message.payload}")
        self.transport = None
        self.state = ConnectionState.IDLE
        self._schedule_reconnect()

    # ------------------------------------------------------------------ #
    # Subscription
    # ------------------------------------------------------------------ #

    async def _subscribe(self) -> None:
        """Send the market subscription once per connection"""
        if self.state not in CONNECTED_STATES:
            self.logger.warning("Cannot subscribe - WebSocket not open")
            return
        if self.subscribed:
            self.logger.info("Already subscribed")
            return
        if not self.asset_ids:
            self.logger.warning("No asset ids configured")
            return

        self.state = ConnectionState.SUBSCRIBING
        try:
            await self.transport.send({"type": "market", "assets_ids": self.asset_ids})
        except Exception as e:
            # No forced disconnect; heartbeat or close will drive the lifecycle
            self.logger.error(f"Subscription failed: {e}")
            self.subscribed = False
            if self.state is ConnectionState.SUBSCRIBING:
                self.state = ConnectionState.OPEN
            return

        if self.state is ConnectionState.SUBSCRIBING:
            self.subscribed = True
            self.state = ConnectionState.SUBSCRIBED
            self.logger.info(f"Subscribed to {len(self.asset_ids)} markets")

    # ------------------------------------------------------------------ #
    # Inbound frames
    # ------------------------------------------------------------------ #

    async def _read_frames(self, transport) -> None:
        try:
            async for frame in transport.frames():
                self._post("frame", transport, frame)
        except Exception as e:
            self.logger.error(f"WebSocket error: {e}")
        self._post("closed", transport, (transport.close_code, transport.close_reason))

    async def _handle_frame(self, message: _Message) -> None:
        if message.transport is not self.transport:
            return

        self.stats['frames_received'] += 1
        self.stats['last_message_time'] = time.time()

        try:
            data = json.loads(message.payload)
        except (ValueError, TypeError) as e:
            self.stats['parse_errors'] += 1
            self.logger.error(f"Message parsing error: {e}")
            return

        if isinstance(data, dict):
            events = [data]
        elif isinstance(data, list):
            events = data
        else:
            self.logger.debug(f"Ignoring non-event frame: {data!r}")
            return

        for event in events:
            self._handle_event(event)

    def _handle_event(self, event: Any) -> None:
        if not isinstance(event, dict) or event.get("event_type") != BOOK_EVENT_TYPE:
            return

        self.stats['book_events'] += 1
        try:
            self.on_book(event)
        except Exception as e:
            self.logger.error(f"Error processing book event for {event.get('asset_id')}: {e}")

    # ------------------------------------------------------------------ #
    # Heartbeat
    # ------------------------------------------------------------------ #

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self.heartbeat.timer = asyncio.create_task(self._heartbeat_timer(), name="feed-heartbeat")

    def _stop_heartbeat(self) -> None:
        if self.heartbeat.timer is not None:
            self.heartbeat.timer.cancel()
            self.heartbeat.timer = None

    async def _heartbeat_timer(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self._post("heartbeat", self.transport)

    async def _handle_heartbeat(self, message: _Message) -> None:
        if message.transport is not self.transport:
            return
        if self.state not in CONNECTED_STATES:
            self.logger.warning("WebSocket not open, stopping heartbeat")
            self._stop_heartbeat()
            return

        transport = self.transport
        since_last_pong = self.clock() - self.heartbeat.last_pong
        if since_last_pong > 2 * self.heartbeat_interval:
            self.logger.warning(f"No pong received for {since_last_pong:.1f}s, connection dead")
            self._stop_heartbeat()
            transport.abort()
            return

        try:
            pong_waiter = await transport.ping()
        except Exception as e:
            self.logger.error(f"Failed to send ping: {e}")
            self._stop_heartbeat()
            transport.abort()
            return

        self.stats['pings_sent'] += 1
        self.logger.debug("Ping sent")
        self._watch_pong(transport, pong_waiter)

    def _watch_pong(self, transport, pong_waiter) -> None:
        waiter = asyncio.ensure_future(pong_waiter)
        self._pong_waiters.add(waiter)

        def _on_pong(fut: asyncio.Future) -> None:
            self._pong_waiters.discard(fut)
            if not fut.cancelled() and fut.exception() is None:
                self._post("pong", transport)

        waiter.add_done_callback(_on_pong)

    async def _handle_pong(self, message: _Message) -> None:
        if message.transport is not self.transport:
            return
        self.heartbeat.last_pong = self.clock()
        self.stats['pongs_received'] += 1
        self.logger.debug("Pong received")

    # ------------------------------------------------------------------ #
    # Close / reconnect
    # ------------------------------------------------------------------ #

    async def _handle_closed(self, message: _Message) -> None:
        if message.transport is not self.transport:
            return

        code, reason = message.payload
        self.state = ConnectionState.CLOSING
        self._cleanup()
        self.transport = None
        self.state = ConnectionState.IDLE
        self.logger.warning(f"WebSocket closed ({code}): {reason}")
        self._schedule_reconnect()

    def _cleanup(self) -> None:
        self._stop_heartbeat()
        self.subscribed = False
        for waiter in list(self._pong_waiters):
            waiter.cancel()
        self._pong_waiters.clear()

    def _schedule_reconnect(self) -> None:
        if not self.reconnect.running:
            self.logger.info("Supervisor stopped, skipping reconnect")
            return

        max_attempts = self.config.max_reconnect_attempts
        if self.reconnect.attempt_count >= max_attempts:
            self.reconnect.exhausted = True
            self.logger.critical(f"Max reconnection attempts reached ({max_attempts}), giving up")
            return

        self.reconnect.attempt_count += 1
        delay_ms = compute_backoff_delay(
            self.config.reconnect_delay_ms,
            self.reconnect.attempt_count,
            self.config.max_reconnect_delay_ms
        )
        self.logger.info(f"Reconnecting in {delay_ms}ms "
                         f"(attempt {self.reconnect.attempt_count}/{max_attempts})")

        self._cancel_reconnect_timer()
        self.reconnect.timer = asyncio.create_task(self._reconnect_timer(delay_ms / 1000.0),
                                                   name="feed-reconnect")

    async def _reconnect_timer(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._post("connect")

    def _cancel_reconnect_timer(self) -> None:
        if self.reconnect.timer is not None:
            self.reconnect.timer.cancel()
            self.reconnect.timer = None

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #

    async def _handle_stop(self, message: _Message) -> None:
        if self.state is ConnectionState.CLOSED:
            return

        self.logger.info("Disconnecting")
        self.reconnect.running = False
        self._cancel_reconnect_timer()
        self._cleanup()

        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()

        transport = self.transport
        self.transport = None
        if transport is not None and self.state in CONNECTED_STATES:
            self.state = ConnectionState.CLOSING
            try:
                await transport.close(1000, "Normal shutdown")
            except Exception as e:
                self.logger.error(f"Error closing WebSocket: {e}")

        self.state = ConnectionState.CLOSED
        self.logger.info("Supervisor stopped")

    def _cancel_tasks(self) -> None:
        self._cancel_reconnect_timer()
        self._stop_heartbeat()
        for task in (self._connect_task, self._reader_task):
            if task is not None and not task.done():
                task.cancel()
        for waiter in list(self._pong_waiters):
            waiter.cancel()
        self._pong_waiters.clear()

    async def _discard_pending(self) -> None:
        # A handshake can complete after stop(); never leave that socket open
        while not self._mailbox.empty():
            message = self._mailbox.get_nowait()
            if message.kind == "opened":
                try:
                    await message.transport.close()
                except Exception as e:
                    self.logger.error(f"Error closing WebSocket: {e}")
