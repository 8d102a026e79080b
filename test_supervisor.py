"""
Connection Supervisor Tests
===========================

Drives the supervisor against an in-memory transport with short timings.
"""

import asyncio
import json

import pytest

from polybook.streaming import ConnectionState, ConnectionSupervisor, compute_backoff_delay
from polybook.streaming.supervisor import _Message
from polybook.utils.config import FeedConfig


class FakeTransport:
    """In-memory stand-in for FeedTransport"""

    def __init__(self, url, fail_connect=False, block_connect=None,
                 answer_pings=True, fail_ping=False, fail_send=False):
        self.url = url
        self.fail_connect = fail_connect
        self.block_connect = block_connect
        self.answer_pings = answer_pings
        self.fail_ping = fail_ping
        self.fail_send = fail_send

        self.sent = []
        self.send_attempts = 0
        self.pings = 0
        self.aborted = False
        self.closed_with = None
        self.close_code = None
        self.close_reason = ""
        self._inbound = asyncio.Queue()

    async def connect(self):
        if self.block_connect is not None:
            await self.block_connect.wait()
        if self.fail_connect:
            raise ConnectionRefusedError("connection refused")

    async def send(self, payload):
        self.send_attempts += 1
        if self.fail_send:
            raise ConnectionError("send failed")
        self.sent.append(payload)

    async def ping(self):
        if self.fail_ping:
            raise ConnectionError("ping failed")
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def frames(self):
        while True:
            frame = await self._inbound.get()
            if frame is None:
                return
            yield frame

    def push(self, frame):
        self._inbound.put_nowait(frame)

    def abort(self):
        self.aborted = True
        self.close_code = 1006
        self._inbound.put_nowait(None)

    async def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)
        self.close_code = code
        self.close_reason = reason
        self._inbound.put_nowait(None)


class FakeFactory:
    """Creates FakeTransports; per-attempt options are consumed in order"""

    def __init__(self, *attempts, **defaults):
        self.attempts = list(attempts)
        self.defaults = defaults
        self.created = []

    def __call__(self, url):
        options = self.attempts.pop(0) if self.attempts else self.defaults
        transport = FakeTransport(url, **options)
        self.created.append(transport)
        return transport


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_config(**overrides):
    settings = dict(
        ws_url="wss://example.test/ws/market",
        heartbeat_interval_ms=20,
        reconnect_delay_ms=1,
        max_reconnect_delay_ms=4,
        max_reconnect_attempts=3,
    )
    settings.update(overrides)
    return FeedConfig(**settings)


def make_supervisor(factory, books=None, clock=None, asset_ids=("A", "B"), **overrides):
    kwargs = {}
    if clock is not None:
        kwargs['clock'] = clock
    return ConnectionSupervisor(
        make_config(**overrides),
        list(asset_ids),
        on_book=(books.append if books is not None else lambda event: None),
        transport_factory=factory,
        **kwargs
    )


async def stop_and_wait(supervisor, task):
    supervisor.stop()
    return await asyncio.wait_for(task, timeout=2.0)


def test_backoff_sequence_doubles_then_caps():
    delays = [compute_backoff_delay(5000, attempt) for attempt in range(1, 9)]
    assert delays == [5000, 10000, 20000, 40000, 60000, 60000, 60000, 60000]


def test_backoff_rejects_attempt_zero():
    with pytest.raises(ValueError):
        compute_backoff_delay(5000, 0)


@pytest.mark.asyncio
async def test_connects_and_subscribes_to_all_assets():
    factory = FakeFactory()
    supervisor = make_supervisor(factory)
    task = asyncio.create_task(supervisor.run())

    await wait_until(lambda: supervisor.state is ConnectionState.SUBSCRIBED)

    transport = factory.created[0]
    assert transport.url == "wss://example.test/ws/market"
    assert transport.sent == [{"type": "market", "assets_ids": ["A", "B"]}]
    assert supervisor.subscribed
    assert supervisor.reconnect.attempt_count == 0

    assert await stop_and_wait(supervisor, task) is ConnectionState.CLOSED
    assert transport.closed_with == (1000, "Normal shutdown")
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_subscribe_is_idempotent_while_subscribed():
    factory = FakeFactory()
    supervisor = make_supervisor(factory)
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.state is ConnectionState.SUBSCRIBED)

    await supervisor._subscribe()

    assert factory.created[0].send_attempts == 1
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_subscription_failure_does_not_force_disconnect():
    factory = FakeFactory(fail_send=True)
    supervisor = make_supervisor(factory, heartbeat_interval_ms=10000)
    task = asyncio.create_task(supervisor.run())

    await wait_until(lambda: factory.created and factory.created[0].send_attempts == 1)
    await asyncio.sleep(0.05)

    assert supervisor.state is ConnectionState.OPEN
    assert not supervisor.subscribed
    assert not factory.created[0].aborted
    assert len(factory.created) == 1
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_no_subscription_without_assets():
    factory = FakeFactory()
    supervisor = make_supervisor(factory, asset_ids=(), heartbeat_interval_ms=10000)
    task = asyncio.create_task(supervisor.run())

    await wait_until(lambda: supervisor.state is ConnectionState.OPEN)
    await asyncio.sleep(0.02)

    assert factory.created[0].send_attempts == 0
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_book_events_forwarded_and_bad_frames_discarded():
    books = []
    factory = FakeFactory()
    supervisor = make_supervisor(factory, books=books, heartbeat_interval_ms=10000)
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.state is ConnectionState.SUBSCRIBED)
    transport = factory.created[0]

    transport.push("this is not json")
    transport.push(json.dumps([
        {"event_type": "book", "asset_id": "A", "timestamp": "1", "bids": [], "asks": []},
        {"event_type": "price_change", "asset_id": "A"},
        {"event_type": "book", "asset_id": "B", "timestamp": "2", "bids": [], "asks": []},
    ]))
    transport.push(json.dumps({"event_type": "book", "asset_id": "C", "timestamp": "3"}))
    transport.push(json.dumps(42))

    await wait_until(lambda: supervisor.stats['frames_received'] == 4)

    assert [book["asset_id"] for book in books] == ["A", "B", "C"]
    assert supervisor.stats['parse_errors'] == 1
    assert supervisor.state is ConnectionState.SUBSCRIBED
    assert len(factory.created) == 1
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_book_handler_errors_do_not_affect_connection():
    def explode(event):
        raise RuntimeError("boom")

    factory = FakeFactory()
    supervisor = ConnectionSupervisor(make_config(heartbeat_interval_ms=10000), ["A"],
                                      on_book=explode, transport_factory=factory)
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.state is ConnectionState.SUBSCRIBED)

    factory.created[0].push(json.dumps([{"event_type": "book", "asset_id": "A"}]))
    await wait_until(lambda: supervisor.stats['book_events'] == 1)

    assert supervisor.state is ConnectionState.SUBSCRIBED
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_close_signal_triggers_reconnect_and_resubscribe():
    factory = FakeFactory()
    supervisor = make_supervisor(factory, heartbeat_interval_ms=10000)
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.state is ConnectionState.SUBSCRIBED)

    await factory.created[0].close(1001, "going away")
    await wait_until(lambda: len(factory.created) == 2 and supervisor.state is ConnectionState.SUBSCRIBED)

    assert factory.created[1].sent == [{"type": "market", "assets_ids": ["A", "B"]}]
    assert supervisor.reconnect.attempt_count == 0
    assert supervisor.stats['connects'] == 2
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_successful_open_resets_attempt_count():
    factory = FakeFactory({"fail_connect": True}, {"fail_connect": True}, {})
    supervisor = make_supervisor(factory, heartbeat_interval_ms=10000)
    task = asyncio.create_task(supervisor.run())

    await wait_until(lambda: supervisor.state is ConnectionState.SUBSCRIBED)

    assert len(factory.created) == 3
    assert supervisor.stats['connect_failures'] == 2
    assert supervisor.reconnect.attempt_count == 0
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    factory = FakeFactory(fail_connect=True)
    supervisor = make_supervisor(factory, max_reconnect_attempts=3)

    final_state = await asyncio.wait_for(supervisor.run(), timeout=2.0)

    assert final_state is ConnectionState.IDLE
    assert supervisor.reconnect.exhausted
    assert supervisor.reconnect.attempt_count == 3
    # initial attempt plus three reconnects, nothing more
    assert len(factory.created) == 4
    await asyncio.sleep(0.02)
    assert len(factory.created) == 4


@pytest.mark.asyncio
async def test_missing_pongs_force_termination_and_reconnect():
    now = [0.0]
    factory = FakeFactory({"answer_pings": False}, {})
    supervisor = make_supervisor(factory, clock=lambda: now[0])
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.state is ConnectionState.SUBSCRIBED)

    # more than twice the heartbeat interval without a pong
    now[0] = 1.0
    await wait_until(lambda: len(factory.created) == 2 and supervisor.state is ConnectionState.SUBSCRIBED)

    assert factory.created[0].aborted
    assert factory.created[0].closed_with is None
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_answered_pings_keep_connection_alive():
    factory = FakeFactory()
    supervisor = make_supervisor(factory, heartbeat_interval_ms=30)
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.state is ConnectionState.SUBSCRIBED)

    await wait_until(lambda: supervisor.stats['pongs_received'] >= 3)

    assert not factory.created[0].aborted
    assert len(factory.created) == 1
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_ping_failure_forces_termination():
    factory = FakeFactory({"fail_ping": True}, {})
    supervisor = make_supervisor(factory)
    task = asyncio.create_task(supervisor.run())

    await wait_until(lambda: len(factory.created) == 2)

    assert factory.created[0].aborted
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_stop_while_connecting_schedules_nothing():
    factory = FakeFactory(block_connect=asyncio.Event())
    supervisor = make_supervisor(factory)
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.state is ConnectionState.CONNECTING)
    stalled = factory.created[0]

    assert await stop_and_wait(supervisor, task) is ConnectionState.CLOSED

    # a stray close signal from the abandoned attempt changes nothing
    await supervisor._handle_closed(_Message("closed", stalled, (1006, "")))
    await asyncio.sleep(0.02)

    assert supervisor.state is ConnectionState.CLOSED
    assert supervisor.reconnect.timer is None
    assert not supervisor.reconnect.running
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_stop_cancels_pending_reconnect():
    factory = FakeFactory(fail_connect=True)
    supervisor = make_supervisor(factory, reconnect_delay_ms=60000, max_reconnect_delay_ms=60000)
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.reconnect.timer is not None)

    assert await stop_and_wait(supervisor, task) is ConnectionState.CLOSED
    assert supervisor.reconnect.timer is None
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_connection_stats():
    factory = FakeFactory()
    supervisor = make_supervisor(factory, heartbeat_interval_ms=10000)
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.state is ConnectionState.SUBSCRIBED)

    stats = supervisor.get_connection_stats()

    assert stats['state'] == "Subscribed"
    assert stats['subscribed'] is True
    assert stats['connects'] == 1
    assert stats['url'] == "wss://example.test/ws/market"
    await stop_and_wait(supervisor, task)


@pytest.mark.asyncio
async def test_handshake_completing_after_stop_is_closed():
    release = asyncio.Event()
    factory = FakeFactory(block_connect=release)
    supervisor = make_supervisor(factory)
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.state is ConnectionState.CONNECTING)
    late = factory.created[0]

    # the handshake finishes in the same loop turn as the stop request
    release.set()
    supervisor.stop()

    assert await asyncio.wait_for(task, timeout=2.0) is ConnectionState.CLOSED
    assert late.closed_with is not None
    assert supervisor.stats['connects'] == 0
    assert len(factory.created) == 1
