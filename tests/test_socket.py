from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable

import pytest

from callrelay.connection.websocket import WebSocketConfig
from callrelay.events import ConnectionStateChanged
from callrelay.exceptions import TransportError
from callrelay.socket import RelaySocket
from callrelay.socket_config import ReconnectPolicy, SocketConfig
from callrelay.util.events import EventBus

_FAST = ReconnectPolicy(
    base_delay_s=0.001, multiplier=1.5, max_delay_s=0.01, min_interval_s=0.0, max_attempts=10
)


class _FakeTransport:
    def __init__(self, *, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.sent: list[dict] = []
        self.inbox: asyncio.Queue[str | Exception] = asyncio.Queue()
        self.pings = 0
        self.closed = False
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        if self.fail_connect:
            raise TransportError("connection refused")
        self._open = True

    async def close(self) -> None:
        self._open = False
        self.closed = True

    async def send(self, data: str) -> None:
        if not self._open:
            raise TransportError("not open")
        self.sent.append(json.loads(data))

    async def recv(self) -> str:
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def ping(self) -> None:
        self.pings += 1


class _Factory:
    """Hands out transports in order; `fail` consecutive connects fail first."""

    def __init__(self, fail: int = 0) -> None:
        self.fail = fail
        self.made: list[_FakeTransport] = []

    def __call__(self, _cfg: WebSocketConfig) -> _FakeTransport:
        t = _FakeTransport(fail_connect=len(self.made) < self.fail)
        self.made.append(t)
        return t


class _TimedFactory(_Factory):
    def __init__(self, fail: int = 0) -> None:
        super().__init__(fail)
        self.times: list[float] = []

    def __call__(self, cfg: WebSocketConfig) -> _FakeTransport:
        self.times.append(asyncio.get_running_loop().time())
        return super().__call__(cfg)


def _socket(
    factory: _Factory,
    *,
    policy: ReconnectPolicy = _FAST,
    clock: Callable[[], float] = time.monotonic,
    **cfg: object,
) -> tuple[RelaySocket, EventBus, list[dict]]:
    bus = EventBus()
    received: list[dict] = []
    config = SocketConfig(url="ws://relay.test/ws", name="iOSAdmin", reconnect=policy, **cfg)
    sock = RelaySocket(
        config, events=bus, on_envelope=received.append, transport_factory=factory, clock=clock
    )
    return sock, bus, received


async def _until(cond, timeout_s: float = 1.0) -> None:
    async def poll() -> None:
        while not cond():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout=timeout_s)


@pytest.mark.asyncio
async def test_connect_sends_register_once() -> None:
    factory = _Factory()
    sock, _, _ = _socket(factory)

    assert await sock.connect() is True
    assert await sock.connect() is True
    again = {"type": "register", "clientId": "x", "isAdmin": True, "name": "n"}
    assert await sock.send(again) is False

    (t,) = factory.made
    assert t.sent == [
        {
            "type": "register",
            "clientId": sock.config.client_id,
            "isAdmin": True,
            "name": "iOSAdmin",
        }
    ]
    assert sock.state.connected is True
    assert sock.state.reconnect_attempts == 0
    await sock.disconnect()


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts() -> None:
    factory = _Factory(fail=100)
    sock, bus, _ = _socket(factory)
    gave_up = bus.wait_for_future(
        ConnectionStateChanged, predicate=lambda e: not e.should_reconnect
    )

    assert await sock.connect() is False
    ev = await asyncio.wait_for(gave_up, timeout=2.0)

    assert ev.reconnect_attempts == 10
    assert len(factory.made) == 11
    assert sock.state.should_reconnect is False
    assert sock.state.connected is False

    # Nothing else is scheduled once the socket gave up.
    await asyncio.sleep(0.05)
    assert len(factory.made) == 11


@pytest.mark.asyncio
async def test_reconnects_after_failures_and_resets_attempts() -> None:
    factory = _Factory(fail=3)
    sock, bus, _ = _socket(factory)
    up = bus.wait_for_future(ConnectionStateChanged, predicate=lambda e: e.connected)

    assert await sock.connect() is False
    await asyncio.wait_for(up, timeout=2.0)
    await _until(lambda: bool(factory.made[-1].sent))

    assert len(factory.made) == 4
    assert sock.state.reconnect_attempts == 0
    assert sock.state.last_reconnect_at is not None
    assert factory.made[-1].sent[0]["type"] == "register"
    await sock.disconnect()


@pytest.mark.asyncio
async def test_reconnects_are_spaced_by_min_interval() -> None:
    # Backoff alone would retry after a millisecond; the floor holds the third
    # connect back until min_interval_s after the previous reconnect started.
    policy = ReconnectPolicy(
        base_delay_s=0.001, multiplier=1.5, max_delay_s=0.01, min_interval_s=0.1, max_attempts=3
    )
    factory = _TimedFactory(fail=2)
    sock, bus, _ = _socket(factory, policy=policy, clock=lambda: 100.0)
    up = bus.wait_for_future(ConnectionStateChanged, predicate=lambda e: e.connected)

    assert await sock.connect() is False
    await asyncio.wait_for(up, timeout=2.0)

    assert len(factory.times) == 3
    first_gap = factory.times[1] - factory.times[0]
    second_gap = factory.times[2] - factory.times[1]
    assert first_gap < 0.09
    assert second_gap >= 0.09
    assert sock.state.last_reconnect_at == 100.0
    await sock.disconnect()


@pytest.mark.asyncio
async def test_receive_failure_reconnects_and_registers_again() -> None:
    factory = _Factory()
    sock, _, _ = _socket(factory)
    await sock.connect()

    first = factory.made[0]
    await first.inbox.put(TransportError("connection reset"))
    await _until(lambda: len(factory.made) == 2 and sock.is_connected)

    assert first.closed
    second = factory.made[1]
    assert [e["type"] for e in second.sent] == ["register"]
    await sock.disconnect()


@pytest.mark.asyncio
async def test_disconnect_stops_reconnecting() -> None:
    factory = _Factory()
    sock, bus, _ = _socket(factory)
    await sock.connect()
    down = bus.wait_for_future(ConnectionStateChanged, predicate=lambda e: not e.connected)

    await sock.disconnect()
    ev = await asyncio.wait_for(down, timeout=1.0)

    assert ev.should_reconnect is False
    assert factory.made[0].closed
    await asyncio.sleep(0.05)
    assert len(factory.made) == 1
    assert await sock.send({"type": "chat", "message": "x"}) is False


@pytest.mark.asyncio
async def test_bad_frames_are_dropped_and_good_ones_delivered() -> None:
    factory = _Factory()
    sock, _, received = _socket(factory)
    await sock.connect()

    t = factory.made[0]
    for frame in ("not json", "[1]", '{"no": "type"}', '{"type": "sessions", "sessions": []}'):
        await t.inbox.put(frame)
    await _until(lambda: len(received) == 1)

    assert received == [{"type": "sessions", "sessions": []}]
    assert sock.is_connected
    await sock.disconnect()


@pytest.mark.asyncio
async def test_failed_send_triggers_reconnect() -> None:
    factory = _Factory()
    sock, _, _ = _socket(factory)
    await sock.connect()

    await factory.made[0].close()
    assert await sock.send({"type": "chat", "message": "x"}) is False
    await _until(lambda: len(factory.made) == 2 and sock.is_connected)
    await sock.disconnect()


@pytest.mark.asyncio
async def test_heartbeat_pings_and_foreground_rechecks() -> None:
    factory = _Factory()
    sock, _, _ = _socket(factory, heartbeat_interval_s=0.005, background_heartbeat_interval_s=10.0)
    await sock.connect()
    t = factory.made[0]

    await _until(lambda: t.pings >= 2)
    await sock.set_background(True)
    assert sock.background
    pings = t.pings
    await asyncio.sleep(0.03)
    assert t.pings == pings

    await sock.set_background(False)
    assert t.pings == pings + 1
    await sock.disconnect()
