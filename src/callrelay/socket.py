from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from . import constants as C
from . import envelope as env
from .connection.websocket import Transport, WebSocketConfig, WebSocketTransport
from .events import ConnectionStateChanged
from .exceptions import ProtocolError, TransportError
from .socket_config import SocketConfig
from .util.asyncio import cancel_suppress, ensure_task
from .util.events import EventBus

logger = logging.getLogger(__name__)

TransportFactory = Callable[[WebSocketConfig], Transport]
EnvelopeHandler = Callable[[env.Envelope], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class ConnectionState:
    connected: bool
    reconnect_attempts: int
    last_reconnect_at: float | None
    should_reconnect: bool


class RelaySocket:
    """
    Owns the duplex connection to the relay.

    Inbound frames are decoded and handed to `on_envelope` from the receive
    task; the handler must not mutate session or call state directly.
    Transport failures never propagate: they resolve to a reconnect per
    `SocketConfig.reconnect` or to a `ConnectionStateChanged(connected=False)`.
    """

    def __init__(
        self,
        config: SocketConfig,
        *,
        events: EventBus,
        on_envelope: EnvelopeHandler,
        transport_factory: TransportFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._events = events
        self._on_envelope = on_envelope
        self._transport_factory: TransportFactory = transport_factory or WebSocketTransport
        self._clock = clock

        self._transport: Transport | None = None
        self._connected = False
        self._attempts = 0
        self._last_reconnect_at: float | None = None
        self._should_reconnect = True
        self._registered = False
        self._background = False
        self._opening = False

        self._recv_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return ConnectionState(
            connected=self._connected,
            reconnect_attempts=self._attempts,
            last_reconnect_at=self._last_reconnect_at,
            should_reconnect=self._should_reconnect,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def background(self) -> bool:
        return self._background

    def _ws_config(self) -> WebSocketConfig:
        return WebSocketConfig(
            url=self.config.url,
            connect_timeout_s=self.config.connect_timeout_s,
            ping_timeout_s=self.config.ping_timeout_s,
            extra_headers=dict(self.config.extra_headers),
        )

    async def connect(self) -> bool:
        """Open the socket; returns True when connected afterwards."""
        if self._opening:
            logger.debug("connect ignored: an attempt is already in flight")
            return False
        if self._connected:
            return True
        task, self._reconnect_task = self._reconnect_task, None
        await cancel_suppress(task)
        self._attempts = 0
        self._should_reconnect = True
        return await self._open()

    async def disconnect(self) -> None:
        self._should_reconnect = False
        task, self._reconnect_task = self._reconnect_task, None
        await cancel_suppress(task)
        was_connected = self._connected
        await self._teardown()
        if was_connected:
            await self._events.emit(
                ConnectionStateChanged(False, self._attempts, self._should_reconnect)
            )

    async def send(self, envelope: env.Envelope) -> bool:
        """Encode and write one envelope; False when it was not written."""
        is_register = envelope.get("type") == C.REGISTER
        if is_register and self._registered:
            logger.debug("skipping duplicate register on this connection")
            return False
        transport = self._transport
        if not self._connected or transport is None:
            logger.debug("not connected; dropping outbound %s", envelope.get("type"))
            return False
        try:
            text = env.encode_envelope(envelope)
        except (ProtocolError, TypeError, ValueError) as e:
            logger.warning("cannot encode outbound envelope: %s", e)
            return False

        if is_register:
            self._registered = True
        try:
            async with self._send_lock:
                await transport.send(text)
        except TransportError as e:
            if is_register:
                self._registered = False
            if not e.cancelled:
                logger.warning("send failed: %s", e)
                await self._connection_lost(transport, e)
            return False
        return True

    async def set_background(self, background: bool) -> None:
        """Switch heartbeat cadence; coming back to the foreground re-checks the link."""
        if background == self._background:
            return
        self._background = background
        transport = self._transport
        if self._connected and transport is not None:
            await cancel_suppress(self._heartbeat_task)
            self._heartbeat_task = ensure_task(
                self._heartbeat_loop(transport), name="callrelay.heartbeat"
            )
            if not background:
                await self._ping(transport)
        elif not background:
            await self._schedule_reconnect()

    # Internals

    async def _open(self) -> bool:
        self._opening = True
        transport = self._transport_factory(self._ws_config())
        try:
            await transport.connect()
        except TransportError as e:
            self._opening = False
            logger.warning("connect to %s failed: %s", self.config.url, e)
            await self._events.emit(
                ConnectionStateChanged(False, self._attempts, self._should_reconnect, e)
            )
            await self._schedule_reconnect()
            return False
        except BaseException:
            self._opening = False
            with contextlib.suppress(TransportError):
                await transport.close()
            raise
        self._opening = False

        self._transport = transport
        self._connected = True
        self._registered = False
        self._attempts = 0
        self._recv_task = ensure_task(self._recv_loop(transport), name="callrelay.recv_loop")
        self._heartbeat_task = ensure_task(
            self._heartbeat_loop(transport), name="callrelay.heartbeat"
        )
        logger.info("connected to %s", self.config.url)
        await self._events.emit(ConnectionStateChanged(True, 0, self._should_reconnect))
        await self.send(
            env.register(
                client_id=self.config.client_id,
                is_admin=self.config.is_admin,
                name=self.config.name,
            )
        )
        return True

    async def _schedule_reconnect(self) -> None:
        if not self._should_reconnect or self._connected or self._opening:
            return
        pending = self._reconnect_task
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            return

        policy = self.config.reconnect
        if self._attempts >= policy.max_attempts:
            self._should_reconnect = False
            logger.error("giving up after %d reconnect attempts", self._attempts)
            await self._events.emit(ConnectionStateChanged(False, self._attempts, False))
            return

        self._attempts += 1
        delay = policy.delay_for(self._attempts)
        if self._last_reconnect_at is not None:
            floor = self._last_reconnect_at + policy.min_interval_s - self._clock()
            delay = max(delay, floor)
        logger.info("reconnect attempt %d in %.1fs", self._attempts, delay)
        self._reconnect_task = ensure_task(
            self._reconnect_after(delay), name="callrelay.reconnect"
        )

    async def _reconnect_after(self, delay_s: float) -> None:
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        if self._connected or not self._should_reconnect:
            return
        self._last_reconnect_at = self._clock()
        await self._open()

    async def _connection_lost(self, transport: Transport, error: Exception) -> None:
        if transport is not self._transport:
            return
        logger.warning("connection lost: %s", error)
        await self._teardown()
        await self._events.emit(
            ConnectionStateChanged(False, self._attempts, self._should_reconnect, error)
        )
        await self._schedule_reconnect()

    async def _teardown(self) -> None:
        transport = self._transport
        self._transport = None
        self._connected = False
        self._registered = False
        recv, self._recv_task = self._recv_task, None
        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        await cancel_suppress(recv)
        await cancel_suppress(heartbeat)
        if transport is not None:
            try:
                await transport.close()
            except TransportError as e:
                logger.debug("error closing transport: %s", e)

    async def _recv_loop(self, transport: Transport) -> None:
        while self._connected and transport is self._transport:
            try:
                text = await transport.recv()
            except ProtocolError as e:
                logger.warning("dropping undecodable frame: %s", e)
                continue
            except TransportError as e:
                if e.cancelled:
                    return
                await self._connection_lost(transport, e)
                return

            try:
                envelope = env.decode_envelope(text)
            except ProtocolError as e:
                logger.warning("dropping frame: %s", e)
                continue

            try:
                res: Any = self._on_envelope(envelope)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                logger.exception("envelope handler failed for %r", envelope.get("type"))

    async def _heartbeat_loop(self, transport: Transport) -> None:
        while self._connected and transport is self._transport:
            interval = (
                self.config.background_heartbeat_interval_s
                if self._background
                else self.config.heartbeat_interval_s
            )
            await asyncio.sleep(interval)
            if not await self._ping(transport):
                return

    async def _ping(self, transport: Transport) -> bool:
        if transport is not self._transport:
            return False
        try:
            await transport.ping()
        except TransportError as e:
            if e.cancelled:
                return False
            await self._connection_lost(transport, e)
            return False
        return True
