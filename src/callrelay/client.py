from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .calls import CallSignaling
from .kvstore import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .media import IceCandidate, MediaEngine, MediaState, NullMediaEngine
from .messages import FileRef, Message
from .router import DispatchRouter
from .socket import ConnectionState, RelaySocket, TransportFactory
from .socket_config import SocketConfig, http_base_url, resolve_file_url
from .store import PendingKey, SessionStore
from .util.asyncio import SerialExecutor, cancel_suppress, ensure_task
from .util.events import EventBus, Listener

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientConfig:
    socket: SocketConfig = field(default_factory=SocketConfig)
    dedup_window: int = 1000
    # Optimistic entries with no server echo after this long are failed.
    pending_ttl_s: float = 60.0
    pending_sweep_interval_s: float = 5.0
    client_status_min_interval_s: float = 5.0
    call_tick_s: float = 1.0


class RelayClient:
    """
    High-level async client facade.

    Wires the relay socket, session store, call signaling and dispatch router
    to one `EventBus`. Every state mutation (inbound envelopes, media engine
    callbacks and the public methods below) runs on a single `SerialExecutor`,
    so listeners always observe a consistent store and call state.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        media: MediaEngine | None = None,
        kv: KeyValueStore | None = None,
        transport_factory: TransportFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or ClientConfig()
        identity = self.config.socket.name

        self.events = EventBus()
        self._executor = SerialExecutor(name="callrelay.serial")
        self._loop: asyncio.AbstractEventLoop | None = None
        self._sweep_task: asyncio.Task[None] | None = None
        self._loaded = False

        self.store = SessionStore(
            identity,
            events=self.events,
            kv=kv or MemoryKeyValueStore(),
            dedup_window=self.config.dedup_window,
            client_status_min_interval_ms=int(self.config.client_status_min_interval_s * 1000),
        )
        self.socket = RelaySocket(
            self.config.socket,
            events=self.events,
            on_envelope=self._on_envelope,
            transport_factory=transport_factory,
        )
        self.media = media or NullMediaEngine()
        self.calls = CallSignaling(
            self.media,
            store=self.store,
            send=self._send,
            events=self.events,
            local_identity=identity,
            clock=clock,
            tick_s=self.config.call_tick_s,
        )
        self.router = DispatchRouter(self.store, self.calls, self.socket.send)
        self.media.bind(self._on_local_candidate, self._on_media_state)

    @classmethod
    def from_state_folder(
        cls,
        folder: str | Path,
        *,
        socket: SocketConfig | None = None,
        media: MediaEngine | None = None,
    ) -> RelayClient:
        """Client whose archive list and read bookmarks persist as JSON files in `folder`."""
        config = ClientConfig(socket=socket or SocketConfig())
        return cls(config, media=media, kv=JsonFileKeyValueStore(folder))

    async def __aenter__(self) -> RelayClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def on(self, event_type: type, listener: Listener) -> Callable[[], None]:
        return self.events.on(event_type, listener)

    @property
    def connection_state(self) -> ConnectionState:
        return self.socket.state

    @property
    def http_base_url(self) -> str:
        return http_base_url(self.config.socket.url)

    def file_url(self, message: Message) -> str | None:
        if message.file is None or not message.file.file_url:
            return None
        return resolve_file_url(message.file.file_url, self.http_base_url)

    # Lifecycle

    async def connect(self) -> bool:
        self._loop = asyncio.get_running_loop()
        self._executor.start()
        if not self._loaded:
            await self._executor.run(self.store.load)
            self._loaded = True
        connected = await self.socket.connect()
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = ensure_task(self._sweep_loop(), name="callrelay.pending_sweep")
        return connected

    async def disconnect(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        await cancel_suppress(task)
        await self.socket.disconnect()
        await self._executor.run(self.store.clear_pending)

    async def close(self) -> None:
        """Disconnect, end any active call and stop the serial worker."""
        if self.calls.active_call is not None:
            await self._executor.run(self.calls.end_call)
        await self.disconnect()
        await self._executor.stop()

    async def set_background(self, background: bool) -> None:
        await self.socket.set_background(background)

    async def drain(self) -> None:
        """Wait until every envelope and callback received so far has been applied."""
        await self._executor.join()

    # Messaging

    async def send_chat(self, session_id: str, text: str) -> bool:
        return await self._executor.run(
            self._send_optimistic, lambda: self.store.send_chat(session_id, text)
        )

    async def begin_file_upload(self, session_id: str, file_name: str) -> PendingKey:
        return await self._executor.run(self.store.begin_file_upload, session_id, file_name)

    async def send_file(
        self, session_id: str, file_ref: FileRef, *, upload_key: PendingKey | None = None
    ) -> bool:
        return await self._executor.run(
            self._send_optimistic,
            lambda: self.store.send_file(session_id, file_ref, upload_key=upload_key),
        )

    async def fail_file_upload(self, key: PendingKey, reason: str) -> bool:
        return await self._executor.run(self.store.fail_pending, key, reason)

    async def close_session(self, session_id: str) -> bool:
        return await self._executor.run(
            self._send_from, lambda: self.store.close_session(session_id)
        )

    async def archive_session(self, session_id: str) -> bool:
        return await self._executor.run(
            self._send_from, lambda: self.store.archive_session(session_id)
        )

    async def restore_session(self, session_id: str) -> bool:
        return await self._executor.run(
            self._send_from, lambda: self.store.restore_session(session_id)
        )

    async def request_client_status(self, session_id: str) -> bool:
        async def job() -> bool:
            envelope = self.store.request_client_status(session_id)
            if envelope is None:
                return False
            return await self._send(envelope)

        return await self._executor.run(job)

    async def mark_read(self, session_id: str, timestamp_ms: int | None = None) -> None:
        async def job() -> None:
            ts = timestamp_ms
            if ts is None:
                log = self.store.messages(session_id)
                if not log:
                    return
                ts = log[-1].timestamp
            await self.store.mark_read(session_id, ts)

        await self._executor.run(job)

    # Calls

    async def start_call(
        self, peer_name: str, *, session_id: str | None = None, with_video: bool = False
    ) -> bool:
        async def job() -> bool:
            return await self.calls.start_call(
                peer_name, session_id=session_id, with_video=with_video
            )

        return await self._executor.run(job)

    async def accept_call(self) -> bool:
        return await self._executor.run(self.calls.accept_call)

    async def decline_call(self) -> bool:
        return await self._executor.run(self.calls.decline_call)

    async def end_call(self) -> bool:
        return await self._executor.run(self.calls.end_call)

    # Internals

    async def _send(self, envelope: dict[str, Any]) -> bool:
        return await self.router.send(envelope)

    async def _send_from(self, build: Callable[[], Awaitable[dict[str, Any]]]) -> bool:
        return await self._send(await build())

    async def _send_optimistic(self, build: Callable[[], Awaitable[dict[str, Any]]]) -> bool:
        envelope = await build()
        if await self._send(envelope):
            return True
        key = self.store.pending_key_for(envelope)
        if key is not None:
            await self.store.fail_pending(key, "not connected")
        return False

    def _on_envelope(self, envelope: dict[str, Any]) -> None:
        self._executor.post(self.router.route, envelope)

    def _from_media(self, fn: Callable[..., Awaitable[None]], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("media callback before connect dropped")
            return
        loop.call_soon_threadsafe(self._executor.post, fn, *args)

    # Tag engine callbacks with the call active when they fire, so a late event from
    # a finished call cannot reach the next one.

    def _on_local_candidate(self, candidate: IceCandidate) -> None:
        self._from_media(self.calls.handle_local_candidate, candidate, self.calls.active_call)

    def _on_media_state(self, state: MediaState) -> None:
        self._from_media(self.calls.handle_media_state, state, self.calls.active_call)

    async def _sweep_loop(self) -> None:
        ttl_ms = int(self.config.pending_ttl_s * 1000)
        while True:
            await asyncio.sleep(self.config.pending_sweep_interval_s)
            self._executor.post(self.store.expire_pending, ttl_ms)
