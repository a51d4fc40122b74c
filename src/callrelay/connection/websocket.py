from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Protocol

import websockets
from websockets.protocol import State

from ..exceptions import ProtocolError, TransportError


@dataclass(slots=True)
class WebSocketConfig:
    url: str
    connect_timeout_s: float = 20.0
    ping_timeout_s: float = 10.0
    extra_headers: dict[str, str] = field(default_factory=dict)


class Transport(Protocol):
    """The duplex text-frame socket `RelaySocket` drives."""

    @property
    def is_open(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def send(self, data: str) -> None: ...

    async def recv(self) -> str: ...

    async def ping(self) -> None: ...


class WebSocketTransport:
    def __init__(self, cfg: WebSocketConfig) -> None:
        self.cfg = cfg
        self._ws: Any | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        if not self._ws:
            return False
        # websockets>=15 uses `.state`; older versions had `.closed`.
        state = getattr(self._ws, "state", None)
        if state is not None:
            return bool(state == State.OPEN)
        closed = getattr(self._ws, "closed", None)
        if closed is not None:
            return not bool(closed)
        return True

    async def connect(self) -> None:
        if self._ws is not None:
            return
        self._closing = False
        try:
            connect_kwargs: dict[str, Any] = {
                "max_size": None,
                "open_timeout": self.cfg.connect_timeout_s,
                # Heartbeat pings are driven by RelaySocket so that a failed ping
                # goes through the same reconnect policy as any other failure.
                "ping_interval": None,
                "ping_timeout": None,
            }

            headers = self.cfg.extra_headers or None
            if headers is not None:
                # websockets>=15 renamed `extra_headers` -> `additional_headers`.
                params = inspect.signature(websockets.connect).parameters
                if "additional_headers" in params:
                    connect_kwargs["additional_headers"] = headers
                else:
                    connect_kwargs["extra_headers"] = headers

            self._ws = await asyncio.wait_for(
                websockets.connect(self.cfg.url, **connect_kwargs),
                timeout=self.cfg.connect_timeout_s,
            )
        except Exception as e:
            raise TransportError(f"failed to connect websocket: {e}") from e

    async def close(self) -> None:
        if self._ws is None:
            return
        self._closing = True
        try:
            await self._ws.close()
        finally:
            self._ws = None

    async def send(self, data: str) -> None:
        if not self._ws:
            raise TransportError("websocket not connected", cancelled=self._closing)
        try:
            await self._ws.send(data)
        except Exception as e:
            raise TransportError(f"websocket send failed: {e}", cancelled=self._closing) from e

    async def recv(self) -> str:
        if not self._ws:
            raise TransportError("websocket not connected", cancelled=self._closing)
        msg: Any
        try:
            msg = await self._ws.recv()
        except Exception as e:
            raise TransportError(f"websocket recv failed: {e}", cancelled=self._closing) from e
        if isinstance(msg, str):
            return msg
        if isinstance(msg, bytes):
            # The relay speaks text frames, but accept UTF-8 binary frames too.
            try:
                return msg.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ProtocolError("websocket frame is not valid UTF-8") from e
        raise TransportError(f"unexpected websocket message type: {type(msg).__name__}")

    async def ping(self) -> None:
        if not self._ws:
            raise TransportError("websocket not connected", cancelled=self._closing)
        try:
            pong_waiter = await self._ws.ping()
            await asyncio.wait_for(pong_waiter, timeout=self.cfg.ping_timeout_s)
        except Exception as e:
            raise TransportError(f"websocket ping failed: {e}", cancelled=self._closing) from e
