from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from . import constants as C
from .calls import CallSignaling
from .store import SessionStore

logger = logging.getLogger(__name__)

SendFn = Callable[[dict[str, Any]], Awaitable[bool]]


class DispatchRouter:
    """
    Routes decoded envelopes by `type`.

    Session types go to the store, call signaling types to the call machine,
    acknowledgements are ignored and anything else is logged and dropped.
    Outbound envelopes from either component leave through `send`.
    """

    def __init__(self, store: SessionStore, calls: CallSignaling, socket_send: SendFn) -> None:
        self._store = store
        self._calls = calls
        self._socket_send = socket_send
        self._call_handlers: dict[str, Callable[[Mapping[str, Any]], Awaitable[None]]] = {
            C.CALL_OFFER: calls.handle_offer,
            C.CALL_ANSWER: calls.handle_answer,
            C.ICE_CANDIDATE: calls.handle_remote_candidate,
            C.CALL_END: calls.handle_remote_end,
            C.CALL_REJECT: calls.handle_remote_end,
        }

    async def route(self, envelope: Mapping[str, Any]) -> None:
        t = envelope.get("type")
        if t in C.SESSION_TYPES:
            await self._store.apply(envelope)
        elif t in self._call_handlers:
            await self._call_handlers[t](envelope)
        elif t in C.IGNORED_TYPES:
            return
        else:
            logger.info("unknown envelope type %r dropped", t)

    async def send(self, envelope: Mapping[str, Any]) -> bool:
        return await self._socket_send(dict(envelope))
