from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from . import envelope as env
from .events import CallDurationTick, CallEnded, CallError, CallStateChanged, IncomingCall
from .exceptions import SignalingError
from .media import IceCandidate, MediaEngine, MediaState, SessionDescription
from .store import SessionStore
from .util.asyncio import cancel_suppress, ensure_task
from .util.events import EventBus

logger = logging.getLogger(__name__)

SendFn = Callable[[dict[str, Any]], Awaitable[bool]]


class CallState(enum.Enum):
    IDLE = "idle"
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class CallDirection(enum.Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


@dataclass(slots=True)
class CallSession:
    call_id: str
    session_id: str
    peer_name: str
    has_video: bool
    direction: CallDirection
    created_at: float = field(default_factory=time.time)
    # True once the peer knows about this call (offer sent or received).
    signaled: bool = False


def _new_call_id() -> str:
    return uuid.uuid4().hex


class CallSignaling:
    """
    One-call-at-a-time signaling state machine.

    Legal edges:

        idle -> outgoing -> connecting -> connected -> idle
        idle -> incoming -> connecting -> connected -> idle
        incoming | outgoing | connecting -> idle

    Public methods return False for a request that is not a legal edge from the
    current state; such requests are logged and leave the state untouched.
    Media-engine failures are reported as `CallError` and force `idle`.
    """

    def __init__(
        self,
        media: MediaEngine,
        *,
        store: SessionStore,
        send: SendFn,
        events: EventBus,
        local_identity: str,
        clock: Callable[[], float] = time.monotonic,
        tick_s: float = 1.0,
    ) -> None:
        self._media = media
        self._store = store
        self._send = send
        self._events = events
        self.local_identity = local_identity
        self._clock = clock
        self._tick_s = tick_s

        self._state = CallState.IDLE
        self._call: CallSession | None = None
        self._connected_at: float | None = None
        self._ticker: asyncio.Task[None] | None = None

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def active_call(self) -> CallSession | None:
        return self._call

    @property
    def duration_s(self) -> int:
        if self._connected_at is None:
            return 0
        return max(0, int(self._clock() - self._connected_at))

    # Local actions

    async def start_call(
        self, peer_name: str, *, session_id: str | None = None, with_video: bool = False
    ) -> bool:
        if self._state is not CallState.IDLE:
            logger.warning("start_call ignored: call already %s", self._state.value)
            return False
        sid = session_id or self._store.call_focus
        if sid is None:
            await self._events.emit(CallError("no session to call"))
            return False

        call = CallSession(
            call_id=_new_call_id(),
            session_id=sid,
            peer_name=peer_name,
            has_video=with_video,
            direction=CallDirection.OUTGOING,
        )
        self._call = call
        self._store.call_focus = sid
        await self._set_state(CallState.OUTGOING)

        try:
            offer = await self._negotiate(call, self._media.create_offer(with_video))
        except SignalingError as e:
            await self._fail(e)
            return False
        if self._call is not call:
            return False

        call.signaled = await self._send(
            env.call_offer(
                sdp=offer.sdp,
                call_id=call.call_id,
                session_id=sid,
                has_video=with_video,
                sender=self.local_identity,
                peer=peer_name,
            )
        )
        if not call.signaled:
            logger.warning("call_offer %s was not sent", call.call_id)
            await self._events.emit(CallError("call offer was not sent", call.call_id))
            await self._finish("offer not sent", send_end=False)
            return False
        await self._set_state(CallState.CONNECTING)
        return True

    async def accept_call(self) -> bool:
        call = self._call
        if self._state is not CallState.INCOMING or call is None:
            logger.warning("accept_call ignored in state %s", self._state.value)
            return False
        try:
            answer = await self._negotiate(call, self._media.create_answer(call.has_video))
        except SignalingError as e:
            await self._fail(e)
            return False
        if self._call is not call:
            return False

        await self._send(
            env.call_answer(
                sdp=answer.sdp,
                call_id=call.call_id,
                session_id=call.session_id,
                has_video=call.has_video,
                sender=self.local_identity,
                peer=call.peer_name,
            )
        )
        await self._set_state(CallState.CONNECTING)
        return True

    async def decline_call(self) -> bool:
        call = self._call
        if self._state is not CallState.INCOMING or call is None:
            logger.warning("decline_call ignored in state %s", self._state.value)
            return False
        await self._send(
            env.call_reject(
                call_id=call.call_id, session_id=call.session_id, sender=self.local_identity
            )
        )
        await self._finish("declined", send_end=False)
        return True

    async def end_call(self) -> bool:
        call = self._call
        if self._state is CallState.IDLE or call is None:
            logger.debug("end_call with no active call")
            return False
        await self._finish("local hangup", send_end=call.signaled)
        return True

    # Remote signaling

    async def handle_offer(self, data: Mapping[str, Any]) -> None:
        sdp = data.get("sdp")
        call_id = data.get("callId")
        if not isinstance(sdp, str) or not sdp or not isinstance(call_id, str) or not call_id:
            logger.warning("dropping call_offer without sdp/callId")
            return
        if self._state is not CallState.IDLE:
            logger.info("busy: ignoring call_offer %s while %s", call_id, self._state.value)
            return
        sid = env.session_id_of(data) or self._store.call_focus
        if sid is None:
            logger.warning("dropping call_offer %s: no session", call_id)
            return

        peer = data.get("from")
        call = CallSession(
            call_id=call_id,
            session_id=sid,
            peer_name=peer if isinstance(peer, str) else "",
            has_video=data.get("hasVideo") is True,
            direction=CallDirection.INCOMING,
            signaled=True,
        )
        self._call = call
        self._store.call_focus = sid
        await self._set_state(CallState.INCOMING)

        try:
            remote = SessionDescription("offer", sdp)
            await self._negotiate(call, self._media.set_remote_description(remote))
        except SignalingError as e:
            await self._fail(e)
            return
        if self._call is call:
            await self._events.emit(IncomingCall(call))

    async def handle_answer(self, data: Mapping[str, Any]) -> None:
        call = self._call
        sdp = data.get("sdp")
        if not isinstance(sdp, str) or not sdp:
            logger.warning("dropping call_answer without sdp")
            return
        if call is None or call.direction is not CallDirection.OUTGOING:
            logger.debug("ignoring call_answer with no outgoing call")
            return
        if self._is_stale(data, call):
            return
        if self._state is not CallState.CONNECTING:
            logger.warning("ignoring call_answer in state %s", self._state.value)
            return
        try:
            remote = SessionDescription("answer", sdp)
            await self._negotiate(call, self._media.set_remote_description(remote))
        except SignalingError as e:
            await self._fail(e)
            return
        if self._call is call:
            await self._mark_connected()

    async def handle_remote_candidate(self, data: Mapping[str, Any]) -> None:
        call = self._call
        if call is None or self._state not in (
            CallState.INCOMING,
            CallState.CONNECTING,
            CallState.CONNECTED,
        ):
            logger.debug("ignoring ice_candidate in state %s", self._state.value)
            return
        if self._is_stale(data, call):
            return
        raw = data.get("candidate")
        try:
            candidate = IceCandidate.from_dict(raw if isinstance(raw, dict) else {})
        except ValueError as e:
            logger.warning("dropping ice_candidate: %s", e)
            return
        try:
            await self._media.add_remote_candidate(candidate)
        except Exception:
            # A single bad candidate does not end the call.
            logger.warning("media engine rejected remote candidate", exc_info=True)

    async def handle_remote_end(self, data: Mapping[str, Any]) -> None:
        call = self._call
        if call is None or self._state is CallState.IDLE:
            logger.debug("ignoring %s with no active call", data.get("type"))
            return
        if self._is_stale(data, call):
            return
        reason = "rejected by peer" if data.get("type") == "call_reject" else "remote hangup"
        await self._finish(reason, send_end=False)

    # Media engine callbacks. `call` is the call that was active when the engine
    # fired; callbacks from a call that has since ended are dropped.

    def _is_current(self, call: CallSession) -> bool:
        return call is self._call and self._state is not CallState.IDLE

    async def handle_local_candidate(
        self, candidate: IceCandidate, call: CallSession | None
    ) -> None:
        if call is None or not self._is_current(call):
            logger.debug("dropping local candidate from a finished call")
            return
        await self._send(
            env.ice_candidate(
                candidate=candidate.candidate,
                sdp_mline_index=candidate.sdp_mline_index,
                sdp_mid=candidate.sdp_mid,
                session_id=call.session_id,
                call_id=call.call_id,
                sender=self.local_identity,
            )
        )

    async def handle_media_state(self, state: MediaState, call: CallSession | None) -> None:
        if call is None or not self._is_current(call):
            logger.debug("dropping media state %s from a finished call", state.value)
            return
        if state is MediaState.CONNECTED:
            if self._state is CallState.CONNECTING:
                await self._mark_connected()
            return
        if not state.is_terminal:
            return
        if state is MediaState.FAILED:
            await self._events.emit(CallError("media connection failed", call.call_id))
        await self._finish(f"media {state.value}", send_end=call.signaled)

    # Internals

    def _is_stale(self, data: Mapping[str, Any], call: CallSession) -> bool:
        call_id = data.get("callId")
        if isinstance(call_id, str) and call_id and call_id != call.call_id:
            logger.debug("ignoring %s for stale call %s", data.get("type"), call_id)
            return True
        return False

    async def _negotiate(self, call: CallSession, step: Awaitable[Any]) -> Any:
        try:
            return await step
        except Exception as e:
            raise SignalingError(f"media negotiation failed: {e}", call_id=call.call_id) from e

    async def _set_state(self, state: CallState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        logger.debug("call state %s -> %s", previous.value, state.value)
        await self._events.emit(CallStateChanged(state, previous, self._call))

    async def _mark_connected(self) -> None:
        if self._state is CallState.CONNECTED:
            return
        self._connected_at = self._clock()
        await self._set_state(CallState.CONNECTED)
        if self._ticker is None or self._ticker.done():
            self._ticker = ensure_task(self._tick(), name="callrelay.call_timer")

    async def _tick(self) -> None:
        call = self._call
        if call is None:
            return
        while self._call is call and self._state is CallState.CONNECTED:
            await asyncio.sleep(self._tick_s)
            if self._call is not call:
                return
            await self._events.emit(CallDurationTick(call.call_id, self.duration_s))

    async def _fail(self, error: SignalingError) -> None:
        logger.warning("%s", error)
        await self._events.emit(CallError(str(error), error.call_id))
        call = self._call
        await self._finish("error", send_end=call.signaled if call is not None else False)

    async def _finish(self, reason: str, *, send_end: bool) -> None:
        call = self._call
        if call is None:
            return
        duration = self.duration_s

        # Release call-scoped state first so nothing below can observe a half-ended call.
        ticker, self._ticker = self._ticker, None
        await cancel_suppress(ticker)
        self._call = None
        self._connected_at = None
        previous = self._state
        self._state = CallState.IDLE

        try:
            await self._media.close()
        except Exception:
            logger.warning("media engine failed to close", exc_info=True)

        if send_end:
            await self._send(
                env.call_end(
                    session_id=call.session_id,
                    sender=self.local_identity,
                    peer=call.peer_name,
                    call_id=call.call_id,
                )
            )
        if duration > 0:
            await self._send(await self._store.record_call_log(call.session_id, duration))

        logger.info("call %s ended (%s) after %ss", call.call_id, reason, duration)
        await self._events.emit(CallStateChanged(CallState.IDLE, previous, None))
        await self._events.emit(CallEnded(call, duration, reason))
