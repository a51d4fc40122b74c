"""
Media-engine interface driven by the call state machine.

The engine owns media negotiation internals (peer connection, tracks, ICE
gathering). Call signaling only needs to produce and apply session
descriptions, exchange candidates and learn about connectivity changes.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from .exceptions import MediaEngineError

logger = logging.getLogger(__name__)


class MediaState(enum.Enum):
    NEW = "new"
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (MediaState.DISCONNECTED, MediaState.FAILED, MediaState.CLOSED)


@dataclass(frozen=True, slots=True)
class SessionDescription:
    kind: str  # "offer" | "answer"
    sdp: str


@dataclass(frozen=True, slots=True)
class IceCandidate:
    candidate: str
    sdp_mline_index: int
    sdp_mid: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IceCandidate:
        cand = data.get("candidate")
        index = data.get("sdpMLineIndex")
        mid = data.get("sdpMid")
        if not isinstance(cand, str) or isinstance(index, bool) or not isinstance(index, int):
            raise ValueError(f"malformed ICE candidate: {dict(data)!r}")
        return cls(
            candidate=cand,
            sdp_mline_index=index,
            sdp_mid=mid if isinstance(mid, str) else None,
        )


LocalCandidateCallback = Callable[[IceCandidate], None]
StateChangeCallback = Callable[[MediaState], None]


class MediaEngine(Protocol):
    """
    Implementations raise `MediaEngineError` on negotiation failure.

    Callbacks passed to `bind()` may be invoked from any thread.
    """

    def bind(
        self, on_local_candidate: LocalCandidateCallback, on_state_change: StateChangeCallback
    ) -> None: ...

    async def create_offer(self, with_video: bool) -> SessionDescription: ...

    async def create_answer(self, with_video: bool) -> SessionDescription: ...

    async def set_remote_description(self, desc: SessionDescription) -> None: ...

    async def add_remote_candidate(self, candidate: IceCandidate) -> None: ...

    async def close(self) -> None: ...


class NullMediaEngine:
    """
    Signaling-only engine: produces placeholder descriptions and reports the
    transport connected as soon as both descriptions are in place.

    Useful for exercising the relay without audio or video.
    """

    def __init__(self) -> None:
        self._on_candidate: LocalCandidateCallback | None = None
        self._on_state: StateChangeCallback | None = None
        self._local: SessionDescription | None = None
        self._remote: SessionDescription | None = None

    def bind(
        self, on_local_candidate: LocalCandidateCallback, on_state_change: StateChangeCallback
    ) -> None:
        self._on_candidate = on_local_candidate
        self._on_state = on_state_change

    def _sdp(self, with_video: bool) -> str:
        lines = [
            "v=0",
            "o=- 0 0 IN IP4 127.0.0.1",
            "s=-",
            "t=0 0",
            "m=audio 9 UDP/TLS/RTP/SAVPF 111",
        ]
        if with_video:
            lines.append("m=video 9 UDP/TLS/RTP/SAVPF 96")
        return "\r\n".join(lines) + "\r\n"

    async def create_offer(self, with_video: bool) -> SessionDescription:
        self._local = SessionDescription("offer", self._sdp(with_video))
        return self._local

    async def create_answer(self, with_video: bool) -> SessionDescription:
        if self._remote is None:
            raise MediaEngineError("cannot answer without a remote offer")
        self._local = SessionDescription("answer", self._sdp(with_video))
        self._maybe_connected()
        return self._local

    async def set_remote_description(self, desc: SessionDescription) -> None:
        if not desc.sdp:
            raise MediaEngineError("empty remote description")
        self._remote = desc
        self._maybe_connected()

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        logger.debug("null media engine ignoring candidate %s", candidate.candidate)

    async def close(self) -> None:
        self._local = None
        self._remote = None

    def _maybe_connected(self) -> None:
        if self._local is not None and self._remote is not None and self._on_state is not None:
            self._on_state(MediaState.CONNECTED)
