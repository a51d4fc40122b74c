"""Typed events published on the client's `EventBus`."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .calls import CallSession, CallState
    from .messages import Message
    from .store import ClientStatus


@dataclass(frozen=True, slots=True)
class ConnectionStateChanged:
    connected: bool
    reconnect_attempts: int = 0
    should_reconnect: bool = True
    error: Exception | None = None


@dataclass(frozen=True, slots=True)
class SessionsUpdated:
    # None when the set of sessions changed rather than one session's log.
    session_id: str | None = None


@dataclass(frozen=True, slots=True)
class MessageReceived:
    """A new message from the remote participant was appended to a session."""

    session_id: str
    message: Message


@dataclass(frozen=True, slots=True)
class MessageFailed:
    session_id: str
    message: Message
    reason: str


@dataclass(frozen=True, slots=True)
class ClientStatusChanged:
    status: ClientStatus


@dataclass(frozen=True, slots=True)
class IncomingCall:
    call: CallSession


@dataclass(frozen=True, slots=True)
class CallStateChanged:
    state: CallState
    previous: CallState
    call: CallSession | None


@dataclass(frozen=True, slots=True)
class CallDurationTick:
    call_id: str
    seconds: int


@dataclass(frozen=True, slots=True)
class CallEnded:
    call: CallSession
    duration_s: int
    reason: str


@dataclass(frozen=True, slots=True)
class CallError:
    message: str
    call_id: str | None = None
