from __future__ import annotations


class CallRelayError(Exception):
    """Base error for the callrelay library."""


class TransportError(CallRelayError):
    """
    Duplex socket failure (connect, write, read or ping).

    `cancelled` is set when the failure is the result of a deliberate local
    shutdown rather than a connectivity loss.
    """

    def __init__(self, message: str, *, cancelled: bool = False) -> None:
        super().__init__(message)
        self.cancelled = cancelled


class ProtocolError(CallRelayError):
    """Malformed or unknown envelope."""


class SignalingError(CallRelayError):
    """Illegal call transition, stale call id or media negotiation failure."""

    def __init__(self, message: str, *, call_id: str | None = None) -> None:
        super().__init__(message)
        self.call_id = call_id


class StoreInvariantViolation(CallRelayError):
    """Session store bookkeeping conflict (duplicate pending key, missing session)."""


class MediaEngineError(CallRelayError):
    """Raised by media engine implementations when negotiation fails."""
