from __future__ import annotations

from .model import (
    FileRef,
    Message,
    MessageKind,
    PendingState,
    message_from_envelope,
    message_to_dict,
)
from .timestamp import normalize_timestamp, now_ms

__all__ = [
    "FileRef",
    "Message",
    "MessageKind",
    "PendingState",
    "message_from_envelope",
    "message_to_dict",
    "normalize_timestamp",
    "now_ms",
]
