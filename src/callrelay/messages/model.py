from __future__ import annotations

import enum
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..constants import CALL_LOG, CHAT, FILE, SYSTEM_SENDER
from .timestamp import normalize_timestamp, now_ms


class MessageKind(enum.Enum):
    TEXT = "chat"
    FILE = "file"
    CALL_LOG = "call_log"


class PendingState(enum.Enum):
    """
    Lifecycle of a locally-inserted message.

    Server-originated messages are created `CONFIRMED`. Optimistic entries start
    `PENDING` and end `CONFIRMED` (echo replaced them in place) or `FAILED`
    (removed from the log).
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class FileRef:
    file_name: str
    file_url: str | None = None
    mime_type: str | None = None
    size: int | None = None


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class Message:
    sender: str
    kind: MessageKind
    timestamp: int
    recipient: str = ""
    text: str | None = None
    file: FileRef | None = None
    call_duration_s: int | None = None
    state: PendingState = PendingState.CONFIRMED
    id: str = field(default_factory=_new_id)

    @property
    def is_system(self) -> bool:
        return self.sender == SYSTEM_SENDER

    @property
    def is_pending(self) -> bool:
        return self.state is PendingState.PENDING

    def same_content(self, other: Message) -> bool:
        """Equivalence used to suppress duplicates already present in a log."""

        if self.kind is not other.kind or self.timestamp != other.timestamp:
            return False
        if self.kind is MessageKind.FILE:
            mine = self.file or FileRef("")
            theirs = other.file or FileRef("")
            return mine.file_name == theirs.file_name and mine.file_url == theirs.file_url
        return self.sender == other.sender and self.text == other.text


_KINDS = {CHAT: MessageKind.TEXT, FILE: MessageKind.FILE, CALL_LOG: MessageKind.CALL_LOG}


def _opt_str(v: Any) -> str | None:
    return v if isinstance(v, str) else None


def _opt_int(v: Any) -> int | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, str) and v.isdigit():
        return int(v)
    return None


def message_from_envelope(
    data: Mapping[str, Any], *, now: Callable[[], int] = now_ms
) -> Message | None:
    """
    Build a `Message` from a `chat`/`file`/`call_log` envelope or history entry.

    Returns None when required fields are missing; callers log and drop.
    """

    kind = _KINDS.get(data.get("type"))  # type: ignore[arg-type]
    if kind is None:
        return None

    sender = _opt_str(data.get("from"))
    if sender is None:
        if kind is not MessageKind.CALL_LOG:
            return None
        sender = SYSTEM_SENDER

    text = _opt_str(data.get("message"))
    if text is None:
        text = _opt_str(data.get("fileData"))

    file_ref: FileRef | None = None
    file_name = _opt_str(data.get("fileName"))
    file_url = _opt_str(data.get("fileUrl"))
    if file_name is not None or file_url is not None:
        file_ref = FileRef(
            file_name=file_name or "",
            file_url=file_url,
            mime_type=_opt_str(data.get("mimeType")),
            size=_opt_int(data.get("size")),
        )

    if kind is MessageKind.TEXT and text is None:
        return None
    if kind is MessageKind.FILE and file_ref is None:
        return None

    return Message(
        sender=sender,
        recipient=_opt_str(data.get("to")) or "",
        kind=kind,
        text=text,
        file=file_ref,
        timestamp=normalize_timestamp(data.get("timestamp"), now=now),
        call_duration_s=_opt_int(data.get("callDuration")),
    )


def message_to_dict(message: Message) -> dict[str, Any]:
    """Wire-shaped dict for a message, as found in `history` entries."""

    out: dict[str, Any] = {
        "type": message.kind.value,
        "from": message.sender,
        "to": message.recipient,
        "timestamp": message.timestamp,
    }
    if message.text is not None:
        out["message"] = message.text
    if message.file is not None:
        out["fileName"] = message.file.file_name
        if message.file.file_url is not None:
            out["fileUrl"] = message.file.file_url
        if message.file.mime_type is not None:
            out["mimeType"] = message.file.mime_type
        if message.file.size is not None:
            out["size"] = message.file.size
    if message.call_duration_s is not None:
        out["callDuration"] = message.call_duration_s
    return out
