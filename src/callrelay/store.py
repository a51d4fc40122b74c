from __future__ import annotations

import bisect
import hashlib
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from . import constants as C
from . import envelope as env
from .events import ClientStatusChanged, MessageFailed, MessageReceived, SessionsUpdated
from .exceptions import StoreInvariantViolation
from .kvstore import KeyValueStore, MemoryKeyValueStore
from .messages import FileRef, Message, MessageKind, PendingState, message_from_envelope, now_ms
from .messages.timestamp import normalize_timestamp
from .util.events import EventBus

logger = logging.getLogger(__name__)

# (session_id, timestamp_ms, content fingerprint or file name)
PendingKey = tuple[str, int, str]
Fingerprint = tuple[Any, ...]


@dataclass(slots=True)
class ClientStatus:
    session_id: str
    client_name: str
    is_online: bool
    last_seen_ms: int | None = None


@dataclass(slots=True)
class _Pending:
    message: Message
    created_ms: int
    # Upload placeholders wait on an out-of-band HTTP upload, not on an echo.
    awaiting_upload: bool = False


def text_fingerprint(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def _sort_key(m: Message) -> int:
    return m.timestamp


class SessionStore:
    """
    In-memory session logs plus the archive list.

    `apply()` is the only entry point for inbound state. The local send helpers
    return the envelope to write and update the log optimistically. All methods
    assume a single writer (see `callrelay.util.asyncio.SerialExecutor`).
    """

    def __init__(
        self,
        local_identity: str,
        *,
        events: EventBus,
        kv: KeyValueStore | None = None,
        dedup_window: int = 1000,
        client_status_min_interval_ms: int = 5000,
        now: Callable[[], int] = now_ms,
    ) -> None:
        if dedup_window < 2:
            raise ValueError("dedup_window must be >= 2")
        self.local_identity = local_identity
        self._events = events
        self._kv: KeyValueStore = kv or MemoryKeyValueStore()
        self._dedup_window = dedup_window
        self._status_interval_ms = client_status_min_interval_ms
        self._now = now

        self._sessions: dict[str, list[Message]] = {}
        self._archived: list[str] = []
        self._statuses: dict[str, ClientStatus] = {}
        self._pending: dict[PendingKey, _Pending] = {}
        # Insertion-ordered; oldest entries are evicted first.
        self._seen: dict[Fingerprint, None] = {}
        self._status_requested_at: dict[str, int] = {}
        self._bookmarks: dict[str, int] = {}

        self._message_focus: str | None = None
        self._call_focus: str | None = None

        self._handlers: dict[str, Callable[[Mapping[str, Any]], Any]] = {
            C.REGISTERED: self._on_registered,
            C.SESSIONS: self._on_sessions,
            C.HISTORY: self._on_history,
            C.CHAT: self._on_content,
            C.FILE: self._on_content,
            C.CALL_LOG: self._on_call_log,
            C.CLIENT_STATUS: self._on_client_status,
            C.SESSION_CLOSED: self._on_session_removed,
            C.SESSION_ARCHIVED: self._on_session_removed,
        }

    # Accessors

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def archived_ids(self) -> list[str]:
        return list(self._archived)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def messages(self, session_id: str) -> list[Message]:
        return list(self._sessions.get(session_id, ()))

    def client_status(self, session_id: str) -> ClientStatus | None:
        return self._statuses.get(session_id)

    def pending_keys(self) -> list[PendingKey]:
        return list(self._pending)

    def pending_key_for(self, outbound: Mapping[str, Any]) -> PendingKey | None:
        """Key of the optimistic entry created for an outbound `chat`/`file` envelope."""
        sid = env.session_id_of(outbound)
        ts = outbound.get("timestamp")
        if sid is None or not isinstance(ts, int):
            return None
        t = outbound.get("type")
        if t == C.CHAT and isinstance(outbound.get("message"), str):
            return (sid, ts, text_fingerprint(outbound["message"]))
        if t == C.FILE and isinstance(outbound.get("fileName"), str):
            return (sid, ts, outbound["fileName"])
        return None

    @property
    def message_focus(self) -> str | None:
        return self._message_focus

    @message_focus.setter
    def message_focus(self, session_id: str | None) -> None:
        self._message_focus = session_id

    @property
    def call_focus(self) -> str | None:
        return self._call_focus

    @call_focus.setter
    def call_focus(self, session_id: str | None) -> None:
        self._call_focus = session_id

    async def load(self) -> None:
        """Restore the archive list from the key-value store."""
        raw = await self._kv.get(C.ARCHIVED_SESSIONS_KEY)
        if raw is None:
            return
        if not isinstance(raw, list):
            logger.warning("ignoring malformed archive list: %r", raw)
            return
        self._archived = [s for s in dict.fromkeys(raw) if isinstance(s, str) and s]
        for sid in self._archived:
            self._sessions.pop(sid, None)

    # Inbound

    async def apply(self, envelope: Mapping[str, Any]) -> None:
        t = envelope.get("type")
        handler = self._handlers.get(t) if isinstance(t, str) else None
        if handler is None:
            logger.debug("store ignoring envelope type %r", t)
            return
        try:
            await handler(envelope)
        except StoreInvariantViolation as e:
            logger.warning("store: %s", e)

    async def _on_registered(self, data: Mapping[str, Any]) -> None:
        sid = data.get("session_uuid")
        if not isinstance(sid, str) or not sid:
            return
        self._message_focus = sid
        self._call_focus = sid
        if sid in self._archived:
            logger.debug("registered session %s is archived; not reopening", sid)
        elif sid not in self._sessions:
            self._sessions[sid] = []
        await self._events.emit(SessionsUpdated())

    async def _on_sessions(self, data: Mapping[str, Any]) -> None:
        items = data.get("sessions")
        if not isinstance(items, list):
            logger.warning("dropping `sessions` without a list: %r", items)
            return
        changed = False
        for item in items:
            sid = item.get("session_uuid") if isinstance(item, dict) else None
            if not isinstance(sid, str) or not sid:
                logger.debug("skipping malformed session entry: %r", item)
                continue
            if sid in self._archived or sid in self._sessions:
                continue
            self._sessions[sid] = []
            changed = True
        if changed:
            await self._events.emit(SessionsUpdated())

    async def _on_history(self, data: Mapping[str, Any]) -> None:
        sid = data.get("session_uuid")
        entries = data.get("messages")
        if not isinstance(sid, str) or not sid or not isinstance(entries, list):
            logger.warning("dropping malformed `history` envelope")
            return
        # Replays after a reconnect cover every session; only `restore_session` un-archives.
        if sid in self._archived:
            logger.debug("ignoring history for archived session %s", sid)
            return

        log: list[Message] = []
        for entry in entries:
            msg = message_from_envelope(entry, now=self._now) if isinstance(entry, dict) else None
            if msg is None:
                logger.debug("skipping malformed history entry: %r", entry)
                continue
            log.append(msg)
        log.sort(key=_sort_key)

        # Optimistic entries survive a history replace unless history already has them.
        for key, pending in list(self._pending.items()):
            if key[0] != sid:
                continue
            if any(m.same_content(pending.message) for m in log):
                del self._pending[key]
            else:
                bisect.insort_right(log, pending.message, key=_sort_key)

        self._sessions[sid] = log
        await self._events.emit(SessionsUpdated(sid))

    async def _on_content(self, data: Mapping[str, Any]) -> None:
        sid = env.session_id_of(data)
        msg = message_from_envelope(data, now=self._now)
        if sid is None or msg is None:
            logger.warning("dropping malformed %r envelope", data.get("type"))
            return

        fp = self._fingerprint(data)
        if fp in self._seen:
            logger.debug("ignoring duplicate %s from %s", msg.kind.value, msg.sender)
            return
        self._remember(fp)

        await self._reopen(sid)
        log = self._sessions[sid]

        if msg.sender == self.local_identity:
            key = self._key_for(sid, msg)
            pending = self._pending.pop(key, None) if key is not None else None
            if pending is not None and self._replace(log, pending.message, msg):
                await self._events.emit(SessionsUpdated(sid))
                return
            if any(m.same_content(msg) for m in log):
                return
            self._insert(log, msg)
            await self._events.emit(SessionsUpdated(sid))
            return

        if any(m.same_content(msg) for m in log):
            return
        self._insert(log, msg)
        await self._events.emit(SessionsUpdated(sid))
        await self._events.emit(MessageReceived(sid, msg))

    async def _on_call_log(self, data: Mapping[str, Any]) -> None:
        sid = env.session_id_of(data)
        msg = message_from_envelope(data, now=self._now)
        if sid is None or msg is None:
            logger.warning("dropping malformed `call_log` envelope")
            return
        await self._reopen(sid)
        self._insert(self._sessions[sid], msg)
        await self._events.emit(SessionsUpdated(sid))

    async def _on_client_status(self, data: Mapping[str, Any]) -> None:
        sid = data.get("session_uuid")
        name = data.get("client_name")
        status = data.get("status")
        if not all(isinstance(v, str) for v in (sid, name, status)):
            logger.warning("dropping malformed `client_status` envelope")
            return
        last_seen = data.get("last_seen")
        last_seen_ms = None if last_seen is None else normalize_timestamp(last_seen, now=self._now)
        record = ClientStatus(
            session_id=sid,
            client_name=name,
            is_online=status == "online",
            last_seen_ms=last_seen_ms,
        )
        self._statuses[sid] = record
        await self._events.emit(ClientStatusChanged(record))

    async def _on_session_removed(self, data: Mapping[str, Any]) -> None:
        sid = data.get("session_uuid")
        if not isinstance(sid, str) or not sid:
            logger.warning("dropping %r without session_uuid", data.get("type"))
            return
        await self._archive_locally(sid)

    # Outbound (optimistic)

    async def send_chat(self, session_id: str, text: str) -> dict[str, Any]:
        ts = self._now()
        msg = Message(
            sender=self.local_identity,
            kind=MessageKind.TEXT,
            text=text,
            timestamp=ts,
            state=PendingState.PENDING,
        )
        await self._add_pending((session_id, ts, text_fingerprint(text)), msg)
        return env.chat(session_id=session_id, text=text, timestamp=ts)

    async def begin_file_upload(self, session_id: str, file_name: str) -> PendingKey:
        """Show a placeholder for a file that is still uploading."""
        ts = self._now()
        msg = Message(
            sender=self.local_identity,
            kind=MessageKind.FILE,
            file=FileRef(file_name),
            timestamp=ts,
            state=PendingState.PENDING,
        )
        key = (session_id, ts, file_name)
        await self._add_pending(key, msg, awaiting_upload=True)
        return key

    async def send_file(
        self, session_id: str, file_ref: FileRef, *, upload_key: PendingKey | None = None
    ) -> dict[str, Any]:
        """
        Optimistically add an uploaded file and build its `file` envelope.

        With `upload_key`, the placeholder from `begin_file_upload` is replaced
        in place and keeps its timestamp; the server may have renamed the file,
        so the entry is re-keyed on the final name.
        """

        placeholder = self._pending.pop(upload_key, None) if upload_key is not None else None
        ts = placeholder.message.timestamp if placeholder is not None else self._now()
        msg = Message(
            sender=self.local_identity,
            kind=MessageKind.FILE,
            file=file_ref,
            timestamp=ts,
            state=PendingState.PENDING,
        )
        key = (session_id, ts, file_ref.file_name)
        if placeholder is not None and self._replace(
            self._sessions.get(session_id, []), placeholder.message, msg
        ):
            self._pending[key] = _Pending(msg, self._now())
            await self._events.emit(SessionsUpdated(session_id))
        else:
            await self._add_pending(key, msg)
        return env.file(
            session_id=session_id,
            file_name=file_ref.file_name,
            file_url=file_ref.file_url or "",
            mime_type=file_ref.mime_type or "application/octet-stream",
            size=file_ref.size or 0,
            timestamp=ts,
        )

    async def fail_pending(self, key: PendingKey, reason: str) -> bool:
        pending = self._pending.pop(key, None)
        if pending is None:
            logger.debug("no pending entry for %s", key)
            return False
        await self._drop_failed(key[0], pending, reason)
        return True

    async def expire_pending(self, ttl_ms: int, *, now_ms: int | None = None) -> int:
        """Fail entries still unconfirmed after `ttl_ms`; returns how many."""
        now = self._now() if now_ms is None else now_ms
        expired = [
            (k, p)
            for k, p in self._pending.items()
            if not p.awaiting_upload and now - p.created_ms >= ttl_ms
        ]
        for key, pending in expired:
            del self._pending[key]
            await self._drop_failed(key[0], pending, "no confirmation from server")
        return len(expired)

    async def clear_pending(self) -> None:
        """Fail every entry waiting on an echo; the connection that would carry it is gone."""
        for key, pending in list(self._pending.items()):
            if pending.awaiting_upload:
                continue
            del self._pending[key]
            await self._drop_failed(key[0], pending, "disconnected")

    async def record_call_log(self, session_id: str, duration_s: int) -> dict[str, Any]:
        ts = self._now()
        msg = Message(
            sender=C.SYSTEM_SENDER,
            recipient="all",
            kind=MessageKind.CALL_LOG,
            text=C.CALL_LOG_TEXT,
            timestamp=ts,
            call_duration_s=duration_s,
        )
        await self._reopen(session_id)
        self._insert(self._sessions[session_id], msg)
        await self._events.emit(SessionsUpdated(session_id))
        return env.call_log(session_id=session_id, duration_s=duration_s, timestamp=ts)

    # Session lifecycle

    async def close_session(self, session_id: str) -> dict[str, Any]:
        try:
            await self._archive_locally(session_id)
        except StoreInvariantViolation as e:
            logger.warning("store: %s", e)
        return env.session_command(C.CLOSE_SESSION, session_id)

    async def archive_session(self, session_id: str) -> dict[str, Any]:
        try:
            await self._archive_locally(session_id)
        except StoreInvariantViolation as e:
            logger.warning("store: %s", e)
        return env.session_command(C.ARCHIVE_SESSION, session_id)

    async def restore_session(self, session_id: str) -> dict[str, Any]:
        if session_id in self._archived:
            self._archived.remove(session_id)
            await self._save_archive()
        self._sessions.setdefault(session_id, [])
        await self._events.emit(SessionsUpdated())
        return env.session_command(C.RESTORE_SESSION, session_id)

    def request_client_status(self, session_id: str) -> dict[str, Any] | None:
        """`get_client_status` envelope, or None when asked again too soon."""
        now = self._now()
        last = self._status_requested_at.get(session_id)
        if last is not None and now - last < self._status_interval_ms:
            logger.debug("client status for %s requested too recently", session_id)
            return None
        self._status_requested_at[session_id] = now
        return env.session_command(C.GET_CLIENT_STATUS, session_id)

    # Read position

    async def mark_read(self, session_id: str, timestamp_ms: int) -> None:
        current = await self.read_position(session_id)
        if current is not None and current >= timestamp_ms:
            return
        self._bookmarks[session_id] = timestamp_ms
        await self._kv.set(C.BOOKMARK_KEY_PREFIX + session_id, timestamp_ms)

    async def read_position(self, session_id: str) -> int | None:
        if session_id in self._bookmarks:
            return self._bookmarks[session_id]
        raw = await self._kv.get(C.BOOKMARK_KEY_PREFIX + session_id)
        if isinstance(raw, int) and not isinstance(raw, bool):
            self._bookmarks[session_id] = raw
            return raw
        return None

    async def unread_count(self, session_id: str) -> int:
        since = await self.read_position(session_id) or 0
        return sum(
            1
            for m in self._sessions.get(session_id, ())
            if m.timestamp > since and m.sender != self.local_identity and not m.is_system
        )

    # Internals

    def _fingerprint(self, data: Mapping[str, Any]) -> Fingerprint:
        return (
            data.get("timestamp"),
            data.get("from", ""),
            data.get("message", ""),
            data.get("fileUrl", ""),
            data.get("type"),
        )

    def _remember(self, fp: Fingerprint) -> None:
        self._seen[fp] = None
        if len(self._seen) <= self._dedup_window:
            return
        excess = len(self._seen) - self._dedup_window // 2
        for old in list(self._seen)[:excess]:
            del self._seen[old]

    def _key_for(self, session_id: str, msg: Message) -> PendingKey | None:
        if msg.kind is MessageKind.TEXT and msg.text is not None:
            return (session_id, msg.timestamp, text_fingerprint(msg.text))
        if msg.kind is MessageKind.FILE and msg.file is not None:
            return (session_id, msg.timestamp, msg.file.file_name)
        return None

    async def _reopen(self, session_id: str) -> None:
        if session_id in self._archived:
            logger.info("session %s received new content; restoring from archive", session_id)
            self._archived.remove(session_id)
            await self._save_archive()
        self._sessions.setdefault(session_id, [])

    def _insert(self, log: list[Message], msg: Message) -> None:
        bisect.insort_right(log, msg, key=_sort_key)

    def _replace(self, log: list[Message], old: Message, new: Message) -> bool:
        for i, m in enumerate(log):
            if m.id == old.id:
                new.id = old.id
                log[i] = new
                return True
        return False

    async def _add_pending(
        self, key: PendingKey, msg: Message, *, awaiting_upload: bool = False
    ) -> None:
        sid = key[0]
        await self._reopen(sid)
        log = self._sessions[sid]
        existing = self._pending.get(key)
        if existing is not None:
            logger.warning("duplicate pending key %s; overwriting in place", key)
            if self._replace(log, existing.message, msg):
                existing.message = msg
                existing.awaiting_upload = awaiting_upload
                await self._events.emit(SessionsUpdated(sid))
                return
        self._pending[key] = _Pending(msg, self._now(), awaiting_upload)
        self._insert(log, msg)
        await self._events.emit(SessionsUpdated(sid))

    async def _drop_failed(self, session_id: str, pending: _Pending, reason: str) -> None:
        msg = pending.message
        msg.state = PendingState.FAILED
        log = self._sessions.get(session_id)
        if log is not None:
            log[:] = [m for m in log if m.id != msg.id]
        logger.info("pending %s in %s failed: %s", msg.kind.value, session_id, reason)
        await self._events.emit(SessionsUpdated(session_id))
        await self._events.emit(MessageFailed(session_id, msg, reason))

    async def _archive_locally(self, session_id: str) -> None:
        self._statuses.pop(session_id, None)
        if self._message_focus == session_id:
            self._message_focus = None
        if self._call_focus == session_id:
            self._call_focus = None
        for key in [k for k in self._pending if k[0] == session_id]:
            del self._pending[key]

        if self._sessions.pop(session_id, None) is None:
            if session_id in self._archived:
                return
            raise StoreInvariantViolation(f"cannot archive unknown session {session_id}")
        if session_id not in self._archived:
            self._archived.append(session_id)
            await self._save_archive()
        await self._events.emit(SessionsUpdated())

    async def _save_archive(self) -> None:
        await self._kv.set(C.ARCHIVED_SESSIONS_KEY, list(self._archived))
