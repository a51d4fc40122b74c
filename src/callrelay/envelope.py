"""
Envelope codec and builders.

An envelope is one JSON object exchanged over the relay socket, discriminated by
its `type` field. Decoding only checks the outer shape; per-type field
validation happens in the component that owns the type.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from typing import Any

from . import constants as C
from .exceptions import ProtocolError
from .util import json as envjson

Envelope = dict[str, Any]


def decode_envelope(text: str | bytes) -> Envelope:
    try:
        obj = envjson.loads(text)
    except ValueError as e:
        raise ProtocolError(f"envelope is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ProtocolError(f"envelope must be a JSON object, got {type(obj).__name__}")
    t = obj.get("type")
    if not isinstance(t, str) or not t:
        raise ProtocolError("envelope is missing `type`")
    return obj


def encode_envelope(envelope: Mapping[str, Any]) -> str:
    t = envelope.get("type")
    if not isinstance(t, str) or not t:
        raise ProtocolError("refusing to encode an envelope without `type`")
    return envjson.dumps(dict(envelope))


def session_id_of(envelope: Mapping[str, Any]) -> str | None:
    """Session id of an envelope: `session_uuid`, else `targetSession`."""

    for key in ("session_uuid", "targetSession"):
        v = envelope.get(key)
        if isinstance(v, str) and v:
            return v
    return None


def _iso_now() -> str:
    return dt.datetime.now(dt.UTC).isoformat(timespec="milliseconds")


def register(*, client_id: str, is_admin: bool, name: str) -> Envelope:
    return {"type": C.REGISTER, "clientId": client_id, "isAdmin": is_admin, "name": name}


def chat(*, session_id: str, text: str, timestamp: int) -> Envelope:
    return {"type": C.CHAT, "message": text, "targetSession": session_id, "timestamp": timestamp}


def file(
    *,
    session_id: str,
    file_name: str,
    file_url: str,
    mime_type: str,
    size: int,
    timestamp: int,
) -> Envelope:
    return {
        "type": C.FILE,
        "fileName": file_name,
        "fileUrl": file_url,
        "mimeType": mime_type,
        "size": size,
        "targetSession": session_id,
        "timestamp": timestamp,
    }


def call_log(*, session_id: str, duration_s: int, timestamp: int) -> Envelope:
    return {
        "type": C.CALL_LOG,
        "from": C.SYSTEM_SENDER,
        "to": "all",
        "message": C.CALL_LOG_TEXT,
        "callDuration": duration_s,
        "session_uuid": session_id,
        "timestamp": timestamp,
    }


def session_command(kind: str, session_id: str) -> Envelope:
    """`get_client_status`, `close_session`, `archive_session` or `restore_session`."""

    if kind not in (C.GET_CLIENT_STATUS, C.CLOSE_SESSION, C.ARCHIVE_SESSION, C.RESTORE_SESSION):
        raise ValueError(f"not a session command: {kind}")
    return {"type": kind, "session_uuid": session_id}


def call_offer(
    *, sdp: str, call_id: str, session_id: str, has_video: bool, sender: str, peer: str
) -> Envelope:
    return {
        "type": C.CALL_OFFER,
        "from": sender,
        "to": peer,
        "sdp": sdp,
        "callId": call_id,
        "session_uuid": session_id,
        "hasVideo": has_video,
        "timestamp": _iso_now(),
    }


def call_answer(
    *, sdp: str, call_id: str, session_id: str, has_video: bool, sender: str, peer: str
) -> Envelope:
    return {
        "type": C.CALL_ANSWER,
        "from": sender,
        "to": peer,
        "sdp": sdp,
        "callId": call_id,
        "session_uuid": session_id,
        "hasVideo": has_video,
        "timestamp": _iso_now(),
    }


def ice_candidate(
    *,
    candidate: str,
    sdp_mline_index: int,
    sdp_mid: str | None,
    session_id: str,
    call_id: str,
    sender: str,
) -> Envelope:
    return {
        "type": C.ICE_CANDIDATE,
        "candidate": {
            "candidate": candidate,
            "sdpMLineIndex": sdp_mline_index,
            "sdpMid": sdp_mid or "",
        },
        "from": sender,
        "session_uuid": session_id,
        "callId": call_id,
        "timestamp": _iso_now(),
    }


def call_end(*, session_id: str, sender: str, peer: str, call_id: str | None = None) -> Envelope:
    env: Envelope = {
        "type": C.CALL_END,
        "from": sender,
        "to": peer,
        "session_uuid": session_id,
        "timestamp": _iso_now(),
    }
    if call_id:
        env["callId"] = call_id
    return env


def call_reject(*, call_id: str, session_id: str, sender: str) -> Envelope:
    return {
        "type": C.CALL_REJECT,
        "callId": call_id,
        "from": sender,
        "session_uuid": session_id,
        "timestamp": _iso_now(),
    }
