from __future__ import annotations

DEFAULT_WS_URL = "ws://localhost:8080/ws"
DEFAULT_CLIENT_NAME = "iOSAdmin"

# Envelope types received from the relay.
REGISTERED = "registered"
SESSIONS = "sessions"
HISTORY = "history"
CHAT = "chat"
FILE = "file"
CALL_LOG = "call_log"
CLIENT_STATUS = "client_status"
SESSION_CLOSED = "session_closed"
SESSION_ARCHIVED = "session_archived"

# Envelope types sent to the relay.
REGISTER = "register"
GET_CLIENT_STATUS = "get_client_status"
CLOSE_SESSION = "close_session"
ARCHIVE_SESSION = "archive_session"
RESTORE_SESSION = "restore_session"

# Call signaling (both directions unless noted).
CALL_OFFER = "call_offer"
CALL_ANSWER = "call_answer"
ICE_CANDIDATE = "ice_candidate"
CALL_END = "call_end"
CALL_REJECT = "call_reject"  # outbound only

SESSION_TYPES = frozenset(
    {
        REGISTERED,
        SESSIONS,
        HISTORY,
        CHAT,
        FILE,
        CALL_LOG,
        CLIENT_STATUS,
        SESSION_CLOSED,
        SESSION_ARCHIVED,
    }
)
CALL_TYPES = frozenset({CALL_OFFER, CALL_ANSWER, ICE_CANDIDATE, CALL_END, CALL_REJECT})

# Server acknowledgements that carry no state for the client.
IGNORED_TYPES = frozenset({"ack", "pong", "ok"})

SYSTEM_SENDER = "system"
CALL_LOG_TEXT = "Call ended"

# Key-value store keys.
ARCHIVED_SESSIONS_KEY = "archived_sessions"
BOOKMARK_KEY_PREFIX = "bookmark-"
