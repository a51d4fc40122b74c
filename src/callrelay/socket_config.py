from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from urllib.parse import urlsplit, urlunsplit

from .constants import DEFAULT_CLIENT_NAME, DEFAULT_WS_URL


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    """
    Exponential backoff for reconnect attempts.

    Attempt `n` (1-based) waits `base_delay_s * multiplier ** (n - 1)` seconds,
    capped at `max_delay_s`. Consecutive attempts are spaced at least
    `min_interval_s` apart, and the socket gives up after `max_attempts`
    consecutive failures.
    """

    base_delay_s: float = 2.0
    multiplier: float = 1.5
    max_delay_s: float = 30.0
    min_interval_s: float = 1.0
    max_attempts: int = 10

    def delay_for(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return min(self.base_delay_s * self.multiplier ** (attempt - 1), self.max_delay_s)


@dataclass(slots=True)
class SocketConfig:
    url: str = DEFAULT_WS_URL
    client_id: str = field(default_factory=lambda: str(uuid.uuid4()).upper())
    name: str = DEFAULT_CLIENT_NAME
    is_admin: bool = True

    connect_timeout_s: float = 20.0
    heartbeat_interval_s: float = 15.0
    background_heartbeat_interval_s: float = 30.0
    ping_timeout_s: float = 10.0

    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)

    extra_headers: dict[str, str] = field(default_factory=dict)


def http_base_url(ws_url: str) -> str:
    """
    Derive the HTTP origin that serves uploads for a relay socket URL.

    `wss://relay.example/ws` -> `https://relay.example`
    """

    parts = urlsplit(ws_url)
    scheme = {"wss": "https", "ws": "http"}.get(parts.scheme, parts.scheme)
    path = parts.path
    for suffix in ("/wss", "/ws"):
        if path.endswith(suffix):
            path = path[: -len(suffix)]
            break
    return urlunsplit((scheme, parts.netloc, path.rstrip("/"), "", ""))


def resolve_file_url(file_url: str, base_url: str) -> str:
    """Turn a relay-relative `fileUrl` into an absolute download URL."""

    if file_url.startswith(("http://", "https://")):
        return file_url
    base = base_url.rstrip("/")
    if file_url.startswith("/"):
        return f"{base}{file_url}"
    return f"{base}/uploads/{file_url}"
