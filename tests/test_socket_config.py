from __future__ import annotations

import pytest

from callrelay.socket_config import ReconnectPolicy, SocketConfig, http_base_url, resolve_file_url


def test_default_backoff_grows_and_caps() -> None:
    p = ReconnectPolicy()
    delays = [p.delay_for(n) for n in range(1, 11)]

    assert delays[0] == 2.0
    assert delays[1] == 3.0
    assert delays[2] == 4.5
    assert all(a <= b for a, b in zip(delays, delays[1:], strict=False))
    assert max(delays) == 30.0
    assert p.delay_for(0) == 0.0


def test_socket_config_defaults() -> None:
    a = SocketConfig()
    b = SocketConfig()
    assert a.client_id != b.client_id
    assert a.client_id == a.client_id.upper()
    assert a.name == "iOSAdmin"
    assert a.is_admin is True
    assert a.heartbeat_interval_s == 15.0
    assert a.background_heartbeat_interval_s == 30.0
    assert a.reconnect.max_attempts == 10


@pytest.mark.parametrize(
    ("ws_url", "expected"),
    [
        ("wss://relay.example/ws", "https://relay.example"),
        ("ws://localhost:8080/ws", "http://localhost:8080"),
        ("wss://relay.example/chat/wss", "https://relay.example/chat"),
        ("wss://relay.example", "https://relay.example"),
    ],
)
def test_http_base_url(ws_url: str, expected: str) -> None:
    assert http_base_url(ws_url) == expected


def test_resolve_file_url() -> None:
    base = "https://relay.example"
    assert resolve_file_url("/uploads/a.png", base) == "https://relay.example/uploads/a.png"
    assert resolve_file_url("a.png", base + "/") == "https://relay.example/uploads/a.png"
    assert resolve_file_url("https://cdn.example/a.png", base) == "https://cdn.example/a.png"
