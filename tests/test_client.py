from __future__ import annotations

import asyncio
import json

import pytest

from callrelay import ClientConfig, ReconnectPolicy, RelayClient, SocketConfig
from callrelay.calls import CallState
from callrelay.connection.websocket import WebSocketConfig
from callrelay.events import CallEnded, MessageFailed, MessageReceived
from callrelay.exceptions import TransportError
from callrelay.media import MediaState
from callrelay.messages import FileRef, Message, MessageKind, PendingState


class _Transport:
    def __init__(self, *, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.sent: list[dict] = []
        self.inbox: asyncio.Queue[str] = asyncio.Queue()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        if self.fail_connect:
            raise TransportError("refused")
        self._open = True

    async def close(self) -> None:
        self._open = False

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def recv(self) -> str:
        return await self.inbox.get()

    async def ping(self) -> None:
        return None


def _client(*, fail_connect: bool = False) -> tuple[RelayClient, list[_Transport]]:
    made: list[_Transport] = []

    def factory(_cfg: WebSocketConfig) -> _Transport:
        t = _Transport(fail_connect=fail_connect)
        made.append(t)
        return t

    sock = SocketConfig(
        url="wss://relay.example/ws", name="iOSAdmin", reconnect=ReconnectPolicy(max_attempts=0)
    )
    config = ClientConfig(socket=sock, call_tick_s=60.0)
    client = RelayClient(config, transport_factory=factory)
    return client, made


async def _feed(client: RelayClient, t: _Transport, envelope: dict) -> None:
    await t.inbox.put(json.dumps(envelope))
    # Let the receive task hand the frame to the serial worker, then wait for it.
    while not t.inbox.empty():
        await asyncio.sleep(0)
    await asyncio.sleep(0)
    await client.drain()


@pytest.mark.asyncio
async def test_inbound_chat_is_routed_to_the_store() -> None:
    client, made = _client()
    got: list[MessageReceived] = []
    client.on(MessageReceived, got.append)

    assert await client.connect() is True
    (t,) = made
    assert t.sent[0]["type"] == "register"

    await _feed(client, t, {"type": "registered", "session_uuid": "S"})
    await _feed(
        client,
        t,
        {
            "type": "chat",
            "session_uuid": "S",
            "from": "web",
            "message": "hi",
            "timestamp": 1700000000,
        },
    )

    assert client.store.message_focus == "S"
    assert [m.text for m in client.store.messages("S")] == ["hi"]
    assert got[0].message.timestamp == 1700000000000
    await client.close()


@pytest.mark.asyncio
async def test_send_chat_while_disconnected_fails_the_entry() -> None:
    client, _ = _client(fail_connect=True)
    failed: list[MessageFailed] = []
    client.on(MessageFailed, failed.append)

    assert await client.connect() is False
    assert client.connection_state.should_reconnect is False

    assert await client.send_chat("S", "hello") is False
    assert client.store.messages("S") == []
    assert client.store.pending_keys() == []
    assert failed[0].reason == "not connected"
    await client.close()


@pytest.mark.asyncio
async def test_send_chat_is_optimistic_until_echo() -> None:
    client, made = _client()
    await client.connect()
    (t,) = made

    assert await client.send_chat("S", "hello") is True
    out = t.sent[-1]
    assert out["type"] == "chat"
    assert out["targetSession"] == "S"
    (pending,) = client.store.messages("S")
    assert pending.state is PendingState.PENDING

    echo = {
        "type": "chat",
        "session_uuid": "S",
        "from": "iOSAdmin",
        "message": "hello",
        "timestamp": out["timestamp"],
    }
    await _feed(client, t, echo)

    (confirmed,) = client.store.messages("S")
    assert confirmed.id == pending.id
    assert confirmed.state is PendingState.CONFIRMED
    await client.close()


@pytest.mark.asyncio
async def test_disconnect_fails_unconfirmed_messages() -> None:
    client, _ = _client()
    failed: list[MessageFailed] = []
    client.on(MessageFailed, failed.append)
    await client.connect()

    await client.send_chat("S", "hello")
    key = await client.begin_file_upload("S", "a.png")
    await client.disconnect()

    assert [e.reason for e in failed] == ["disconnected"]
    assert client.store.pending_keys() == [key]
    await client.close()


@pytest.mark.asyncio
async def test_file_upload_flow() -> None:
    client, made = _client()
    await client.connect()
    (t,) = made

    key = await client.begin_file_upload("S", "a.png")
    ref = FileRef("a.png", "/uploads/a.png", "image/png", 10)
    assert await client.send_file("S", ref, upload_key=key) is True

    out = t.sent[-1]
    assert out["type"] == "file"
    assert out["timestamp"] == key[1]
    (msg,) = client.store.messages("S")
    assert client.file_url(msg) == "https://relay.example/uploads/a.png"

    other = await client.begin_file_upload("S", "b.png")
    assert await client.fail_file_upload(other, "upload failed") is True
    assert len(client.store.messages("S")) == 1
    await client.close()


@pytest.mark.asyncio
async def test_session_commands_are_sent() -> None:
    client, made = _client()
    await client.connect()
    (t,) = made
    await _feed(client, t, {"type": "sessions", "sessions": [{"session_uuid": "S"}]})

    assert await client.request_client_status("S") is True
    assert await client.request_client_status("S") is False
    assert await client.archive_session("S") is True
    assert await client.restore_session("S") is True
    assert await client.close_session("S") is True

    assert [e["type"] for e in t.sent[1:]] == [
        "get_client_status",
        "archive_session",
        "restore_session",
        "close_session",
    ]
    assert client.store.archived_ids() == ["S"]
    await client.close()


@pytest.mark.asyncio
async def test_mark_read_defaults_to_latest_message() -> None:
    client, made = _client()
    await client.connect()
    (t,) = made
    for i, text in enumerate(("one", "two")):
        await _feed(
            client,
            t,
            {
                "type": "chat",
                "session_uuid": "S",
                "from": "web",
                "message": text,
                "timestamp": 1700000000000 + i,
            },
        )

    assert await client.store.unread_count("S") == 2
    await client.mark_read("S")
    assert await client.store.unread_count("S") == 0
    assert await client.store.read_position("S") == 1700000000001
    await client.close()


@pytest.mark.asyncio
async def test_call_round_trip_with_null_media() -> None:
    client, made = _client()
    ended: list[CallEnded] = []
    client.on(CallEnded, ended.append)
    await client.connect()
    (t,) = made

    await _feed(
        client,
        t,
        {"type": "call_offer", "sdp": "v=0", "callId": "c1", "session_uuid": "S", "from": "web"},
    )
    assert client.calls.state is CallState.INCOMING

    assert await client.accept_call() is True
    # The null engine reports connectivity through the media callback.
    await asyncio.sleep(0)
    await client.drain()
    assert client.calls.state is CallState.CONNECTED

    assert await client.end_call() is True
    assert client.calls.state is CallState.IDLE
    assert "call_end" in [e["type"] for e in t.sent]
    assert ended[0].reason == "local hangup"
    await client.close()


@pytest.mark.asyncio
async def test_media_event_from_a_declined_call_does_not_end_the_next_one() -> None:
    client, made = _client()
    await client.connect()
    (t,) = made

    offer = {"type": "call_offer", "sdp": "v=0", "session_uuid": "S", "from": "web"}
    await _feed(client, t, {**offer, "callId": "c1"})
    assert client.calls.state is CallState.INCOMING

    # Hold the serial worker so the engine event lands behind the next call.
    gate = asyncio.Event()
    client._executor.post(gate.wait)
    client._executor.post(client.calls.decline_call)
    client._executor.post(client.calls.handle_offer, {**offer, "callId": "c2"})
    client._on_media_state(MediaState.CLOSED)
    await asyncio.sleep(0)
    gate.set()
    await client.drain()

    assert client.calls.state is CallState.INCOMING
    assert client.calls.active_call is not None
    assert client.calls.active_call.call_id == "c2"
    await client.close()


@pytest.mark.asyncio
async def test_state_folder_client_persists_the_archive(tmp_path) -> None:
    sock = SocketConfig(url="wss://relay.example/ws", name="iOSAdmin")
    client = RelayClient.from_state_folder(tmp_path, socket=sock)
    assert client.config.socket is sock
    await client.store.apply({"type": "sessions", "sessions": [{"session_uuid": "A"}]})
    await client.store.archive_session("A")
    assert (tmp_path / "archived_sessions.json").exists()

    again = RelayClient.from_state_folder(tmp_path, socket=sock)
    await again.store.load()
    assert again.store.archived_ids() == ["A"]
    assert not again.store.has_session("A")


def test_file_url_for_messages_without_files() -> None:
    client, _ = _client()
    msg = Message(sender="web", kind=MessageKind.TEXT, timestamp=1, text="hi")
    assert client.file_url(msg) is None
    assert client.http_base_url == "https://relay.example"
