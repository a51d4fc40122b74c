from __future__ import annotations

import pytest

from callrelay.exceptions import CallRelayError
from callrelay.kvstore import JsonFileKeyValueStore, MemoryKeyValueStore
from callrelay.store import SessionStore
from callrelay.util.events import EventBus


@pytest.mark.asyncio
async def test_json_file_store_roundtrip(tmp_path) -> None:
    kv = JsonFileKeyValueStore(tmp_path / "state")
    assert await kv.get("archived_sessions") is None

    await kv.set("archived_sessions", ["A", "B"])
    await kv.set("bookmark-A", 1700000000123)

    again = JsonFileKeyValueStore(tmp_path / "state")
    assert await again.get("archived_sessions") == ["A", "B"]
    assert await again.get("bookmark-A") == 1700000000123

    await again.delete("bookmark-A")
    await again.delete("bookmark-A")
    assert await kv.get("bookmark-A") is None


@pytest.mark.asyncio
async def test_json_file_store_sanitizes_key_names(tmp_path) -> None:
    kv = JsonFileKeyValueStore(tmp_path)
    await kv.set("bookmark-a/b:c", 1)
    assert (tmp_path / "bookmark-a__b-c.json").exists()
    assert await kv.get("bookmark-a/b:c") == 1


@pytest.mark.asyncio
async def test_json_file_store_rejects_corrupt_values(tmp_path) -> None:
    (tmp_path / "archived_sessions.json").write_text("{not json", "utf-8")
    kv = JsonFileKeyValueStore(tmp_path)
    with pytest.raises(CallRelayError):
        await kv.get("archived_sessions")


@pytest.mark.asyncio
async def test_memory_store_copies_initial_data() -> None:
    initial = {"k": 1}
    kv = MemoryKeyValueStore(initial)
    await kv.set("k", 2)
    assert initial == {"k": 1}
    assert await kv.get("k") == 2


@pytest.mark.asyncio
async def test_archive_survives_restart(tmp_path) -> None:
    s1 = SessionStore("me", events=EventBus(), kv=JsonFileKeyValueStore(tmp_path))
    await s1.apply({"type": "sessions", "sessions": [{"session_uuid": "A"}]})
    await s1.archive_session("A")

    s2 = SessionStore("me", events=EventBus(), kv=JsonFileKeyValueStore(tmp_path))
    await s2.load()
    assert s2.archived_ids() == ["A"]

    await s2.apply({"type": "sessions", "sessions": [{"session_uuid": "A"}]})
    assert s2.session_ids() == []
