from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Protocol

from .exceptions import CallRelayError
from .util import json as kvjson

_FILE_LOCKS: dict[Path, asyncio.Lock] = {}


class KeyValueStore(Protocol):
    """Durable storage for archived-session ids and read bookmarks."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any | None:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


def _fix_filename(name: str) -> str:
    return name.replace("/", "__").replace(":", "-")


def _lock_for(path: Path) -> asyncio.Lock:
    lock = _FILE_LOCKS.get(path)
    if lock is None:
        lock = asyncio.Lock()
        _FILE_LOCKS[path] = lock
    return lock


async def _read_text(path: Path) -> str:
    return await asyncio.to_thread(path.read_text, "utf-8")


async def _write_text(path: Path, data: str) -> None:
    await asyncio.to_thread(path.write_text, data, "utf-8")


async def _unlink(path: Path) -> None:
    await asyncio.to_thread(path.unlink, missing_ok=True)


class JsonFileKeyValueStore:
    """
    One JSON file per key inside `folder`.

    Writes for the same key are serialized through a per-path lock.
    """

    def __init__(self, folder: str | Path) -> None:
        self.folder = Path(folder).expanduser()

    def _path(self, key: str) -> Path:
        return self.folder / _fix_filename(f"{key}.json")

    async def get(self, key: str) -> Any | None:
        fn = self._path(key)
        try:
            async with _lock_for(fn):
                raw = await _read_text(fn)
        except FileNotFoundError:
            return None
        try:
            return kvjson.loads(raw)
        except ValueError as e:
            raise CallRelayError(f"corrupt value for key {key!r} in {fn}: {e}") from e

    async def set(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self.folder.mkdir, parents=True, exist_ok=True)
        fn = self._path(key)
        async with _lock_for(fn):
            await _write_text(fn, kvjson.dumps(value, indent=2))

    async def delete(self, key: str) -> None:
        fn = self._path(key)
        async with _lock_for(fn):
            await _unlink(fn)
