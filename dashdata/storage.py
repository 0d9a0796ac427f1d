"""
Persistent second tier for the request cache.

A session store holds serialized cache entries as strings. The cache treats
every failure here as best-effort: it logs and carries on with memory only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="session-store")


class StorageError(Exception):
    """Raised when a session store cannot read or write."""


class StorageQuotaExceeded(StorageError):
    """Raised when a write would exceed the store's byte quota."""


class SessionStore(Protocol):
    """Key-value string store scoped to one session."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemorySessionStore:
    """
    Dict-backed store with an optional byte quota.

    Useful in tests and for single-process deployments that only want the
    hydrate-on-miss behaviour without touching disk.
    """

    def __init__(self, max_bytes: Optional[int] = None) -> None:
        self._data: dict[str, str] = {}
        self._max_bytes = max_bytes

    def _size(self) -> int:
        return sum(len(k) + len(v) for k, v in self._data.items())

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._max_bytes is not None:
            current = self._size()
            if key in self._data:
                current -= len(key) + len(self._data[key])
            if current + len(key) + len(value) > self._max_bytes:
                raise StorageQuotaExceeded(
                    f"Writing {key!r} would exceed {self._max_bytes} bytes"
                )
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileSessionStore:
    """
    Store backed by a single JSON object on disk.

    Reads and writes hit an in-memory dict; the file is loaded on first
    access. Inside a running event loop, mutations mark the store dirty and
    one background task rewrites the file in a worker thread, so a burst of
    writes costs a single flush. Outside a loop the file is written before
    set/remove return. A missing or unreadable file starts an empty session.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._data: Optional[dict[str, str]] = None
        self._dirty = False
        self._flush_task: Optional[asyncio.Task] = None

    def _load(self) -> dict[str, str]:
        if self._data is not None:
            return self._data
        self._data = {}
        if not self._path.exists():
            return self._data
        try:
            with open(self._path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", self._path, exc)
            return self._data
        if isinstance(raw, dict):
            self._data = {str(k): v for k, v in raw.items() if isinstance(v, str)}
        return self._data

    def _write(self, snapshot: dict[str, str]) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(snapshot, f)
            os.replace(tmp, self._path)
        except OSError as exc:
            raise StorageError(f"Cannot write {self._path}: {exc}") from exc

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(dict(self._data))
            return
        self._dirty = True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = loop.create_task(self._flush_pending())

    async def _flush_pending(self) -> None:
        loop = asyncio.get_running_loop()
        while self._dirty:
            self._dirty = False
            snapshot = dict(self._data)
            try:
                await loop.run_in_executor(_executor, self._write, snapshot)
            except StorageError as exc:
                logger.warning("Session store flush failed: %s", exc)

    async def aflush(self) -> None:
        """Wait until pending writes have reached the file."""
        if self._flush_task is not None:
            await self._flush_task

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        self._load()[key] = value
        self._schedule_flush()

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._schedule_flush()

    def keys(self) -> list[str]:
        return list(self._load())
