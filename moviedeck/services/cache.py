"""Two-tier response cache: a small in-process LRU in front of an expiring disk store."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from diskcache import Cache as _DiskStore
from diskcache import Timeout as DiskTimeout

logger = logging.getLogger(__name__)

DISK_ERRORS = (OSError, sqlite3.Error, DiskTimeout)


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A cached response body keyed by request signature."""

    key: str
    payload: bytes
    stored_at: float
    expires_at: float | None = None

    @property
    def size(self) -> int:
        return len(self.payload)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass(frozen=True, slots=True)
class CacheSize:
    memory_bytes: int
    disk_bytes: int
    memory_entries: int = 0

    def to_payload(self) -> dict[str, int]:
        return {
            "memoryBytes": self.memory_bytes,
            "diskBytes": self.disk_bytes,
            "memoryEntries": self.memory_entries,
        }


class MemoryCache:
    """Byte-bounded least-recently-used cache, cleared with the process."""

    def __init__(self, capacity_bytes: int) -> None:
        self._capacity = max(0, capacity_bytes)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._size = 0
        self._lock = threading.Lock()

    @property
    def capacity_bytes(self) -> int:
        return self._capacity

    @property
    def size_bytes(self) -> int:
        return self._size

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry

    def set(self, entry: CacheEntry) -> bool:
        """Store ``entry`` replacing any previous value; False if it can never fit."""

        if entry.size > self._capacity:
            self.delete(entry.key)
            return False
        with self._lock:
            previous = self._entries.pop(entry.key, None)
            if previous is not None:
                self._size -= previous.size
            self._entries[entry.key] = entry
            self._size += entry.size
            while self._size > self._capacity and self._entries:
                _, evicted = self._entries.popitem(last=False)
                self._size -= evicted.size
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._size -= entry.size
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._size = 0


class DiskCache:
    """Async wrapper around ``diskcache.Cache`` with age-based expiry.

    Entries expire ``max_age_seconds`` after they were written regardless of how
    often they are read. Sync SQLite I/O runs in worker threads behind a
    semaphore to bound lock contention.
    """

    def __init__(
        self,
        directory: str | Path,
        *,
        size_limit: int,
        max_age_seconds: float,
        max_concurrent: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory)
        self.size_limit = size_limit
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._store: _DiskStore | None = None
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def __aenter__(self) -> "DiskCache":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    @property
    def is_open(self) -> bool:
        return self._store is not None

    async def open(self) -> None:
        if self._store is not None:
            return
        self._store = await asyncio.to_thread(
            _DiskStore,
            str(self.directory),
            size_limit=self.size_limit,
            eviction_policy="least-recently-stored",
        )
        logger.info(
            "Opened disk cache at %s (limit %s bytes, max age %.0fs)",
            self.directory,
            self.size_limit,
            self.max_age_seconds,
        )

    async def aclose(self) -> None:
        if self._store is None:
            return
        store, self._store = self._store, None
        await asyncio.to_thread(store.close)

    def _require_store(self) -> _DiskStore:
        if self._store is None:
            raise RuntimeError("Disk cache not opened. Use 'async with' or await open().")
        return self._store

    async def get(self, key: str) -> CacheEntry | None:
        store = self._require_store()
        async with self._semaphore:
            record = await asyncio.to_thread(store.get, key, None)
        if not isinstance(record, dict):
            return None
        entry = CacheEntry(
            key=key,
            payload=record["payload"],
            stored_at=record["stored_at"],
            expires_at=record.get("expires_at"),
        )
        if entry.is_expired(self._clock()):
            await self.delete(key)
            return None
        return entry

    async def set(self, key: str, payload: bytes) -> CacheEntry:
        store = self._require_store()
        now = self._clock()
        entry = CacheEntry(
            key=key, payload=payload, stored_at=now, expires_at=now + self.max_age_seconds
        )
        record = {
            "payload": entry.payload,
            "stored_at": entry.stored_at,
            "expires_at": entry.expires_at,
        }
        async with self._semaphore:
            await asyncio.to_thread(store.set, key, record, expire=self.max_age_seconds)
        return entry

    async def delete(self, key: str) -> bool:
        store = self._require_store()
        async with self._semaphore:
            return bool(await asyncio.to_thread(store.delete, key))

    async def clear(self) -> int:
        store = self._require_store()
        async with self._semaphore:
            return int(await asyncio.to_thread(store.clear))

    async def sweep(self) -> int:
        """Remove expired entries, then cull down to the size limit."""

        store = self._require_store()
        async with self._semaphore:
            removed = await asyncio.to_thread(store.expire, self._clock())
            culled = await asyncio.to_thread(store.cull)
        return int(removed or 0) + int(culled or 0)

    async def size_bytes(self) -> int:
        if self._store is None:
            return 0
        async with self._semaphore:
            volume = await asyncio.to_thread(self._store.volume)
        return max(0, int(volume))


class ResponseCache:
    """Memory then disk lookup; writes populate both tiers, disk hits are promoted."""

    def __init__(
        self,
        memory: MemoryCache,
        disk: DiskCache,
        *,
        sweep_interval_seconds: float = 3_600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.memory = memory
        self.disk = disk
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._sweep_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Open the disk tier and launch the periodic expiry sweep."""

        await self.disk.open()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        await self.disk.aclose()

    async def get(self, key: str) -> bytes | None:
        entry = self.memory.get(key)
        if entry is not None:
            if not entry.is_expired(self._clock()):
                return entry.payload
            self.memory.delete(key)
        try:
            entry = await self.disk.get(key)
        except DISK_ERRORS:
            logger.warning("Disk cache read failed for %s", key, exc_info=True)
            return None
        if entry is None:
            return None
        self.memory.set(entry)
        return entry.payload

    async def set(self, key: str, payload: bytes) -> None:
        now = self._clock()
        self.memory.set(
            CacheEntry(
                key=key,
                payload=payload,
                stored_at=now,
                expires_at=now + self.disk.max_age_seconds,
            )
        )
        try:
            await self.disk.set(key, payload)
        except DISK_ERRORS:
            logger.warning("Disk cache write failed for %s", key, exc_info=True)

    async def invalidate(self, key: str) -> None:
        self.memory.delete(key)
        try:
            await self.disk.delete(key)
        except DISK_ERRORS:
            logger.warning("Disk cache delete failed for %s", key, exc_info=True)

    async def clear(self) -> None:
        self.memory.clear()
        try:
            await self.disk.clear()
        except DISK_ERRORS:
            logger.warning("Disk cache clear failed", exc_info=True)

    async def sweep_expired(self) -> int:
        try:
            removed = await self.disk.sweep()
        except DISK_ERRORS:
            logger.warning("Disk cache sweep failed", exc_info=True)
            return 0
        if removed:
            logger.info("Removed %s expired disk cache entries", removed)
        return removed

    async def on_app_active(self) -> int:
        """Sweep triggered by the presentation layer when the app comes to the foreground."""

        return await self.sweep_expired()

    async def size(self) -> CacheSize:
        try:
            disk_bytes = await self.disk.size_bytes()
        except DISK_ERRORS:
            logger.warning("Disk cache size query failed", exc_info=True)
            disk_bytes = 0
        return CacheSize(
            memory_bytes=max(0, self.memory.size_bytes),
            disk_bytes=max(0, disk_bytes),
            memory_entries=len(self.memory),
        )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep_expired()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled cache sweep failed: %s", exc)
