"""Backing stores behind the cache layer.

Every store implements the same small async contract:
connect / get / set / delete / flush_all / close.  Any call may raise
CacheBackendError; the CacheLayer's circuit breaker decides what to do
with it.

  - MemoryBackingStore: in-process LRU with TTL and a size cap
  - SQLiteBackingStore: file-backed, survives restarts
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Protocol

from meme_agent.errors import CacheBackendError
from meme_agent.observability.logger import get_logger

log = get_logger(__name__)


class CacheBackingStore(Protocol):
    async def connect(self) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_secs: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def flush_all(self) -> None: ...

    async def close(self) -> None: ...


# ── In-memory ────────────────────────────────────────────────────────

@dataclass
class _StoredValue:
    value: str
    expires_at: float
    size_bytes: int

    @property
    def is_expired(self) -> bool:
        return time.time() >= self.expires_at


class MemoryBackingStore:
    """Thread-safe TTL store with LRU eviction."""

    def __init__(self, max_size_mb: int = 50):
        self._lock = Lock()
        self._entries: OrderedDict[str, _StoredValue] = OrderedDict()
        self._max_size_bytes = max_size_mb * 1024 * 1024
        self._current_size_bytes = 0

    async def connect(self) -> None:
        return None

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired:
                self._entries.pop(key, None)
                self._current_size_bytes -= entry.size_bytes
                return None
            self._entries.move_to_end(key)
            return entry.value

    async def set(self, key: str, value: str, ttl_secs: float) -> None:
        size = len(value.encode())
        with self._lock:
            if key in self._entries:
                old = self._entries.pop(key)
                self._current_size_bytes -= old.size_bytes

            self._evict_expired()

            while self._current_size_bytes + size > self._max_size_bytes and self._entries:
                _, evicted = self._entries.popitem(last=False)
                self._current_size_bytes -= evicted.size_bytes

            self._entries[key] = _StoredValue(
                value=value, expires_at=time.time() + ttl_secs, size_bytes=size,
            )
            self._current_size_bytes += size

    async def delete(self, key: str) -> None:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry:
                self._current_size_bytes -= entry.size_bytes

    async def flush_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._current_size_bytes = 0

    async def close(self) -> None:
        return None

    def _evict_expired(self) -> None:
        """Must be called with lock held."""
        expired = [k for k, v in self._entries.items() if v.is_expired]
        for k in expired:
            entry = self._entries.pop(k)
            self._current_size_bytes -= entry.size_bytes

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ── SQLite ───────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL NOT NULL
)
"""


class SQLiteBackingStore:
    """SQLite-backed store. Blocking calls run in a worker thread."""

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise CacheBackendError("SQLite cache not connected. Call connect() first.")
        return self._conn

    async def connect(self) -> None:
        await self._run(self._connect)

    def _connect(self) -> None:
        if self._conn is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_SCHEMA)
        self._conn.commit()
        log.info("sqlite_cache.connected", path=str(self._path))

    async def get(self, key: str) -> str | None:
        return await self._run(self._get, key)

    def _get(self, key: str) -> str | None:
        row = self.conn.execute(
            "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        value, expires_at = row
        if time.time() >= expires_at:
            self.conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            self.conn.commit()
            return None
        return value

    async def set(self, key: str, value: str, ttl_secs: float) -> None:
        await self._run(self._set, key, value, time.time() + ttl_secs)

    def _set(self, key: str, value: str, expires_at: float) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
            (key, value, expires_at),
        )
        self.conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (time.time(),))
        self.conn.commit()

    async def delete(self, key: str) -> None:
        await self._run(self._delete, key)

    def _delete(self, key: str) -> None:
        self.conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        self.conn.commit()

    async def flush_all(self) -> None:
        await self._run(self._flush)

    def _flush(self) -> None:
        self.conn.execute("DELETE FROM cache_entries")
        self.conn.commit()

    async def close(self) -> None:
        await self._run(self._close)

    def _close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    async def _run(self, fn, *args):
        def _locked():
            with self._lock:
                return fn(*args)
        try:
            return await asyncio.to_thread(_locked)
        except sqlite3.Error as e:
            raise CacheBackendError(f"sqlite cache error: {e}") from e
