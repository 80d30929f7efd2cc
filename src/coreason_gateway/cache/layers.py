# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import sqlite3
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import List, Optional

from redis import asyncio as aioredis

from coreason_gateway.config import MemoryCacheConfig, PersistentCacheConfig, RemoteCacheConfig
from coreason_gateway.errors import CacheError
from coreason_gateway.interfaces import RemoteCacheClient
from coreason_gateway.models import CacheEntry, CacheLayer
from coreason_gateway.utils.logger import logger


class MemoryLayer:
    """In-process LRU cache with per-entry TTL."""

    layer = CacheLayer.MEMORY

    def __init__(self, config: MemoryCacheConfig) -> None:
        self.max_entries = config.max_entries
        self.ttl = config.ttl
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.evictions = 0

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(time.time()):
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    def put(self, entry: CacheEntry) -> int:
        """Stores an entry and returns how many entries were evicted to make room."""
        evicted = 0
        with self._lock:
            self._entries[entry.key] = entry.model_copy(update={"layer": self.layer})
            self._entries.move_to_end(entry.key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                evicted += 1
            self.evictions += evicted
        return evicted

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        now = time.time()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SQLiteLayer:
    """
    Persistent cache in a local SQLite file.
    Capacity is enforced by evicting the least recently accessed rows.
    """

    layer = CacheLayer.PERSISTENT

    def __init__(self, config: PersistentCacheConfig) -> None:
        self.path = config.path
        self.max_entries = config.max_entries
        self.ttl = config.ttl
        self.evictions = 0
        self._lock = threading.Lock()

        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._init_db()
        except sqlite3.Error as e:
            raise CacheError(f"Cannot open persistent cache at {self.path}: {e}", layer=self.layer.value) from e

    def _init_db(self) -> None:
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    provider TEXT,
                    model TEXT,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL,
                    access_count INTEGER DEFAULT 0,
                    last_accessed REAL NOT NULL
                )
            """)
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_cache_accessed ON cache_entries(last_accessed)")

    def get(self, key: str) -> Optional[CacheEntry]:
        now = time.time()
        try:
            with self._lock, self._conn:
                row = self._conn.execute(
                    "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
                ).fetchone()
                if row is None:
                    return None
                value, expires_at = row
                if expires_at <= now:
                    self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                    return None
                self._conn.execute(
                    "UPDATE cache_entries SET access_count = access_count + 1, last_accessed = ? WHERE key = ?",
                    (now, key),
                )
        except sqlite3.Error as e:
            raise CacheError(f"Persistent cache read failed: {e}", layer=self.layer.value) from e
        return CacheEntry.model_validate_json(value)

    def put(self, entry: CacheEntry) -> int:
        entry = entry.model_copy(update={"layer": self.layer})
        now = time.time()
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO cache_entries
                        (key, value, provider, model, created_at, expires_at, access_count, last_accessed)
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        entry.key,
                        entry.model_dump_json(),
                        entry.response.provider,
                        entry.response.model,
                        entry.created_at,
                        entry.created_at + entry.ttl,
                        now,
                    ),
                )
                total = self._conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]
                evicted = max(total - self.max_entries, 0)
                if evicted:
                    self._conn.execute(
                        "DELETE FROM cache_entries WHERE key IN "
                        "(SELECT key FROM cache_entries ORDER BY last_accessed ASC LIMIT ?)",
                        (evicted,),
                    )
        except sqlite3.Error as e:
            raise CacheError(f"Persistent cache write failed: {e}", layer=self.layer.value) from e

        if evicted:
            self.evictions += evicted
            logger.debug(f"Evicted {evicted} persistent cache entries")
        return evicted

    def delete(self, key: str) -> bool:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise CacheError(f"Persistent cache delete failed: {e}", layer=self.layer.value) from e
        return cursor.rowcount > 0

    def clear(self) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute("DELETE FROM cache_entries")
        except sqlite3.Error as e:
            raise CacheError(f"Persistent cache clear failed: {e}", layer=self.layer.value) from e

    def purge_expired(self) -> int:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (time.time(),))
        except sqlite3.Error as e:
            raise CacheError(f"Persistent cache purge failed: {e}", layer=self.layer.value) from e
        return cursor.rowcount

    def __len__(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0])

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class RedisLayer:
    """
    Shared cache in Redis. Entries are stored as JSON with a Redis-side expiry.
    """

    layer = CacheLayer.REMOTE

    def __init__(self, config: RemoteCacheConfig, client: Optional[RemoteCacheClient] = None) -> None:
        self.ttl = config.ttl
        self.prefix = config.key_prefix
        self._owns_client = client is None
        self._client: RemoteCacheClient = (
            client if client is not None else aioredis.Redis.from_url(config.url, decode_responses=True)
        )
        self.evictions = 0

    def _name(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self._client.get(self._name(key))
        except Exception as e:
            raise CacheError(f"Remote cache read failed: {e}", layer=self.layer.value) from e
        if not raw:
            return None
        entry = CacheEntry.model_validate_json(raw)
        if entry.is_expired(time.time()):
            return None
        return entry

    async def put(self, entry: CacheEntry) -> int:
        entry = entry.model_copy(update={"layer": self.layer})
        remaining = entry.created_at + entry.ttl - time.time()
        if remaining <= 0:
            return 0
        try:
            await self._client.set(self._name(entry.key), entry.model_dump_json(), ex=max(int(remaining), 1))
        except Exception as e:
            raise CacheError(f"Remote cache write failed: {e}", layer=self.layer.value) from e
        return 0

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(self._name(key)))
        except Exception as e:
            raise CacheError(f"Remote cache delete failed: {e}", layer=self.layer.value) from e

    async def clear(self) -> None:
        try:
            names = [name async for name in self._client.scan_iter(match=f"{self.prefix}*")]
            if names:
                await self._client.delete(*names)
        except Exception as e:
            raise CacheError(f"Remote cache clear failed: {e}", layer=self.layer.value) from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()  # type: ignore[attr-defined]
