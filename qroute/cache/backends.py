import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import redis.asyncio as redis

from qroute.constants import CACHE_MAX_ENTRIES
from qroute.database import Database
from qroute.logging import get_logger

_logger = get_logger(__name__)

type Clock = Callable[[], float]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: bytes
    expires_at: float

    def expired(self, now: float) -> bool:
        return self.expires_at <= now


class CacheBackend(ABC):
    """Byte-valued key/value store with per-key TTL."""

    name: str = "backend"

    async def connect(self) -> None:
        return None

    @abstractmethod
    async def get(self, key: str) -> bytes | None: ...

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int) -> None: ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int: ...

    async def count_prefix(self, prefix: str) -> int | None:
        return None

    async def close(self) -> None:
        return None


class MemoryCacheBackend(CacheBackend):
    name = "memory"

    def __init__(self, max_entries: int = CACHE_MAX_ENTRIES, clock: Clock = time.time):
        self.max_entries = max_entries
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}

    async def get(self, key: str) -> bytes | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self.clock()):
            self._entries.pop(key, None)
            return None
        return entry.value

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        self._entries[key] = CacheEntry(key=key, value=value, expires_at=self.clock() + ttl)
        if len(self._entries) > self.max_entries:
            self._sweep()

    def _sweep(self) -> None:
        now = self.clock()
        for key in [k for k, e in self._entries.items() if e.expired(now)]:
            del self._entries[key]
        # still above max_entries: drop the entries closest to expiry
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            for entry in sorted(self._entries.values(), key=lambda e: e.expires_at)[:overflow]:
                del self._entries[entry.key]

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def count_prefix(self, prefix: str) -> int | None:
        now = self.clock()
        return sum(1 for k, e in self._entries.items() if k.startswith(prefix) and not e.expired(now))


class RedisCacheBackend(CacheBackend):
    name = "redis"

    def __init__(self, url: str, socket_timeout: float = 5.0):
        self.url = url
        self.socket_timeout = socket_timeout
        self._client: redis.Redis | None = None

    async def connect(self) -> None:
        self._client = redis.from_url(
            self.url,
            socket_connect_timeout=self.socket_timeout,
            socket_timeout=self.socket_timeout,
            retry_on_timeout=True,
        )
        _logger.info("Redis cache configured", url=self.url.split("@")[-1])

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("RedisCacheBackend not connected")
        return self._client

    async def get(self, key: str) -> bytes | None:
        return await self.client.get(key)

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        await self.client.set(key, value, ex=ttl)

    async def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        batch: list[bytes] = []
        async for key in self.client.scan_iter(match=f"{prefix}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                deleted += await self.client.delete(*batch)
                batch.clear()
        if batch:
            deleted += await self.client.delete(*batch)
        return deleted

    async def count_prefix(self, prefix: str) -> int | None:
        count = 0
        async for _ in self.client.scan_iter(match=f"{prefix}*", count=500):
            count += 1
        return count

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


class SqliteCacheBackend(CacheBackend):
    name = "sqlite"

    def __init__(self, db_path: Path, clock: Clock = time.time):
        self.db = Database(db_path)
        self.clock = clock

    async def connect(self) -> None:
        await self.db.connect()
        await self.db.conn.executescript("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL,
                expires_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at);
        """)
        await self.db.conn.commit()

    async def get(self, key: str) -> bytes | None:
        rows = await self.db.conn.execute_fetchall(
            "SELECT value, expires_at FROM cache_entries WHERE key = ?",
            (key,),
        )
        if not rows:
            return None
        value, expires_at = rows[0]
        if expires_at <= self.clock():
            await self.db.conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            await self.db.conn.commit()
            return None
        return bytes(value)

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        await self.db.conn.execute(
            "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
            (key, value, self.clock() + ttl),
        )
        await self.db.conn.commit()

    async def delete_prefix(self, prefix: str) -> int:
        cursor = await self.db.conn.execute(
            "DELETE FROM cache_entries WHERE substr(key, 1, ?) = ?",
            (len(prefix), prefix),
        )
        await self.db.conn.commit()
        return cursor.rowcount

    async def count_prefix(self, prefix: str) -> int | None:
        rows = await self.db.conn.execute_fetchall(
            "SELECT COUNT(*) FROM cache_entries WHERE substr(key, 1, ?) = ? AND expires_at > ?",
            (len(prefix), prefix, self.clock()),
        )
        return rows[0][0]

    async def purge_expired(self) -> int:
        cursor = await self.db.conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (self.clock(),))
        await self.db.conn.commit()
        return cursor.rowcount

    async def close(self) -> None:
        await self.db.close()
