"""Key-value stores with TTL used for embedding caches and report jobs."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import sqlite3
import time
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    expires_at REAL
);
"""


class KeyValueStore(Protocol):
    """Async string store with optional per-key expiry (seconds)."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    async def mget(self, keys: list[str]) -> list[str | None]: ...

    async def set_many(self, items: dict[str, str], ttl: int | None = None) -> None: ...

    async def keys(self, pattern: str = "*") -> list[str]: ...

    async def delete(self, *keys: str) -> int: ...


def _expiry(ttl: int | None) -> float | None:
    return time.time() + ttl if ttl else None


class MemoryStore:
    """In-process store; entries vanish with the process."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> str | None:
        return self._lookup(key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        self._data[key] = (value, _expiry(ttl))

    async def mget(self, keys: list[str]) -> list[str | None]:
        return [self._lookup(k) for k in keys]

    async def set_many(self, items: dict[str, str], ttl: int | None = None) -> None:
        expires_at = _expiry(ttl)
        for key, value in items.items():
            self._data[key] = (value, expires_at)

    async def keys(self, pattern: str = "*") -> list[str]:
        # O(N) scan; fine for the small number of job keys we hold.
        return [k for k in list(self._data) if self._lookup(k) is not None and fnmatch.fnmatchcase(k, pattern)]

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    def _lookup(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.time():
            del self._data[key]
            return None
        return value


class SQLiteStore:
    """Key-value store backed by a single SQLite table.

    Each call opens its own connection in a worker thread so slow disk I/O
    does not stall the event loop.
    """

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._init_db()

    # ── public ──────────────────────────────────────────────────────────

    async def get(self, key: str) -> str | None:
        return (await self.mget([key]))[0]

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        await self.set_many({key: value}, ttl)

    async def mget(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        return await asyncio.to_thread(self._mget, keys)

    async def set_many(self, items: dict[str, str], ttl: int | None = None) -> None:
        if not items:
            return
        await asyncio.to_thread(self._set_many, items, _expiry(ttl))

    async def keys(self, pattern: str = "*") -> list[str]:
        return await asyncio.to_thread(self._keys, pattern)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await asyncio.to_thread(self._delete, keys)

    # ── private ─────────────────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path))

    def _init_db(self) -> None:
        con = self._connect()
        con.executescript(_SCHEMA)
        con.close()

    def _mget(self, keys: list[str]) -> list[str | None]:
        con = self._connect()
        try:
            placeholders = ",".join("?" for _ in keys)
            cur = con.execute(
                f"SELECT key, value FROM kv WHERE key IN ({placeholders}) "
                "AND (expires_at IS NULL OR expires_at > ?)",
                (*keys, time.time()),
            )
            found = dict(cur.fetchall())
        finally:
            con.close()
        return [found.get(k) for k in keys]

    def _set_many(self, items: dict[str, str], expires_at: float | None) -> None:
        con = self._connect()
        try:
            con.executemany(
                "INSERT OR REPLACE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                [(k, v, expires_at) for k, v in items.items()],
            )
            con.commit()
        finally:
            con.close()

    def _keys(self, pattern: str) -> list[str]:
        con = self._connect()
        try:
            self._purge_expired(con)
            cur = con.execute("SELECT key FROM kv WHERE key GLOB ?", (pattern,))
            return [row[0] for row in cur.fetchall()]
        finally:
            con.close()

    def _delete(self, keys: tuple[str, ...]) -> int:
        con = self._connect()
        try:
            placeholders = ",".join("?" for _ in keys)
            cur = con.execute(f"DELETE FROM kv WHERE key IN ({placeholders})", keys)
            con.commit()
            return cur.rowcount
        finally:
            con.close()

    @staticmethod
    def _purge_expired(con: sqlite3.Connection) -> None:
        cur = con.execute(
            "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (time.time(),),
        )
        con.commit()
        if cur.rowcount:
            logger.debug("Purged %d expired keys", cur.rowcount)
