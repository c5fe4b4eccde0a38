"""
Key-value persistence for clearpass.
Stores small string blobs (serialized cookie jars) in SQLite or in memory.
"""

import asyncio
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiosqlite

from clearpass.utils.config import get_settings
from clearpass.utils.logging import get_logger

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
)
"""


@runtime_checkable
class KeyValueStore(Protocol):
    """Persistence collaborator used by the cookie store."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """In-process key-value store. Contents are lost on exit."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class SqliteKeyValueStore:
    """Async SQLite-backed key-value store."""

    def __init__(self, db_path: str | Path | None = None):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file. If None, uses settings.
        """
        if db_path is None:
            settings = get_settings()
            db_path = settings.storage.database_path

        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the database and create the table."""
        if self._connection is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            isolation_level=None,  # Auto-commit mode
        )
        await self._connection.execute("PRAGMA journal_mode = WAL")
        await self._connection.execute("PRAGMA synchronous = NORMAL")
        await self._connection.execute(_SCHEMA)

        logger.info("Key-value store connected", path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("Key-value store closed")

    async def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            await self.connect()
        assert self._connection is not None
        return self._connection

    async def get(self, key: str) -> str | None:
        conn = await self._conn()
        async with self._lock:
            cursor = await conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = await cursor.fetchone()
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        conn = await self._conn()
        async with self._lock:
            await conn.execute(
                """
                INSERT INTO kv_store (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (key, value),
            )

    async def delete(self, key: str) -> None:
        conn = await self._conn()
        async with self._lock:
            await conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
