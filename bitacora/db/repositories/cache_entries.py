"""SQLite key/value table backing the local versioned cache."""
from __future__ import annotations

import aiosqlite


class SqliteCacheEntryRepository:
    """String key/value storage; satisfies the cache storage protocol."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, key: str) -> str | None:
        async with self.db.execute(
            "SELECT value FROM cache_entries WHERE key = ?", (key,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        await self.db.execute(
            """INSERT INTO cache_entries (key, value, updated_at)
               VALUES (?, ?, datetime('now'))
               ON CONFLICT(key) DO UPDATE SET
                 value=excluded.value, updated_at=excluded.updated_at""",
            (key, value),
        )
        await self.db.commit()

    async def remove(self, key: str) -> None:
        await self.db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        await self.db.commit()

    async def keys(self) -> list[str]:
        async with self.db.execute("SELECT key FROM cache_entries ORDER BY key") as cur:
            return [row[0] for row in await cur.fetchall()]
