import json
import unittest

import aiosqlite

from bitacora.db.repositories import SqliteCacheEntryRepository
from bitacora.db.sqlite_migrations import run_migrations
from bitacora.services.cache import MemoryCacheStorage, VersionedCache, owner_key

T0 = 1_700_000_000_000
TTL_MS = 300 * 1000


class _Clock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class _FlakyStorage(MemoryCacheStorage):
    """Fails the first ``failures`` writes."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.set_attempts = 0

    async def set(self, key, value):
        self.set_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("disk full")
        await super().set(key, value)


class VersionedCacheTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = _Clock(T0)
        self.storage = MemoryCacheStorage()
        self.cache = VersionedCache(self.storage, ttl_seconds=300, schema_version="v1", clock=self.clock)

    async def test_hit_within_ttl_returns_equal_value(self) -> None:
        books = [{"id": "b1", "name": "Project X", "tasks": [1, 2]}, {"id": "b2", "name": "Inbox"}]
        await self.cache.set("books_u1", books)

        self.clock.now = T0 + TTL_MS - 1
        self.assertEqual(await self.cache.get("books_u1"), books)

    async def test_expired_record_is_a_miss_and_evicted(self) -> None:
        await self.cache.set("books_u1", ["x"])

        self.clock.now = T0 + TTL_MS + 1
        self.assertIsNone(await self.cache.get("books_u1"))
        self.assertNotIn("bitacora_cache_books_u1", self.storage.values)

    async def test_schema_version_mismatch_is_a_miss_and_evicted(self) -> None:
        await self.cache.set("entries_u1", [{"id": "e1"}])
        newer = VersionedCache(self.storage, ttl_seconds=300, schema_version="v2", clock=self.clock)

        self.assertIsNone(await newer.get("entries_u1"))
        self.assertEqual(self.storage.values, {})

    async def test_corrupt_record_is_a_miss_and_evicted(self) -> None:
        self.storage.values["bitacora_cache_books_u1"] = "{not json"

        self.assertIsNone(await self.cache.get("books_u1"))
        self.assertNotIn("bitacora_cache_books_u1", self.storage.values)

    async def test_record_stores_timestamp_and_version(self) -> None:
        await self.cache.set("folders_u1", [])
        raw = json.loads(self.storage.values["bitacora_cache_folders_u1"])
        self.assertEqual(raw["timestamp"], T0)
        self.assertEqual(raw["schemaVersion"], "v1")
        self.assertEqual(raw["data"], [])

    async def test_write_failure_clears_expired_and_retries_once(self) -> None:
        storage = MemoryCacheStorage(max_entries=1)
        cache = VersionedCache(storage, ttl_seconds=300, clock=self.clock)
        await cache.set("old", "stale")
        self.clock.now = T0 + TTL_MS + 5

        await cache.set("new", "fresh")

        self.assertNotIn("bitacora_cache_old", storage.values)
        self.assertEqual(await cache.get("new"), "fresh")

    async def test_write_dropped_after_second_failure(self) -> None:
        storage = _FlakyStorage(failures=5)
        cache = VersionedCache(storage, clock=self.clock)

        await cache.set("books_u1", [1])

        self.assertEqual(storage.set_attempts, 2)
        self.assertIsNone(await cache.get("books_u1"))

    async def test_clear_operations_only_touch_prefixed_keys(self) -> None:
        self.storage.values["foreign_key"] = "keep me"
        await self.cache.set("a", 1)
        await self.cache.set("b", 2)
        self.clock.now = T0 + TTL_MS + 1
        await self.cache.set("c", 3)

        self.assertEqual(await self.cache.clear_expired(), 2)
        self.assertEqual(await self.cache.get("c"), 3)
        self.assertEqual(await self.cache.clear_all(), 1)
        self.assertEqual(self.storage.values, {"foreign_key": "keep me"})

    async def test_get_age_and_status(self) -> None:
        await self.cache.set(owner_key("books", "u1"), [])
        self.clock.now = T0 + 1500

        self.assertEqual(await self.cache.get_age("books_u1"), 1500)
        self.assertIsNone(await self.cache.get_age("missing"))
        status = await self.cache.status()
        self.assertEqual(status["keys"], [{"key": "books_u1", "ageMs": 1500, "fresh": True}])


class SqliteCacheStorageTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.clock = _Clock(T0)
        self.cache = VersionedCache(SqliteCacheEntryRepository(self.db), clock=self.clock)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_round_trip_through_sqlite_table(self) -> None:
        await self.cache.set("books_u1", [{"id": "b1"}])
        await self.cache.set("books_u1", [{"id": "b2"}])

        self.assertEqual(await self.cache.get("books_u1"), [{"id": "b2"}])
        self.clock.now = T0 + TTL_MS
        self.assertIsNone(await self.cache.get("books_u1"))
        self.assertEqual(await SqliteCacheEntryRepository(self.db).keys(), [])


if __name__ == "__main__":
    unittest.main()
