"""Versioned, expiring key/value cache used for stale-while-revalidate reads."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, Protocol

from pydantic import ValidationError

from bitacora import config
from bitacora.errors import CacheFailure
from bitacora.models import CacheRecord
from bitacora.observability import otel

logger = logging.getLogger("bitacora.cache")

# Logical cache keys; the owner id is appended by ``owner_key``.
CACHE_KEYS = {
    "books": "books",
    "entries": "entries",
    "folders": "folders",
}


def owner_key(kind: str, owner_id: str) -> str:
    return f"{CACHE_KEYS[kind]}_{owner_id}"


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class CacheStorage(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...


class MemoryCacheStorage:
    """Dict-backed storage. ``max_entries`` emulates a storage quota."""

    def __init__(self, max_entries: int | None = None):
        self.max_entries = max_entries
        self.values: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        if (
            self.max_entries is not None
            and key not in self.values
            and len(self.values) >= self.max_entries
        ):
            raise CacheFailure("Cache storage quota exceeded")
        self.values[key] = value

    async def remove(self, key: str) -> None:
        self.values.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self.values)


class VersionedCache:
    """Expiring cache that stamps every record with time and schema version.

    Reads of expired, version-mismatched or corrupt records count as misses
    and evict the record. All storage errors are logged and swallowed; a
    cache failure only ever degrades to a miss.
    """

    def __init__(
        self,
        storage: CacheStorage,
        ttl_seconds: int = config.CACHE_TTL_SECONDS,
        schema_version: str = config.CACHE_SCHEMA_VERSION,
        prefix: str = config.CACHE_PREFIX,
        clock: Callable[[], int] = _wall_clock_ms,
    ):
        self.storage = storage
        self.ttl_ms = ttl_seconds * 1000
        self.schema_version = schema_version
        self.prefix = prefix
        self.clock = clock

    def _storage_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _is_valid(self, record: CacheRecord) -> bool:
        if record.schemaVersion != self.schema_version:
            return False
        return self.clock() - record.timestamp < self.ttl_ms

    async def _read_record(self, storage_key: str) -> Optional[CacheRecord]:
        raw = await self.storage.get(storage_key)
        if raw is None:
            return None
        try:
            return CacheRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("Evicting corrupt cache record %s", storage_key)
            await self.storage.remove(storage_key)
            return None

    async def set(self, key: str, value: Any) -> None:
        storage_key = self._storage_key(key)
        record = CacheRecord(data=value, timestamp=self.clock(), schemaVersion=self.schema_version)
        payload = record.model_dump_json()
        try:
            await self.storage.set(storage_key, payload)
            return
        except Exception as exc:
            logger.warning("Cache write failed for %s (%s); clearing expired and retrying", key, exc)

        await self.clear_expired()
        try:
            await self.storage.set(storage_key, payload)
        except Exception as exc:
            logger.error("Cache write dropped for %s: %s", key, exc)

    async def get(self, key: str) -> Any:
        """Return the cached value, or ``None`` on a miss."""
        storage_key = self._storage_key(key)
        try:
            record = await self._read_record(storage_key)
            if record is None:
                otel.record_cache_lookup(hit=False)
                return None
            if not self._is_valid(record):
                await self.storage.remove(storage_key)
                otel.record_cache_lookup(hit=False)
                return None
        except Exception as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            otel.record_cache_lookup(hit=False)
            return None
        otel.record_cache_lookup(hit=True)
        return record.data

    async def get_age(self, key: str) -> Optional[int]:
        """Age of a record in milliseconds, or ``None`` if absent."""
        try:
            record = await self._read_record(self._storage_key(key))
        except Exception as exc:
            logger.warning("Cache age lookup failed for %s: %s", key, exc)
            return None
        if record is None:
            return None
        return self.clock() - record.timestamp

    async def remove(self, key: str) -> None:
        try:
            await self.storage.remove(self._storage_key(key))
        except Exception as exc:
            logger.warning("Cache remove failed for %s: %s", key, exc)

    async def _prefixed_keys(self) -> list[str]:
        return [k for k in await self.storage.keys() if k.startswith(self.prefix)]

    async def clear_expired(self) -> int:
        """Evict every invalid prefixed record. Returns the number removed."""
        removed = 0
        try:
            for storage_key in await self._prefixed_keys():
                raw = await self.storage.get(storage_key)
                if raw is None:
                    continue
                try:
                    record = CacheRecord.model_validate_json(raw)
                    stale = not self._is_valid(record)
                except ValidationError:
                    stale = True
                if stale:
                    await self.storage.remove(storage_key)
                    removed += 1
        except Exception as exc:
            logger.warning("Cache clear_expired failed: %s", exc)
        if removed:
            logger.info("Cleared %d expired cache record(s)", removed)
        return removed

    async def clear_all(self) -> int:
        removed = 0
        try:
            for storage_key in await self._prefixed_keys():
                await self.storage.remove(storage_key)
                removed += 1
        except Exception as exc:
            logger.warning("Cache clear_all failed: %s", exc)
        return removed

    async def status(self) -> dict:
        keys: list[dict] = []
        try:
            for storage_key in await self._prefixed_keys():
                key = storage_key[len(self.prefix):]
                age = await self.get_age(key)
                keys.append({
                    "key": key,
                    "ageMs": age,
                    "fresh": age is not None and age < self.ttl_ms,
                })
        except Exception as exc:
            logger.warning("Cache status lookup failed: %s", exc)
        return {
            "schemaVersion": self.schema_version,
            "ttlSeconds": self.ttl_ms // 1000,
            "prefix": self.prefix,
            "keys": keys,
        }


def dumps_models(items: list) -> list[dict]:
    """Serialize a list of pydantic models into JSON-compatible dicts."""
    return [item.model_dump(mode="json") for item in items]
