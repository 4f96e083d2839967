"""CacheStore — two-level cache with TTL, tag invalidation and single-flight.

Reads check L1 (in-process LRU) then L2 (shared backend), promoting L2 hits
into L1. Writes go to both levels under a key-scoped lock; there is no global
lock, so unrelated keys never wait on each other.

Tag invalidation stamps the tag with the current time. Any entry created at or
before that stamp is invalid on its next read, whatever its TTL. L1 keeps such
entries (and TTL-expired ones) for stale_retention_seconds so they can still
back a stale-if-error response; L2 drops them through its own tag index.

Usage:
    async with CacheStore(backend=MemoryBackend()) as cache:
        entry = await cache.get(key)
        if entry is None:
            value = await cache.single_flight_get(key, compute)
"""

import asyncio
import logging
import time
import weakref
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Iterable

from keystone.cache.backends import CacheBackend
from keystone.cache.entry import CacheEntry
from keystone.errors import CacheError, SourceUnavailable

logger = logging.getLogger(__name__)


class CacheStore:
    """Multi-level key/value store owned by one engine instance.

    Args:
        backend: Shared L2 backend (None = L1 only)
        max_entries: L1 capacity; least recently used entries are evicted
        stale_retention_seconds: How long invalid entries stay in L1
        clock: Time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        max_entries: int = 1_024,
        stale_retention_seconds: float = 86_400.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.max_entries = max_entries
        self.stale_retention_seconds = stale_retention_seconds
        self._clock = clock
        self._l1: OrderedDict[str, CacheEntry] = OrderedDict()
        self._tag_index: dict[str, set[str]] = {}
        self._tag_invalidated_at: dict[str, float] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._key_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self.hits = 0
        self.misses = 0

    async def __aenter__(self) -> "CacheStore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def now(self) -> float:
        return self._clock()

    def is_valid(self, entry: CacheEntry) -> bool:
        """Within TTL and no dependency tag invalidated since creation."""
        if entry.is_expired(self.now()):
            return False
        for tag in entry.dependency_tags:
            invalidated_at = self._tag_invalidated_at.get(tag)
            if invalidated_at is not None and invalidated_at >= entry.created_at:
                return False
        return True

    async def get(self, key: str, allow_stale: bool = False) -> CacheEntry | None:
        """Look up a key in L1, then L2.

        Args:
            key: Cache key
            allow_stale: Also return invalid entries still retained
                (used for stale-if-error and fallback data)

        Returns:
            The entry, or None on miss

        Raises:
            CacheError: If the L2 backend fails
        """
        entry = self._l1_get(key)
        if entry is not None and self.is_valid(entry):
            self.hits += 1
            return entry

        if self.backend is not None:
            try:
                remote = await self.backend.get(key)
            except CacheError:
                raise
            except Exception as e:
                raise CacheError(f"L2 read failed for {key}: {e}") from e
            if remote is not None and (entry is None or remote.created_at > entry.created_at):
                self._l1_put(remote)
                entry = remote
                if self.is_valid(entry):
                    logger.debug("L2 hit for %s (promoted to L1)", key)
                    self.hits += 1
                    return entry

        self.misses += 1
        if entry is not None and allow_stale:
            return entry
        return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float,
        tags: Iterable[str] = (),
        stale_if_error_seconds: float = 0.0,
    ) -> CacheEntry:
        """Write a value to L1 and L2.

        Raises:
            ValueError: If ttl <= 0
            CacheError: If the L2 backend fails (L1 is still updated)
        """
        entry = CacheEntry(
            key=key,
            value=value,
            created_at=self.now(),
            ttl_seconds=ttl,
            dependency_tags=frozenset(tags),
            stale_if_error_seconds=stale_if_error_seconds,
        )
        async with self._lock_for(key):
            self._l1_put(entry)
            if self.backend is not None:
                try:
                    await self.backend.set(entry)
                except CacheError:
                    raise
                except Exception as e:
                    raise CacheError(f"L2 write failed for {key}: {e}") from e
        return entry

    async def invalidate(self, tag: str) -> int:
        """Invalidate every entry carrying tag across both levels.

        Returns:
            Number of entries affected. L1 mirrors L2, so this is the larger
            of the two counts (a fresh process has an empty L1)
        """
        self._tag_invalidated_at[tag] = self.now()
        affected = len(self._tag_index.get(tag, ()))
        if self.backend is not None:
            try:
                removed = await self.backend.invalidate_tag(tag)
            except CacheError:
                raise
            except Exception as e:
                raise CacheError(f"L2 invalidation failed for tag {tag!r}: {e}") from e
            logger.debug("Invalidated tag %r: %d L1 entries, %d L2 entries", tag, affected, removed)
            affected = max(affected, removed)
        return affected

    async def single_flight_get(self, key: str, compute: Callable[[], Awaitable[Any]]) -> Any:
        """Run compute at most once concurrently per key.

        Callers arriving while a computation for key is in flight await it and
        receive the same result or exception. Different keys never wait on
        each other. If the leading caller is cancelled, followers get
        SourceUnavailable instead of the cancellation.
        """
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight computation for %s", key)
            return await asyncio.shield(existing)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await compute()
        except asyncio.CancelledError:
            future.set_exception(SourceUnavailable(f"In-flight computation for {key} was cancelled"))
            future.exception()
            raise
        except BaseException as e:
            future.set_exception(e)
            # Mark retrieved so a flight with no followers does not log a warning
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)

    def is_inflight(self, key: str) -> bool:
        return key in self._inflight

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "l1_entries": len(self._l1),
            "inflight": len(self._inflight),
            "hits": self.hits,
            "misses": self.misses,
            "hit_ratio": self.hits / lookups if lookups else 0.0,
        }

    async def close(self) -> None:
        """Drop L1 state and close the L2 backend."""
        self._l1.clear()
        self._tag_index.clear()
        if self.backend is not None:
            await self.backend.close()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    def _l1_get(self, key: str) -> CacheEntry | None:
        entry = self._l1.get(key)
        if entry is None:
            return None
        retention_end = entry.created_at + entry.ttl_seconds + max(
            self.stale_retention_seconds, entry.stale_if_error_seconds
        )
        if self.now() >= retention_end:
            self._l1_remove(key)
            return None
        self._l1.move_to_end(key)
        return entry

    def _l1_put(self, entry: CacheEntry) -> None:
        self._l1_remove(entry.key)
        self._l1[entry.key] = entry
        for tag in entry.dependency_tags:
            self._tag_index.setdefault(tag, set()).add(entry.key)
        while len(self._l1) > self.max_entries:
            oldest = next(iter(self._l1))
            self._l1_remove(oldest)

    def _l1_remove(self, key: str) -> None:
        entry = self._l1.pop(key, None)
        if entry is None:
            return
        for tag in entry.dependency_tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]
