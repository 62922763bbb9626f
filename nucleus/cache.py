"""Persisted LRU cache with TTL expiry and single-flight fetches.

Entries live in memory (capacity-bounded, least-recently-used eviction,
TTL measured from insertion) and are mirrored to a CacheStore in the
background so `set` never blocks its caller. Concurrent readers of the
same missing key share one in-flight fetch.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .db.repositories.base import CacheStore, PersistedEntry
from .errors import CacheStoreError
from .observability import logger, metrics

V = TypeVar("V")

PREFIX_SEPARATOR = "%"


@dataclass
class CacheEntry(Generic[V]):
    value: V
    added_at: float


class DedupCache(Generic[V]):
    """
    TTL-bounded, capacity-limited cache with a persisted snapshot.

    Args:
        store: Durable key-value storage for the snapshot
        prefix: Namespace for this cache's keys inside the store (required,
            restore and clear only touch rows under it)
        max_entries: Capacity before least-recently-used eviction
        ttl: Seconds an entry stays valid after insertion (None = forever)
        clock: Time source in seconds, injectable for tests
    """

    def __init__(
        self,
        store: CacheStore,
        prefix: str,
        max_entries: int = 1000,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not prefix:
            raise ValueError("prefix must be non-empty")
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._store = store
        self._prefix = f"{prefix}{PREFIX_SEPARATOR}"
        self._max_entries = max_entries
        self._ttl = ttl
        self._clock = clock

        self._memory: OrderedDict[str, CacheEntry[V]] = OrderedDict()
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._inflight: dict[str, asyncio.Future] = {}

        # Store writes not yet flushed; None marks a delete
        self._pending: dict[str, Optional[PersistedEntry]] = {}
        self._purge_pending = False
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()

    # ============ Snapshot ============

    async def restore(self) -> int:
        """Load the persisted snapshot into memory, return entries restored"""
        try:
            rows = await self._store.load(self._prefix)
        except CacheStoreError as e:
            metrics.increment("error_count")
            logger.warning(f"cache restore failed for {self._prefix!r}: {e}")
            return 0

        now = self._clock()
        restored = 0
        for full_key, row in sorted(rows.items(), key=lambda kv: kv[1].added_at or now):
            key = self._unprefix(full_key)
            if key in self._memory:
                continue
            # legacy rows carry no insertion time
            added_at = row.added_at if row.added_at is not None else now
            if self._is_expired(added_at, now):
                continue
            self._insert(key, CacheEntry(row.value, added_at))
            restored += 1
        return restored

    async def flush(self) -> None:
        """Write every pending change to the store"""
        async with self._flush_lock:
            while self._pending or self._purge_pending:
                if self._purge_pending:
                    self._purge_pending = False
                    try:
                        await self._store.purge(self._prefix)
                    except CacheStoreError as e:
                        metrics.increment("error_count")
                        logger.error(f"cache purge failed: {e}")
                    continue

                pending, self._pending = self._pending, {}
                for full_key, entry in pending.items():
                    try:
                        if entry is None:
                            await self._store.delete(full_key)
                        else:
                            await self._store.put(full_key, entry)
                    except CacheStoreError as e:
                        metrics.increment("error_count")
                        logger.error(f"cache write failed for {full_key}: {e}")

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: changes stay pending until the next flush()
            return
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = loop.create_task(self.flush())

    # ============ Memory ============

    def get(self, key: str) -> Optional[V]:
        """Memory-only lookup; expired entries count as absent"""
        entry = self._memory.get(key)
        if entry is None:
            metrics.increment("cache_misses")
            return None
        if self._is_expired(entry.added_at, self._clock()):
            self._evict(key)
            metrics.increment("cache_misses")
            return None
        self._memory.move_to_end(key)
        metrics.increment("cache_hits")
        return entry.value

    def has(self, key: str) -> bool:
        entry = self._memory.get(key)
        return entry is not None and not self._is_expired(entry.added_at, self._clock())

    def set(self, key: str, value: V) -> None:
        """Store value, persist in the background and wake everyone waiting on key"""
        added_at = self._clock()
        self._insert(key, CacheEntry(value, added_at))
        self._pending[self._prefixed(key)] = PersistedEntry(value=value, added_at=added_at)
        self._schedule_flush()

        for waiter in self._waiters.pop(key, []):
            if not waiter.done():
                waiter.set_result(value)
        inflight = self._inflight.get(key)
        if inflight is not None and not inflight.done():
            inflight.set_result(value)

    def delete(self, key: str) -> None:
        self._memory.pop(key, None)
        self._pending[self._prefixed(key)] = None
        self._schedule_flush()

    def clear(self) -> None:
        self._memory.clear()
        self._pending.clear()
        self._purge_pending = True
        self._schedule_flush()

    def prune_expired(self) -> int:
        """Eagerly evict every expired entry, return count evicted"""
        now = self._clock()
        expired = [k for k, e in self._memory.items() if self._is_expired(e.added_at, now)]
        for key in expired:
            self._evict(key)
        return len(expired)

    def __len__(self) -> int:
        return len(self._memory)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    # ============ Waiting ============

    def wait_for(self, key: str) -> asyncio.Future:
        """Future resolved by the next set(key), whoever calls it"""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._waiters.setdefault(key, []).append(waiter)
        waiter.add_done_callback(lambda done: self._discard_waiter(key, done))
        return waiter

    def _discard_waiter(self, key: str, waiter: asyncio.Future) -> None:
        waiters = self._waiters.get(key)
        if waiters is None or waiter not in waiters:
            return
        waiters.remove(waiter)
        if not waiters:
            del self._waiters[key]

    async def get_or_fetch(self, key: str, fetch: Callable[[], Awaitable[V]]) -> V:
        """
        Return the cached value or run fetch, sharing one in-flight fetch per key.

        Callers arriving while a fetch for key is running await its result
        instead of starting their own. A failed fetch raises in every caller
        sharing it and leaves nothing cached.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        inflight = self._inflight.get(key)
        if inflight is not None:
            metrics.increment("cache_shared_fetches")
            try:
                return await asyncio.shield(inflight)
            except asyncio.CancelledError:
                if not inflight.cancelled():
                    raise
                # the owning caller was cancelled; fetch on our own

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._inflight[key] = future
        try:
            value = await fetch()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
                # mark retrieved so an unshared failure does not warn
                future.exception()
            raise
        else:
            # set() resolves the shared future while it is still registered
            self.set(key, value)
            if not future.done():
                future.set_result(value)
            return value
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    # ============ Internals ============

    def _insert(self, key: str, entry: CacheEntry[V]) -> None:
        self._memory[key] = entry
        self._memory.move_to_end(key)
        while len(self._memory) > self._max_entries:
            evicted, _ = self._memory.popitem(last=False)
            self._pending[self._prefixed(evicted)] = None

    def _evict(self, key: str) -> None:
        self._memory.pop(key, None)
        self._pending[self._prefixed(key)] = None
        self._schedule_flush()

    def _is_expired(self, added_at: float, now: float) -> bool:
        return self._ttl is not None and now - added_at > self._ttl

    def _prefixed(self, key: str) -> str:
        return self._prefix + key

    def _unprefix(self, full_key: str) -> str:
        return full_key[len(self._prefix):]
