"""Tests for the dedup cache and its persistence backends"""

import asyncio

import pytest
import pytest_asyncio

from conftest import FakeClock
from nucleus.cache import DedupCache
from nucleus.db.repositories.base import PersistedEntry
from nucleus.db.repositories.memory import MemoryCacheStore
from nucleus.observability import metrics


def _cache(store=None, clock=None, **kwargs) -> DedupCache:
    store = store if store is not None else MemoryCacheStore()
    return DedupCache(store, prefix="test", clock=clock or FakeClock(), **kwargs)


# ============ Memory behaviour ============

def test_get_missing_is_none():
    assert _cache().get("nope") is None


def test_set_then_get():
    cache = _cache()
    cache.set("k", {"v": 1})
    assert cache.get("k") == {"v": 1}
    assert "k" in cache
    assert len(cache) == 1


def test_entry_expires_after_ttl():
    clock = FakeClock()
    cache = _cache(clock=clock, ttl=10)
    cache.set("k", "v")
    clock.advance(10)
    assert cache.get("k") == "v"
    clock.advance(0.001)
    assert cache.get("k") is None
    assert len(cache) == 0


def test_least_recently_used_is_evicted():
    cache = _cache(max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_prune_expired():
    clock = FakeClock()
    cache = _cache(clock=clock, ttl=5)
    cache.set("a", 1)
    clock.advance(3)
    cache.set("b", 2)
    clock.advance(3)
    assert cache.prune_expired() == 1
    assert cache.has("b")


def test_invalid_capacity():
    with pytest.raises(ValueError):
        _cache(max_entries=0)


def test_prefix_is_required():
    with pytest.raises(ValueError):
        DedupCache(MemoryCacheStore(), prefix="")


@pytest.mark.asyncio
async def test_caches_sharing_a_store_stay_apart():
    store = MemoryCacheStore({
        "other%x": PersistedEntry(value=1, added_at=None),
        "test%y": PersistedEntry(value=2, added_at=None),
    })
    cache = _cache(store)
    assert await cache.restore() == 1
    assert cache.get("x") is None

    cache.clear()
    await cache.flush()
    assert set(await store.load()) == {"other%x"}


# ============ Single-flight ============

@pytest.mark.asyncio
async def test_concurrent_waiters_resolve_from_one_set():
    cache = _cache()
    first = cache.wait_for("k")
    second = cache.wait_for("k")
    cache.set("k", {"value": 42})
    a, b = await asyncio.gather(first, second)
    assert a is b
    assert a == {"value": 42}


@pytest.mark.asyncio
async def test_cancelled_waiter_is_dropped():
    cache = _cache()
    kept = cache.wait_for("k")
    dropped = cache.wait_for("k")
    dropped.cancel()
    await asyncio.sleep(0)
    assert cache._waiters["k"] == [kept]

    kept.cancel()
    await asyncio.sleep(0)
    assert "k" not in cache._waiters


@pytest.mark.asyncio
async def test_get_or_fetch_shares_one_fetch():
    cache = _cache()
    calls = 0
    release = asyncio.Event()

    async def fetch():
        nonlocal calls
        calls += 1
        await release.wait()
        return {"doc": calls}

    tasks = [asyncio.create_task(cache.get_or_fetch("k", fetch)) for _ in range(5)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks)

    assert calls == 1
    assert all(r is results[0] for r in results)
    assert metrics.cache_shared_fetches == 4
    # later reads are plain hits
    assert await cache.get_or_fetch("k", fetch) is results[0]
    assert calls == 1


@pytest.mark.asyncio
async def test_failed_fetch_is_shared_and_not_cached():
    cache = _cache()
    calls = 0
    release = asyncio.Event()

    async def fetch():
        nonlocal calls
        calls += 1
        await release.wait()
        raise RuntimeError("boom")

    tasks = [asyncio.create_task(cache.get_or_fetch("k", fetch)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert calls == 1
    assert all(isinstance(r, RuntimeError) for r in results)
    assert cache.get("k") is None

    async def works():
        return "ok"

    assert await cache.get_or_fetch("k", works) == "ok"


@pytest.mark.asyncio
async def test_external_set_resolves_waiting_fetch_callers():
    cache = _cache()
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "late"

    owner = asyncio.create_task(cache.get_or_fetch("k", slow))
    await asyncio.sleep(0)
    follower = asyncio.create_task(cache.get_or_fetch("k", slow))
    await asyncio.sleep(0)

    cache.set("k", "early")
    assert await follower == "early"
    release.set()
    assert await owner == "late"


# ============ Persistence ============

@pytest.mark.asyncio
async def test_flush_persists_prefixed_entries():
    store = MemoryCacheStore()
    clock = FakeClock(500.0)
    cache = _cache(store, clock)
    cache.set("k", {"v": 1})
    await cache.flush()

    rows = await store.load("test%")
    assert rows == {"test%k": PersistedEntry(value={"v": 1}, added_at=500.0)}


@pytest.mark.asyncio
async def test_set_persists_in_background():
    store = MemoryCacheStore()
    cache = _cache(store)
    cache.set("k", 1)
    for _ in range(5):
        await asyncio.sleep(0)
    assert "test%k" in await store.load()


@pytest.mark.asyncio
async def test_delete_and_clear_remove_persisted_state():
    store = MemoryCacheStore({"other%x": PersistedEntry(value=0, added_at=1.0)})
    cache = _cache(store)
    cache.set("a", 1)
    cache.set("b", 2)
    await cache.flush()

    cache.delete("a")
    await cache.flush()
    assert set(await store.load()) == {"test%b", "other%x"}

    cache.clear()
    await cache.flush()
    assert len(cache) == 0
    assert set(await store.load()) == {"other%x"}


@pytest.mark.asyncio
async def test_restore_treats_legacy_rows_as_new():
    clock = FakeClock(1000.0)
    store = MemoryCacheStore({
        "test%legacy": PersistedEntry(value="old", added_at=None),
        "test%stale": PersistedEntry(value="gone", added_at=1.0),
        "test%fresh": PersistedEntry(value="kept", added_at=995.0),
        "other%x": PersistedEntry(value="skip", added_at=1000.0),
    })
    cache = _cache(store, clock, ttl=60)

    assert await cache.restore() == 2
    assert cache.get("legacy") == "old"
    assert cache.get("fresh") == "kept"
    assert cache.get("stale") is None
    assert cache.get("x") is None

    clock.advance(60.5)
    assert cache.get("legacy") is None


@pytest.mark.asyncio
async def test_eviction_is_persisted():
    store = MemoryCacheStore()
    cache = _cache(store, max_entries=1)
    cache.set("a", 1)
    cache.set("b", 2)
    await cache.flush()
    assert set(await store.load()) == {"test%b"}


# ============ SQL store ============

@pytest_asyncio.fixture
async def sql_store(tmp_path):
    pytest.importorskip("aiosqlite")

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from nucleus.db.repositories.sql import SqlCacheStore

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/cache.db")
    store = SqlCacheStore(async_sessionmaker(engine, expire_on_commit=False), engine=engine)
    await store.open()
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_sql_store_round_trip(sql_store):
    await sql_store.put("test%a", PersistedEntry(value={"n": 1}, added_at=10.0))
    await sql_store.put("test%a", PersistedEntry(value={"n": 2}, added_at=11.0))
    await sql_store.put("test%b", PersistedEntry(value=[1, 2], added_at=None))
    await sql_store.put("other%c", PersistedEntry(value="x", added_at=1.0))

    rows = await sql_store.load("test%")
    assert rows == {
        "test%a": PersistedEntry(value={"n": 2}, added_at=11.0),
        "test%b": PersistedEntry(value=[1, 2], added_at=None),
    }

    await sql_store.delete("test%a")
    assert await sql_store.purge("test%") == 1
    assert set(await sql_store.load()) == {"other%c"}


@pytest.mark.asyncio
async def test_cache_restores_from_sql_store(sql_store):
    clock = FakeClock(100.0)
    writer = _cache(sql_store, clock, ttl=60)
    writer.set("k", {"did": "did:plc:alice"})
    await writer.flush()

    reader = _cache(sql_store, clock, ttl=60)
    assert await reader.restore() == 1
    assert reader.get("k") == {"did": "did:plc:alice"}
