"""Cache store factory for backend selection"""

from typing import Optional

from ..config import settings
from .base import CacheStore


def get_cache_store(backend: Optional[str] = None) -> CacheStore:
    """
    Get a CacheStore based on configured backend.

    Usage:
        store = get_cache_store()
        cache = DedupCache(store, prefix="fetchRecord", max_entries=1000)
        await cache.restore()
    """
    backend = backend or getattr(settings, "backend", "memory")

    if backend == "sql":
        from ..database import get_engine, get_session_factory
        from .sql import SqlCacheStore

        return SqlCacheStore(get_session_factory(), engine=get_engine())

    from .memory import MemoryCacheStore

    return MemoryCacheStore()
