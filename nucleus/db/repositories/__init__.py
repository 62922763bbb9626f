"""Repository pattern for cache persistence"""

from .base import CacheStore, PersistedEntry
from .memory import MemoryCacheStore

__all__ = [
    "CacheStore",
    "PersistedEntry",
    "MemoryCacheStore",
]
