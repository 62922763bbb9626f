"""Abstract cache persistence interface - backend agnostic"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class PersistedEntry:
    """Snapshot row: {value, addedAt}; added_at is None for legacy rows"""
    value: Any
    added_at: Optional[float] = None


class CacheStore(ABC):
    """Durable key-value storage beneath the dedup caches"""

    @abstractmethod
    async def load(self, prefix: str = "") -> dict[str, PersistedEntry]:
        """Return every entry whose key starts with prefix, keyed by full key"""
        ...

    @abstractmethod
    async def put(self, key: str, entry: PersistedEntry) -> None:
        """Insert or replace one entry"""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete one entry, no-op when absent"""
        ...

    @abstractmethod
    async def purge(self, prefix: str = "") -> int:
        """Delete every entry under prefix, return count deleted"""
        ...

    async def open(self) -> None:
        """Prepare the backend, e.g. create tables"""
        return None

    async def close(self) -> None:
        """Release backend resources"""
        return None
