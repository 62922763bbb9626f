"""In-process CacheStore, used for ephemeral sessions and tests"""

from __future__ import annotations

from .base import CacheStore, PersistedEntry


class MemoryCacheStore(CacheStore):

    def __init__(self, initial: dict[str, PersistedEntry] | None = None):
        self._rows: dict[str, PersistedEntry] = dict(initial or {})

    async def load(self, prefix: str = "") -> dict[str, PersistedEntry]:
        return {k: v for k, v in self._rows.items() if k.startswith(prefix)}

    async def put(self, key: str, entry: PersistedEntry) -> None:
        self._rows[key] = entry

    async def delete(self, key: str) -> None:
        self._rows.pop(key, None)

    async def purge(self, prefix: str = "") -> int:
        doomed = [k for k in self._rows if k.startswith(prefix)]
        for key in doomed:
            del self._rows[key]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._rows)
