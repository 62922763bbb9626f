"""SQLAlchemy implementation of CacheStore"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ...errors import CacheStoreError
from ..database import init_db
from ..models import CacheRecord
from .base import CacheStore, PersistedEntry


class SqlCacheStore(CacheStore):
    """
    Stores cache snapshots in the cache_entries table.

    Each operation runs in its own short transaction so that background
    flushes from independent caches never share a session.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: Optional[AsyncEngine] = None,
    ):
        self._session_factory = session_factory
        self._engine = engine

    async def open(self) -> None:
        if self._engine is None:
            return
        try:
            await init_db(self._engine)
        except SQLAlchemyError as e:
            raise CacheStoreError(f"failed to create cache tables: {e}") from e

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    async def load(self, prefix: str = "") -> dict[str, PersistedEntry]:
        query = select(CacheRecord)
        if prefix:
            query = query.where(CacheRecord.key.startswith(prefix, autoescape=True))
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return {
                    row.key: PersistedEntry(value=row.value, added_at=row.added_at)
                    for row in result.scalars()
                }
        except SQLAlchemyError as e:
            raise CacheStoreError(f"failed to load cache entries: {e}") from e

    async def put(self, key: str, entry: PersistedEntry) -> None:
        try:
            async with self._session_factory() as session:
                await session.merge(
                    CacheRecord(key=key, value=entry.value, added_at=entry.added_at)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise CacheStoreError(f"failed to persist {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(delete(CacheRecord).where(CacheRecord.key == key))
                await session.commit()
        except SQLAlchemyError as e:
            raise CacheStoreError(f"failed to delete {key}: {e}") from e

    async def purge(self, prefix: str = "") -> int:
        stmt = delete(CacheRecord)
        if prefix:
            stmt = stmt.where(CacheRecord.key.startswith(prefix, autoescape=True))
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise CacheStoreError(f"failed to purge {prefix!r}: {e}") from e
