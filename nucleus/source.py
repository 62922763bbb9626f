"""Record-fetching collaborator contract and its cached wrapper.

`RecordSource` is what a protocol client must provide. Every lookup
returns a Result; network-level failures are values, never exceptions.
`CachedRecordSource` layers the Dedup Caches, TID-bounded pagination
and the backlink timeout over any source.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from .cache import DedupCache
from .db.entities import BacklinkPage, Identity, RecordPage, RecordView
from .identifiers import RecordUri, timestamp_from_tid
from .observability import log_with_context, logger, metrics, track_latency
from .result import Err, Ok, Result


class RecordSource(ABC):
    """Abstract protocol client"""

    @abstractmethod
    async def resolve_identity(self, actor: str) -> Result[Identity, str]:
        """Resolve a DID or handle to its identity document"""
        pass

    @abstractmethod
    async def get_record(self, actor: str, collection: str, rkey: str) -> Result[RecordView, str]:
        pass

    @abstractmethod
    async def list_records(
        self,
        actor: str,
        collection: str,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> Result[RecordPage, str]:
        """One page of an actor's records, newest first"""
        pass

    @abstractmethod
    async def get_backlinks(
        self,
        subject: str,
        source: str,
        filter_actors: Optional[Sequence[str]] = None,
        limit: int = 100,
    ) -> Result[BacklinkPage, str]:
        """Records of edge kind `source` pointing at subject"""
        pass

    @abstractmethod
    async def create_record(
        self,
        actor: str,
        collection: str,
        rkey: str,
        record: dict,
    ) -> Result[RecordView, str]:
        pass

    @abstractmethod
    async def delete_record(self, actor: str, collection: str, rkey: str) -> Result[None, str]:
        pass


class _FetchFailed(Exception):
    """Carries an Err out of a cached fetch so the failure is not cached"""

    def __init__(self, error: str):
        super().__init__(error)
        self.error = error


class CachedRecordSource(RecordSource):
    """
    RecordSource wrapper routing identity and record lookups through
    Dedup Caches.

    Args:
        source: Underlying protocol client
        record_cache: Cache of record views keyed by URI
        identity_cache: Cache of identity documents keyed by actor
        backlinks_timeout: Seconds before a backlink query yields Err("timeout")
    """

    def __init__(
        self,
        source: RecordSource,
        record_cache: DedupCache[dict],
        identity_cache: DedupCache[dict],
        backlinks_timeout: float = 2.0,
    ):
        self.source = source
        self.record_cache = record_cache
        self.identity_cache = identity_cache
        self.backlinks_timeout = backlinks_timeout

    # ============ Identity ============

    async def resolve_identity(self, actor: str) -> Result[Identity, str]:
        async def fetch() -> dict:
            res = await self.source.resolve_identity(actor)
            if isinstance(res, Err):
                raise _FetchFailed(res.error)
            ident = res.value
            return {
                "did": ident.did,
                "handle": ident.handle,
                "pds": ident.pds,
                "signing_key": ident.signing_key,
            }

        try:
            doc = await self.identity_cache.get_or_fetch(actor, fetch)
        except _FetchFailed as e:
            return Err(f"cant resolve identity {actor}: {e.error}")
        return Ok(Identity(**doc))

    async def resolve_did(self, actor: str) -> Result[str, str]:
        if actor.startswith("did:"):
            return Ok(actor)
        res = await self.resolve_identity(actor)
        if isinstance(res, Err):
            return res
        return Ok(res.value.did)

    # ============ Records ============

    async def get_record(self, actor: str, collection: str, rkey: str) -> Result[RecordView, str]:
        did = await self.resolve_did(actor)
        if isinstance(did, Err):
            return did
        return await self.get_record_by_uri(str(RecordUri(did.value, collection, rkey)))

    async def get_record_by_uri(self, uri: str) -> Result[RecordView, str]:
        parsed = RecordUri.parse(uri)
        if parsed is None:
            return Err(f"cant parse resource uri: {uri}")

        async def fetch() -> dict:
            metrics.increment("fetch_count")
            res = await self.source.get_record(parsed.actor, parsed.collection, parsed.rkey)
            if isinstance(res, Err):
                raise _FetchFailed(res.error)
            return {"uri": res.value.uri, "value": res.value.value, "cid": res.value.cid}

        try:
            raw = await self.record_cache.get_or_fetch(str(parsed), fetch)
        except _FetchFailed as e:
            return Err(e.error)
        return Ok(RecordView(uri=raw["uri"], value=raw["value"], cid=raw.get("cid")))

    @track_latency("fetch")
    async def list_records(
        self,
        actor: str,
        collection: str,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> Result[RecordPage, str]:
        did = await self.resolve_did(actor)
        if isinstance(did, Err):
            return did
        res = await self.source.list_records(did.value, collection, cursor, limit)
        if isinstance(res, Err):
            return res
        # listed records seed the record cache
        for record in res.value.records:
            self.record_cache.set(
                record.uri,
                {"uri": record.uri, "value": record.value, "cid": record.cid},
            )
        return res

    async def list_records_until(
        self,
        actor: str,
        collection: str,
        cursor: Optional[str] = None,
        timestamp_floor: int = -1,
    ) -> Result[RecordPage, str]:
        """
        Page through records until the cursor's TID timestamp reaches the floor.

        Stops when a page is empty, no cursor is returned, or the cursor
        timestamp is at or below timestamp_floor (microseconds). A cursor
        that is not a TID also stops the walk. A floor <= 0 fetches
        exactly one page.
        """
        data = RecordPage(records=[], cursor=cursor)
        log = log_with_context(actor=actor, collection=collection)

        while True:
            res = await self.list_records(actor, collection, data.cursor)
            if isinstance(res, Err):
                return res
            data.cursor = res.value.cursor
            data.records.extend(res.value.records)
            if not data.records or not data.cursor or timestamp_floor <= 0:
                break
            cursor_ts = timestamp_from_tid(data.cursor)
            if cursor_ts is None:
                log.warning(f"could not parse timestamp from cursor {data.cursor!r}, stopping")
                break
            if cursor_ts <= timestamp_floor:
                break
            log.debug(f"continuing fetch at {cursor_ts} until {timestamp_floor}")

        return Ok(data)

    # ============ Backlinks ============

    async def get_backlinks(
        self,
        subject: str,
        source: str,
        filter_actors: Optional[Sequence[str]] = None,
        limit: int = 100,
    ) -> Result[BacklinkPage, str]:
        query = self.source.get_backlinks(subject, source, filter_actors, limit)
        try:
            return await asyncio.wait_for(query, timeout=self.backlinks_timeout)
        except asyncio.TimeoutError:
            logger.info(f"backlinks query for {subject} ({source}) timed out")
            return Err("cant fetch backlinks: timeout")

    # ============ Writes ============

    async def create_record(
        self,
        actor: str,
        collection: str,
        rkey: str,
        record: dict,
    ) -> Result[RecordView, str]:
        res = await self.source.create_record(actor, collection, rkey, record)
        if isinstance(res, Ok):
            view = res.value
            self.record_cache.set(view.uri, {"uri": view.uri, "value": view.value, "cid": view.cid})
        return res

    async def delete_record(self, actor: str, collection: str, rkey: str) -> Result[None, str]:
        res = await self.source.delete_record(actor, collection, rkey)
        if isinstance(res, Ok):
            self.record_cache.delete(str(RecordUri(actor, collection, rkey)))
        return res
