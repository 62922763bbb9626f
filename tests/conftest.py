"""Shared fixtures: fresh indices, post factories and a fake record source"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import pytest
import pytest_asyncio

from nucleus.backlinks import BacklinkIndex
from nucleus.cache import DedupCache
from nucleus.db.entities import Backlink, BacklinkPage, Identity, Post, RecordPage, RecordView
from nucleus.db.repositories.memory import MemoryCacheStore
from nucleus.identifiers import POST_COLLECTION, RecordUri, make_uri, tid_from_datetime
from nucleus.observability import metrics
from nucleus.posts import PostStore
from nucleus.result import Err, Ok
from nucleus.source import CachedRecordSource, RecordSource


BASE_TIME = datetime(2023, 1, 1, tzinfo=timezone.utc)

ALICE = "did:plc:alice"
BOB = "did:plc:bob"
CAROL = "did:plc:carol"


def post_record(
    when: datetime,
    text: str = "",
    parent: Optional[Post] = None,
    quote: Optional[str] = None,
) -> dict:
    value = {"$type": POST_COLLECTION, "text": text, "createdAt": when.isoformat().replace("+00:00", "Z")}
    if parent is not None:
        value["reply"] = {
            "root": {"uri": parent.root_uri, "cid": None},
            "parent": {"uri": parent.uri, "cid": parent.cid},
        }
    if quote is not None:
        value["embed"] = {"$type": "app.bsky.embed.record", "record": {"uri": quote, "cid": None}}
    return value


def build_post(
    actor: str,
    when: datetime,
    parent: Optional[Post] = None,
    text: str = "",
    quote: Optional[str] = None,
    rkey: Optional[str] = None,
) -> Post:
    """Post whose record key encodes `when`"""
    rkey = rkey or tid_from_datetime(when)
    uri = make_uri(actor, POST_COLLECTION, rkey)
    return Post.from_record(uri, post_record(when, text, parent, quote), cid=f"cid-{rkey}")


class FakeRecordSource(RecordSource):
    """In-memory protocol client with call counting and failure injection"""

    def __init__(self):
        self.records: dict[str, RecordView] = {}
        self.identities: dict[str, Identity] = {}
        self.backlinks: dict[tuple[str, str], list[Backlink]] = {}
        self.calls: Counter = Counter()
        self.failing: set[str] = set()
        self.backlink_delay: float = 0.0
        self.fetch_delay: float = 0.0
        self.create_error: Optional[str] = None
        self.deleted: list[str] = []
        self.page_size: Optional[int] = None

    # helpers

    def put(self, uri: str, value: dict, cid: Optional[str] = None) -> RecordView:
        view = RecordView(uri=uri, value=value, cid=cid)
        self.records[uri] = view
        return view

    def put_post(self, post: Post) -> RecordView:
        return self.put(post.uri, post.record.to_dict(), post.cid)

    def link(self, subject: str, source: str, uri: str) -> None:
        self.backlinks.setdefault((subject, source), []).append(Backlink.from_uri(uri))

    # RecordSource

    async def resolve_identity(self, actor: str):
        self.calls["resolve_identity"] += 1
        await asyncio.sleep(self.fetch_delay)
        ident = self.identities.get(actor)
        if ident is None:
            return Err(f"unknown actor {actor}")
        return Ok(ident)

    async def get_record(self, actor: str, collection: str, rkey: str):
        uri = make_uri(actor, collection, rkey)
        self.calls["get_record"] += 1
        await asyncio.sleep(self.fetch_delay)
        if uri in self.failing or uri not in self.records:
            return Err(f"record not found: {uri}")
        return Ok(self.records[uri])

    async def list_records(self, actor: str, collection: str, cursor: Optional[str] = None, limit: int = 100):
        self.calls["list_records"] += 1
        size = self.page_size or limit
        matching = sorted(
            (
                view for view in self.records.values()
                if (p := RecordUri.parse(view.uri)) and p.actor == actor and p.collection == collection
            ),
            key=lambda view: view.uri.rsplit("/", 1)[-1],
            reverse=True,
        )
        if cursor is not None:
            matching = [v for v in matching if v.uri.rsplit("/", 1)[-1] < cursor]
        page = matching[:size]
        next_cursor = page[-1].uri.rsplit("/", 1)[-1] if len(matching) > size else None
        return Ok(RecordPage(records=page, cursor=next_cursor))

    async def get_backlinks(
        self,
        subject: str,
        source: str,
        filter_actors: Optional[Sequence[str]] = None,
        limit: int = 100,
    ):
        self.calls["get_backlinks"] += 1
        await asyncio.sleep(self.backlink_delay)
        links = self.backlinks.get((subject, source), [])
        if filter_actors:
            links = [link for link in links if link.did in filter_actors]
        return Ok(BacklinkPage(total=len(links), records=links[:limit]))

    async def create_record(self, actor: str, collection: str, rkey: str, record: dict):
        self.calls["create_record"] += 1
        if self.create_error:
            return Err(self.create_error)
        return Ok(self.put(make_uri(actor, collection, rkey), record, cid=f"cid-{rkey}"))

    async def delete_record(self, actor: str, collection: str, rkey: str):
        self.calls["delete_record"] += 1
        uri = make_uri(actor, collection, rkey)
        if uri in self.failing:
            return Err(f"cant delete {uri}")
        self.records.pop(uri, None)
        self.deleted.append(uri)
        return Ok(None)


class FakeClock:
    """Manually advanced time source in seconds"""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def backlinks() -> BacklinkIndex:
    return BacklinkIndex()


@pytest.fixture
def posts(backlinks: BacklinkIndex) -> PostStore:
    return PostStore(backlinks)


@pytest.fixture
def make_post():
    """Factory: make_post(actor, minutes, parent=None) at BASE_TIME + minutes"""
    def factory(actor: str, minutes: float = 0, parent: Optional[Post] = None, **kwargs) -> Post:
        return build_post(actor, BASE_TIME + timedelta(minutes=minutes), parent=parent, **kwargs)
    return factory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source() -> FakeRecordSource:
    return FakeRecordSource()


@pytest.fixture
def store() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest_asyncio.fixture
async def records(source: FakeRecordSource, store: MemoryCacheStore, clock: FakeClock) -> CachedRecordSource:
    record_cache = DedupCache(store, prefix="fetchRecord", max_entries=100, ttl=3600, clock=clock)
    identity_cache = DedupCache(store, prefix="resolveDidDoc", max_entries=100, ttl=3600, clock=clock)
    cached = CachedRecordSource(source, record_cache, identity_cache, backlinks_timeout=0.2)
    yield cached
    await record_cache.flush()
    await identity_cache.flush()
