"""Event ingestors: translate push events into store and index mutations.

Two adapters sit between the transports and the in-memory indices:
- CommitIngestor: firehose commits (record created/updated/deleted)
- NotificationIngestor: backlink notifications (a record now points at
  one of the viewer's records)

Both are idempotent; replaying an event leaves the state unchanged.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from .backlinks import BacklinkIndex, edge_kind_for, edge_kinds_for_collection
from .db.entities import Backlink, BacklinkNotification, CommitEvent, Post
from .identifiers import POST_COLLECTION, RecordUri
from .observability import log_with_context, logger, metrics, track_latency
from .posts import PostStore
from .result import Err
from .source import CachedRecordSource

T = TypeVar("T")
R = TypeVar("R")

CREATE = "create"
UPDATE = "update"
DELETE = "delete"


async def gather_bounded(
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
    concurrency: int = 8,
) -> list[R]:
    """Run fn over items concurrently, at most `concurrency` at a time"""
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_with_limit(item: T) -> R:
        async with semaphore:
            return await fn(item)

    return await asyncio.gather(*(run_with_limit(item) for item in items))


async def hydrate_posts(
    source: CachedRecordSource,
    uris: Iterable[str],
    concurrency: int = 8,
) -> list[Post]:
    """
    Fetch posts by URI through the record cache.

    A failed fetch is logged and counted but does not fail the batch.
    """
    unique = list(dict.fromkeys(uris))

    async def hydrate(uri: str) -> Optional[Post]:
        res = await source.get_record_by_uri(uri)
        if isinstance(res, Err):
            metrics.increment("error_count")
            log_with_context(uri=uri).warning(f"cant hydrate post: {res.error}")
            return None
        return Post.from_record(res.value.uri, res.value.value, res.value.cid)

    results = await gather_bounded(unique, hydrate, concurrency)
    return [post for post in results if post is not None]


class CommitIngestor:
    """Applies firehose commit events to the post store and backlink index"""

    def __init__(self, posts: PostStore, backlinks: BacklinkIndex):
        self.posts = posts
        self.backlinks = backlinks

    @track_latency("ingest")
    def handle(self, event: CommitEvent) -> bool:
        """Apply one commit, return False when it was ignored"""
        if event.operation not in (CREATE, UPDATE, DELETE):
            logger.debug(f"ignoring commit operation {event.operation!r}")
            return False
        if RecordUri.parse(event.uri) is None:
            logger.warning(f"ignoring commit with malformed uri {event.uri!r}")
            return False

        if event.collection == POST_COLLECTION:
            return self._handle_post(event)
        return self._handle_link(event)

    def handle_many(self, events: Iterable[CommitEvent]) -> int:
        return sum(1 for event in events if self.handle(event))

    def _handle_post(self, event: CommitEvent) -> bool:
        if event.operation == DELETE:
            self.posts.delete_post(event.uri)
            self.posts.prune_tombstones()
            # reply edges registered before the post itself was known
            self.backlinks.remove_record(event.actor, event.collection, event.rkey)
            return True
        if event.record is None:
            return False
        self.posts.add_posts([Post.from_record(event.uri, event.record, event.cid)])
        self.posts.add_timeline(event.actor, [event.uri])
        return True

    def _handle_link(self, event: CommitEvent) -> bool:
        kinds = edge_kinds_for_collection(event.collection)
        if not kinds:
            return False
        if event.operation == DELETE:
            return bool(self.backlinks.remove_record(event.actor, event.collection, event.rkey))
        if event.record is None:
            return False

        link = Backlink(event.actor, event.collection, event.rkey)
        applied = False
        for kind in kinds:
            subject = kind.extract(event.record)
            if subject:
                self.backlinks.add_backlinks(subject, kind, [link])
                applied = True
        return applied


class NotificationIngestor:
    """
    Applies backlink notifications.

    Replies and quotes (post-collection sources) are hydrated so the
    conversation can be threaded; every other edge kind only touches the
    backlink index.
    """

    def __init__(
        self,
        posts: PostStore,
        backlinks: BacklinkIndex,
        source: CachedRecordSource,
        concurrency: int = 8,
    ):
        self.posts = posts
        self.backlinks = backlinks
        self.source = source
        self.concurrency = concurrency

    @track_latency("ingest")
    async def handle(self, event: BacklinkNotification) -> bool:
        """Apply one notification, return False when it was ignored"""
        log = log_with_context(source=event.edge_kind, subject=event.subject)

        kind = edge_kind_for(event.edge_kind)
        if kind is None:
            log.info("ignoring notification for unknown edge kind")
            return False
        source_uri = RecordUri.parse(event.source_record)
        if source_uri is None or source_uri.collection != kind.collection:
            log.warning(f"ignoring notification with bad source record {event.source_record!r}")
            return False
        link = Backlink(source_uri.actor, source_uri.collection, source_uri.rkey)

        if event.operation == DELETE:
            self.backlinks.remove_backlinks(event.subject, kind, [link])
            if kind.collection == POST_COLLECTION:
                self.posts.delete_post(str(source_uri))
                self.posts.prune_tombstones()
            return True

        if kind.collection == POST_COLLECTION:
            return await self._handle_post(event, str(source_uri))

        self.backlinks.add_backlinks(event.subject, kind, [link])
        return True

    async def handle_many(self, events: Iterable[BacklinkNotification]) -> int:
        handled = 0
        for event in events:
            if await self.handle(event):
                handled += 1
        return handled

    async def _handle_post(self, event: BacklinkNotification, source_uri: str) -> bool:
        subject = RecordUri.parse(event.subject)
        if subject is None:
            logger.warning(f"ignoring post notification with bad subject {event.subject!r}")
            return False

        hydrated = await hydrate_posts(self.source, [event.subject, source_uri], self.concurrency)
        if not any(post.uri == event.subject for post in hydrated):
            # without the subject there is nothing to thread under
            return False

        self.posts.add_posts(hydrated)
        self.posts.add_timeline(subject.actor, [post.uri for post in hydrated])
        return True
