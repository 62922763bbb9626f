"""Paginated timeline and backlink synchronization.

Keeps per-actor post cursors and per-(actor, edge kind) backlink cursors
so repeated fetches continue where the previous one stopped.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Optional

from .backlinks import FOLLOW, LIKE, REPLY_PARENT, REPOST, BacklinkIndex, EdgeKind
from .db.entities import Backlink, Post
from .identifiers import POST_COLLECTION, RecordUri, make_uri, tid_now, timestamp_from_tid, utcnow
from .ingest import gather_bounded, hydrate_posts
from .observability import log_with_context, logger, metrics
from .posts import PostStore
from .result import Err, Ok, Result
from .source import CachedRecordSource


@dataclass
class PostCursor:
    value: Optional[str] = None
    end: bool = False


class TimelineSync:
    """
    Fetches an actor's posts, replies and interaction backlinks into the
    post store and backlink index.

    Args:
        source: Cached record source
        posts: Post store to fill
        backlinks: Backlink index to fill
        concurrency: Limit for concurrent backlink and record fetches
    """

    def __init__(
        self,
        source: CachedRecordSource,
        posts: PostStore,
        backlinks: BacklinkIndex,
        concurrency: int = 8,
    ):
        self.source = source
        self.posts = posts
        self.backlinks = backlinks
        self.concurrency = concurrency

        self.post_cursors: dict[str, PostCursor] = {}
        self.backlink_cursors: dict[tuple[str, EdgeKind], Optional[str]] = {}

    # ============ Posts ============

    async def fetch_timeline(self, actor: str, limit: int = 6, with_backlinks: bool = True) -> Result[int, str]:
        """
        Fetch the next page of actor's posts plus their direct replies.

        Returns the number of posts added to actor's timeline. Once the
        end of the feed is reached further calls are no-ops.
        """
        cursor = self.post_cursors.get(actor)
        if cursor is not None and cursor.end:
            return Ok(0)

        res = await self.source.list_records(actor, POST_COLLECTION, cursor.value if cursor else None, limit)
        if isinstance(res, Err):
            metrics.increment("error_count")
            return Err(f"cant fetch posts {actor}: {res.error}")
        page = res.value
        # a missing cursor means the end of the feed
        self.post_cursors[actor] = PostCursor(value=page.cursor, end=not page.cursor)

        fetched = [Post.from_record(r.uri, r.value, r.cid) for r in page.records]
        reply_uris: list[str] = []
        if with_backlinks:
            reply_uris = await self._reply_uris([post.uri for post in fetched])

        # already known replies need no fetch
        missing = [uri for uri in reply_uris if self.posts.get_by_uri(uri) is None]
        replies = await hydrate_posts(self.source, missing, self.concurrency)
        known = [p for p in (self.posts.get_by_uri(uri) for uri in reply_uris) if p is not None]

        hydrated = fetched + replies + known
        self.posts.add_posts(fetched + replies)
        added = self.posts.add_timeline(actor, [post.uri for post in hydrated])
        logger.info(f"{actor}: fetched timeline page, cursor {page.cursor}")
        return Ok(added)

    async def _reply_uris(self, uris: list[str]) -> list[str]:
        async def lookup(uri: str) -> list[str]:
            res = await self.source.get_backlinks(uri, REPLY_PARENT.source)
            if isinstance(res, Err):
                # a timed out lookup ends this chain; the post itself stays
                log_with_context(uri=uri).info(f"no reply backlinks: {res.error}")
                return []
            links = [link for link in res.value.records if link.collection == POST_COLLECTION]
            self.backlinks.add_backlinks(uri, REPLY_PARENT, links)
            return [link.uri for link in links]

        found = await gather_bounded(uris, lookup, self.concurrency)
        return [uri for group in found for uri in group]

    # ============ Backlinks ============

    async def fetch_links_until(self, actor: str, edge_kind: EdgeKind, floor: int = -1) -> Result[int, str]:
        """
        Walk actor's records of edge_kind's collection down to `floor`
        (TID microseconds), registering each as a backlink.
        """
        key = (actor, edge_kind)
        cursor = self.backlink_cursors.get(key)

        # already fetched far enough
        cursor_ts = timestamp_from_tid(cursor)
        if cursor_ts is not None and cursor_ts <= floor:
            return Ok(0)

        res = await self.source.list_records_until(actor, edge_kind.collection, cursor, floor)
        if isinstance(res, Err):
            metrics.increment("error_count")
            logger.error(f"failed to fetch {edge_kind.source} links for {actor}: {res.error}")
            return res
        self.backlink_cursors[key] = res.value.cursor

        added = 0
        for record in res.value.records:
            parsed = RecordUri.parse(record.uri)
            subject = edge_kind.extract(record.value) if isinstance(record.value, dict) else None
            if parsed is None or not subject:
                continue
            added += self.backlinks.add_backlinks(
                subject, edge_kind, [Backlink(parsed.actor, parsed.collection, parsed.rkey)]
            )
        return Ok(added)

    async def fetch_interactions_until(self, actor: str) -> list[Result[int, str]]:
        """Fetch likes and reposts back to the oldest loaded timeline post"""
        cursor = self.post_cursors.get(actor)
        if cursor is None:
            return []
        floor = timestamp_from_tid(cursor.value) or -1
        return await gather_bounded(
            [LIKE, REPOST],
            lambda kind: self.fetch_links_until(actor, kind, floor),
            self.concurrency,
        )

    async def fetch_for_interactions(self, actor: str, days: float = 3) -> Result[int, str]:
        """
        Load one page of posts and the reposts needed for interaction
        scoring, reaching back at least `days`.
        """
        res = await self.source.list_records(actor, POST_COLLECTION)
        if isinstance(res, Err):
            metrics.increment("error_count")
            return res
        self.posts.add_posts(Post.from_record(r.uri, r.value, r.cid) for r in res.value.records)

        cutoff = int((utcnow() - timedelta(days=days)).timestamp() * 1_000_000)
        cursor_ts = timestamp_from_tid(res.value.cursor)
        floor = min(cursor_ts, cutoff) if cursor_ts is not None else -1
        return await self.fetch_links_until(actor, REPOST, floor)

    async def fetch_follows(self, actor: str) -> Result[set[str], str]:
        """List actor's follow records and index them as follow backlinks"""
        res = await self.source.list_records_until(actor, FOLLOW.collection)
        if isinstance(res, Err):
            metrics.increment("error_count")
            return res
        for record in res.value.records:
            parsed = RecordUri.parse(record.uri)
            subject = FOLLOW.extract(record.value) if isinstance(record.value, dict) else None
            if parsed is None or not subject:
                continue
            self.backlinks.add_backlinks(subject, FOLLOW, [Backlink(parsed.actor, parsed.collection, parsed.rkey)])
        return Ok(self.backlinks.follows_of(actor))

    # ============ Writes ============

    async def create_post_backlink(self, viewer: str, post: Post, edge_kind: EdgeKind) -> Result[Backlink, str]:
        """
        Like or repost a post: index the edge immediately, then create the
        record. The edge is rolled back when the write fails.
        """
        if edge_kind.build is None:
            return Err(f"cant create records for {edge_kind.source}")
        rkey = tid_now()
        link = Backlink(viewer, edge_kind.collection, rkey)
        self.backlinks.add_backlinks(post.uri, edge_kind, [link])

        record = edge_kind.build(post.uri, post.cid, utcnow().isoformat().replace("+00:00", "Z"))
        res = await self.source.create_record(viewer, edge_kind.collection, rkey, record)
        if isinstance(res, Err):
            self.backlinks.remove_backlinks(post.uri, edge_kind, [link])
            metrics.increment("error_count")
            logger.error(f"failed to create {edge_kind.source} on {post.uri}: {res.error}")
            return res
        return Ok(link)

    async def delete_post_backlink(self, viewer: str, post: Post, edge_kind: EdgeKind) -> list[Result[None, str]]:
        """Remove every viewer edge of edge_kind on post, then delete the records"""
        links = self.backlinks.find_backlinks_by(post.uri, edge_kind, viewer)
        self.backlinks.remove_backlinks(post.uri, edge_kind, links)

        results = await gather_bounded(
            links,
            lambda link: self.source.delete_record(viewer, link.collection, link.rkey),
            self.concurrency,
        )
        for link, res in zip(links, results):
            if isinstance(res, Err):
                metrics.increment("error_count")
                logger.warning(f"failed to delete {make_uri(viewer, link.collection, link.rkey)}: {res.error}")
        return results

    def reset(self, actors: Optional[Iterable[str]] = None) -> None:
        """Forget cursors so the next fetch starts from the newest records"""
        if actors is None:
            self.post_cursors.clear()
            self.backlink_cursors.clear()
            return
        for actor in actors:
            self.post_cursors.pop(actor, None)
            for key in [k for k in self.backlink_cursors if k[0] == actor]:
                del self.backlink_cursors[key]
