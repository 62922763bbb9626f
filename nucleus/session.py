"""Feed session: one set of indices, caches and adapters, wired together.

Nothing here is a process-wide singleton; tests and services construct a
FeedSession and pass it (or its parts) where they are needed.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Callable, Collection, Iterable, Optional

from .backlinks import BacklinkIndex
from .cache import DedupCache
from .db.config import Settings, settings as default_settings
from .db.entities import Thread
from .db.repositories.base import CacheStore
from .db.repositories.factory import get_cache_store
from .ingest import CommitIngestor, NotificationIngestor
from .observability import logger, track_errors
from .posts import PostStore
from .scoring import (
    FollowSort,
    FollowedUserStats,
    ScoreMemo,
    ScoringConfig,
    calculate_interaction_scores,
    rank_followed_users,
)
from .source import CachedRecordSource, RecordSource
from .sync import TimelineSync
from .thread import FilterOptions, build_conversation, build_threads_filtered

RECORD_CACHE_PREFIX = "fetchRecord"
IDENTITY_CACHE_PREFIX = "resolveDidDoc"


class FeedSession:
    """
    Owns the post store, backlink index and caches for one client session.

    Args:
        source: Protocol client used for every network lookup
        store: Cache persistence backend (defaults to the configured one)
        config: Settings instance
        clock: Time source in seconds for the caches and memo
    """

    def __init__(
        self,
        source: RecordSource,
        store: Optional[CacheStore] = None,
        config: Settings = default_settings,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store if store is not None else get_cache_store(config.backend)

        self.backlinks = BacklinkIndex()
        self.posts = PostStore(
            self.backlinks,
            tombstone_max=config.tombstone_max,
            tombstone_ttl=timedelta(days=config.tombstone_ttl_days),
        )

        self.record_cache: DedupCache[dict] = DedupCache(
            self.store,
            prefix=RECORD_CACHE_PREFIX,
            max_entries=config.record_cache_max,
            ttl=config.record_cache_ttl_seconds,
            clock=clock,
        )
        self.identity_cache: DedupCache[dict] = DedupCache(
            self.store,
            prefix=IDENTITY_CACHE_PREFIX,
            max_entries=config.identity_cache_max,
            ttl=config.identity_cache_ttl_seconds,
            clock=clock,
        )
        self.records = CachedRecordSource(
            source,
            self.record_cache,
            self.identity_cache,
            backlinks_timeout=config.backlinks_timeout_seconds,
        )

        self.commits = CommitIngestor(self.posts, self.backlinks)
        self.notifications = NotificationIngestor(
            self.posts, self.backlinks, self.records, concurrency=config.fetch_concurrency
        )
        self.sync = TimelineSync(
            self.records, self.posts, self.backlinks, concurrency=config.fetch_concurrency
        )

        self.scoring = ScoringConfig.from_settings(config)
        self.memo = ScoreMemo(
            rate_ttl=self.scoring.posting_rate_ttl,
            stats_ttl=self.scoring.stats_ttl,
            clock=clock,
        )

    # ============ Lifecycle ============

    @track_errors
    async def start(self) -> None:
        """Restore the persisted cache snapshots"""
        await self.store.open()
        records = await self.record_cache.restore()
        identities = await self.identity_cache.restore()
        logger.info(f"restored {records} records and {identities} identities from cache")

    @track_errors
    async def close(self) -> None:
        """Flush pending cache writes and release the store"""
        await self.record_cache.flush()
        await self.identity_cache.flush()
        await self.store.close()

    # ============ Views ============

    def build_threads_filtered(
        self,
        actor: str,
        timeline: Optional[Iterable[str]] = None,
        muted: Collection[str] = (),
        options: Optional[FilterOptions] = None,
        limit: Optional[int] = None,
        own_actors: Optional[Collection[str]] = None,
    ) -> list[Thread]:
        """Threads of actor's timeline (or the given URIs), newest first"""
        uris = self.posts.timeline(actor) if timeline is None else timeline
        return build_threads_filtered(
            actor,
            uris,
            self.posts,
            self.backlinks,
            mutes=muted,
            options=options,
            limit=limit,
            own_actors=own_actors,
        )

    def interaction_scores(
        self,
        actor: str,
        follows: Optional[Collection[str]] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, float]:
        follows = self.backlinks.follows_of(actor) if follows is None else follows
        return calculate_interaction_scores(
            actor,
            follows,
            self.posts,
            self.backlinks,
            now=now,
            config=self.scoring,
            memo=self.memo,
        )

    def followed_user_stats(
        self,
        actor: str,
        sort: FollowSort = FollowSort.RECENT,
        follows: Optional[Collection[str]] = None,
        now: Optional[datetime] = None,
    ) -> list[FollowedUserStats]:
        follows = self.backlinks.follows_of(actor) if follows is None else follows
        return rank_followed_users(
            sort,
            actor,
            follows,
            self.posts,
            self.backlinks,
            now=now,
            config=self.scoring,
            memo=self.memo,
        )

    def conversation(
        self,
        actor: str,
        root_uri: str,
        muted: Collection[str] = (),
    ) -> list[Thread]:
        """Every known post of one conversation, threaded for actor"""
        return build_conversation(actor, root_uri, self.posts, self.backlinks, mutes=muted)
