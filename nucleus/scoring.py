"""Interaction scoring for followed actors.

Affinity score model:
- Weighted interaction events (reply, quote, repost) between the viewer
  and each followed actor
- Exponential time decay with a configurable half-life
- Normalization by the actor's posting rate so high-volume accounts do
  not dominate by post count alone
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import cmp_to_key
from typing import Any, Callable, Collection, Hashable, Iterable, Mapping, Optional

from .backlinks import REPOST, BacklinkIndex
from .db.entities import Post
from .identifiers import datetime_from_tid, extract_actor, utcnow
from .observability import track_latency
from .posts import PostStore
from .thread import post_time


@dataclass
class ScoringConfig:
    """Configuration for interaction scoring."""

    # Interaction weights
    reply_weight: float = 6.0
    quote_weight: float = 4.0
    repost_weight: float = 2.0
    # Nth repost of one post contributes weight * s / (s + N - 1)
    repost_saturation: float = 9.0

    half_life_days: float = 3.0
    posting_window_days: int = 7

    # Memo lifetimes (seconds)
    posting_rate_ttl: float = 60.0
    stats_ttl: float = 300.0

    # Followed-user stats
    recent_window_hours: float = 6.0
    active_gravity: float = 2.0
    conversational_threshold: float = 0.1
    active_threshold: float = 1e-4

    @classmethod
    def from_settings(cls, settings) -> "ScoringConfig":
        return cls(
            half_life_days=settings.half_life_days,
            posting_window_days=settings.posting_window_days,
            posting_rate_ttl=settings.posting_rate_ttl_seconds,
            stats_ttl=settings.stats_ttl_seconds,
        )


# Global default config
DEFAULT_SCORING_CONFIG = ScoringConfig()


# ============ Primitives ============

def decay(age: timedelta, half_life: timedelta = timedelta(days=3)) -> float:
    """
    Exponential decay factor for an interaction of the given age.

    decay(age) = exp(-ln(2) / half_life * age); interactions from the
    future count as brand new.
    """
    seconds = age.total_seconds()
    if seconds <= 0:
        return 1.0
    return math.exp(-math.log(2) / half_life.total_seconds() * seconds)


def repost_factor(n: int, saturation: float = 9.0) -> float:
    """Diminishing factor for the nth (1-based) repost of the same post"""
    return saturation / (saturation + n - 1)


def posting_rate(
    posts: Iterable[Post],
    now: datetime,
    window: timedelta = timedelta(days=7),
) -> float:
    """Posts per day over the trailing window, spanning at least one day"""
    start = now - window
    times = [t for t in (post_time(p) for p in posts) if start <= t <= now]
    if not times:
        return 0.0
    span_days = max(1.0, (now - min(times)).total_seconds() / 86400)
    return len(times) / span_days


# ============ Memoization ============

class ScoreMemo:
    """
    Short-lived memo for posting rates and followed-user stats.

    Entries are valid while the version they were computed against is
    unchanged and their TTL has not elapsed.
    """

    def __init__(
        self,
        rate_ttl: float = 60.0,
        stats_ttl: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self._rate_ttl = rate_ttl
        self._stats_ttl = stats_ttl
        self._clock = clock
        self._rates: dict[Hashable, tuple[Hashable, float, Any]] = {}
        self._stats: dict[Hashable, tuple[Hashable, float, Any]] = {}

    def rate(self, key: Hashable, version: Hashable, compute: Callable[[], float]) -> float:
        return self._lookup(self._rates, self._rate_ttl, key, version, compute)

    def stats(self, key: Hashable, version: Hashable, compute: Callable[[], Any]) -> Any:
        return self._lookup(self._stats, self._stats_ttl, key, version, compute)

    def clear(self) -> None:
        self._rates.clear()
        self._stats.clear()

    def _lookup(self, table, ttl, key, version, compute):
        now = self._clock()
        hit = table.get(key)
        if hit is not None:
            cached_version, computed_at, value = hit
            if cached_version == version and now - computed_at <= ttl:
                return value
        value = compute()
        table[key] = (version, now, value)
        return value


# ============ Interaction scores ============

def interaction_time(rkey: str, subject: Optional[Post], now: datetime) -> datetime:
    """When a backlink record was made: its TID, else the subject's time"""
    moment = datetime_from_tid(rkey)
    if moment is not None:
        return moment
    if subject is not None:
        return post_time(subject)
    return now


@track_latency("score")
def calculate_interaction_scores(
    viewer: str,
    follows: Collection[str],
    posts: PostStore,
    backlinks: BacklinkIndex,
    reply_index: Optional[Mapping[str, Collection[str]]] = None,
    now: Optional[datetime] = None,
    config: Optional[ScoringConfig] = None,
    memo: Optional[ScoreMemo] = None,
) -> dict[str, float]:
    """
    Calculate the viewer's affinity score for every followed actor.

    Counted interactions:
    - the viewer's replies and quotes of a followed actor's posts
    - a followed actor's replies to the viewer (from the reply index)
    - the viewer's reposts of a followed actor's posts, with diminishing
      weight for repeated reposts of one post

    Args:
        viewer: Actor whose affinities are computed
        follows: Actors the viewer follows
        posts: Post store
        backlinks: Backlink index holding the viewer's reposts
        reply_index: actor -> URIs of replies to that actor
        now: Reference time (defaults to current UTC time)
        config: Scoring configuration
        memo: Optional memo for per-actor posting rates

    Returns:
        Mapping of followed actor to a non-negative score
    """
    config = config or DEFAULT_SCORING_CONFIG
    now = now or utcnow()
    reply_index = posts.reply_index if reply_index is None else reply_index
    half_life = timedelta(days=config.half_life_days)
    followed = set(follows) - {viewer}

    raw: dict[str, float] = {actor: 0.0 for actor in followed}

    def add(actor: Optional[str], weight: float, moment: datetime) -> None:
        if actor in raw:
            raw[actor] += weight * decay(now - moment, half_life)

    for post in posts.posts_of(viewer).values():
        moment = post_time(post)
        if post.parent_uri:
            add(extract_actor(post.parent_uri), config.reply_weight, moment)
        if post.quoted_uri:
            add(extract_actor(post.quoted_uri), config.quote_weight, moment)

    for uri in reply_index.get(viewer, ()):
        reply = posts.get_by_uri(uri)
        if reply is not None:
            add(reply.actor, config.reply_weight, post_time(reply))

    for subject, rkeys in backlinks.subjects_by(viewer, REPOST).items():
        target = extract_actor(subject)
        if target not in raw:
            continue
        subject_post = posts.get_by_uri(subject)
        for n, rkey in enumerate(rkeys, start=1):
            weight = config.repost_weight * repost_factor(n, config.repost_saturation)
            add(target, weight, interaction_time(rkey, subject_post, now))

    window = timedelta(days=config.posting_window_days)
    scores: dict[str, float] = {}
    for actor, value in raw.items():
        if memo is not None:
            rate = memo.rate(
                actor,
                posts.version(actor),
                lambda a=actor: posting_rate(posts.posts_of(a).values(), now, window),
            )
        else:
            rate = posting_rate(posts.posts_of(actor).values(), now, window)
        scores[actor] = max(0.0, value / math.sqrt(rate + 1))
    return scores


# ============ Followed-user stats ============

class FollowSort(str, Enum):
    RECENT = "recent"
    ACTIVE = "active"
    CONVERSATIONAL = "conversational"


@dataclass
class FollowedUserStats:
    did: str
    last_post_at: datetime
    active_score: float = 0.0
    conversational_score: float = 0.0
    recent_post_count: int = 0


def calculate_followed_user_stats(
    sort: FollowSort,
    actor: str,
    posts: PostStore,
    interaction_scores: Optional[Mapping[str, float]] = None,
    now: Optional[datetime] = None,
    config: Optional[ScoringConfig] = None,
) -> Optional[FollowedUserStats]:
    """
    Activity summary of one followed actor, None when no posts are known.

    active score = sum over posts of 1 / (age_hours + 1) ^ gravity
    """
    config = config or DEFAULT_SCORING_CONFIG
    now = now or utcnow()
    actor_posts = posts.posts_of(actor)
    if not actor_posts:
        return None

    recent_window = timedelta(hours=config.recent_window_hours)
    last_post_at: Optional[datetime] = None
    active_score = 0.0
    recent = 0
    for post in actor_posts.values():
        moment = post_time(post)
        if last_post_at is None or moment > last_post_at:
            last_post_at = moment
        age = max(timedelta(0), now - moment)
        if age < recent_window:
            recent += 1
        if sort == FollowSort.ACTIVE:
            age_hours = age.total_seconds() / 3600
            active_score += 1 / math.pow(age_hours + 1, config.active_gravity)

    conversational = 0.0
    if sort == FollowSort.CONVERSATIONAL and interaction_scores:
        conversational = interaction_scores.get(actor, 0.0)

    return FollowedUserStats(
        did=actor,
        last_post_at=last_post_at,
        active_score=active_score,
        conversational_score=conversational,
        recent_post_count=recent,
    )


def compare_followed_users(
    sort: FollowSort,
    a: FollowedUserStats,
    b: FollowedUserStats,
    config: Optional[ScoringConfig] = None,
) -> float:
    """Comparator placing higher-ranked users first"""
    config = config or DEFAULT_SCORING_CONFIG
    if sort == FollowSort.CONVERSATIONAL:
        diff = b.conversational_score - a.conversational_score
        if abs(diff) > config.conversational_threshold:
            return diff
    elif sort == FollowSort.ACTIVE:
        diff = b.active_score - a.active_score
        if abs(diff) > config.active_threshold:
            return diff
    # similar scores fall back to the most recent post
    return (b.last_post_at - a.last_post_at).total_seconds()


def sort_followed_users(
    sort: FollowSort,
    stats: Iterable[FollowedUserStats],
    config: Optional[ScoringConfig] = None,
) -> list[FollowedUserStats]:
    return sorted(stats, key=cmp_to_key(lambda a, b: compare_followed_users(sort, a, b, config)))


def rank_followed_users(
    sort: FollowSort,
    viewer: str,
    follows: Collection[str],
    posts: PostStore,
    backlinks: BacklinkIndex,
    now: Optional[datetime] = None,
    config: Optional[ScoringConfig] = None,
    memo: Optional[ScoreMemo] = None,
) -> list[FollowedUserStats]:
    """Stats for every followed actor with known posts, best first"""
    config = config or DEFAULT_SCORING_CONFIG
    now = now or utcnow()

    scores = None
    if sort == FollowSort.CONVERSATIONAL:
        scores = calculate_interaction_scores(
            viewer, follows, posts, backlinks, now=now, config=config, memo=memo
        )

    stats = []
    for actor in follows:
        if actor == viewer:
            continue

        def compute(a=actor):
            return calculate_followed_user_stats(sort, a, posts, scores, now, config)

        if memo is not None:
            version = (posts.version(actor), posts.version(viewer))
            entry = memo.stats((sort.value, viewer, actor), version, compute)
        else:
            entry = compute()
        if entry is not None:
            stats.append(entry)
    return sort_followed_users(sort, stats, config)
