"""Tests for interaction scoring and followed-user ranking"""

import math
from datetime import timedelta

import pytest

from conftest import ALICE, BASE_TIME, BOB, CAROL, FakeClock, build_post
from nucleus.backlinks import REPOST
from nucleus.db.entities import Backlink
from nucleus.identifiers import REPOST_COLLECTION, tid_from_datetime
from nucleus.scoring import (
    FollowSort,
    FollowedUserStats,
    ScoreMemo,
    ScoringConfig,
    calculate_followed_user_stats,
    calculate_interaction_scores,
    decay,
    posting_rate,
    rank_followed_users,
    repost_factor,
    sort_followed_users,
)

NOW = BASE_TIME + timedelta(days=10)


# ============ Primitives ============

def test_decay_is_monotonic():
    ages = [timedelta(hours=h) for h in (0, 1, 12, 24, 72, 240)]
    values = [decay(age) for age in ages]
    assert all(a > b for a, b in zip(values, values[1:]))


def test_decay_half_life():
    assert decay(timedelta(0)) == 1.0
    assert decay(timedelta(days=3)) == pytest.approx(0.5)
    assert decay(timedelta(days=6)) == pytest.approx(0.25)
    assert decay(-timedelta(hours=1)) == 1.0


def test_repost_factor_saturates():
    assert repost_factor(1) == 1.0
    assert repost_factor(2) == pytest.approx(0.9)
    assert repost_factor(10) == pytest.approx(0.5)


def test_posting_rate_spans_at_least_one_day():
    items = [build_post(BOB, NOW - timedelta(hours=h)) for h in (1, 2, 3)]
    assert posting_rate(items, NOW) == pytest.approx(3.0)


def test_posting_rate_uses_trailing_window():
    items = [build_post(BOB, NOW - timedelta(days=d)) for d in (1, 2, 3, 4, 20)]
    assert posting_rate(items, NOW) == pytest.approx(4 / 4)
    assert posting_rate([], NOW) == 0.0


# ============ Interaction scores ============

def test_reply_and_quote_weights(posts, backlinks):
    bob_post = build_post(BOB, NOW - timedelta(days=30))
    posts.add_posts([
        build_post(ALICE, NOW, parent=bob_post),
        build_post(
            ALICE,
            NOW,
            quote=build_post(CAROL, NOW - timedelta(days=30)).uri,
            rkey=tid_from_datetime(NOW, clock_id=1),
        ),
    ])
    scores = calculate_interaction_scores(ALICE, {BOB, CAROL}, posts, backlinks, now=NOW)
    assert scores[BOB] == pytest.approx(6.0)
    assert scores[CAROL] == pytest.approx(4.0)


def test_repeated_reposts_diminish(posts, backlinks):
    subject = build_post(BOB, NOW - timedelta(days=30))
    rkeys = [tid_from_datetime(NOW, clock_id=i) for i in range(2)]
    backlinks.add_backlinks(subject.uri, REPOST, [Backlink(ALICE, REPOST_COLLECTION, k) for k in rkeys])

    scores = calculate_interaction_scores(ALICE, {BOB}, posts, backlinks, now=NOW)
    assert scores[BOB] == pytest.approx(2.0 * (1 + 0.9))


def test_replies_from_followed_actor_count(posts, backlinks):
    mine = build_post(ALICE, NOW - timedelta(days=30))
    posts.add_posts([mine, build_post(BOB, NOW, parent=mine)])
    bob_rate = posting_rate(posts.posts_of(BOB).values(), NOW)
    scores = calculate_interaction_scores(ALICE, {BOB}, posts, backlinks, now=NOW)
    assert scores[BOB] == pytest.approx(6.0 / math.sqrt(bob_rate + 1))


def test_scores_decay_with_age(posts, backlinks):
    bob_post = build_post(BOB, NOW - timedelta(days=30))
    posts.add_posts([build_post(ALICE, NOW - timedelta(days=3), parent=bob_post)])
    scores = calculate_interaction_scores(ALICE, {BOB}, posts, backlinks, now=NOW)
    assert scores[BOB] == pytest.approx(3.0)


def test_high_volume_accounts_are_normalized(posts, backlinks):
    bob_post = build_post(BOB, NOW - timedelta(days=30))
    posts.add_posts([build_post(ALICE, NOW, parent=bob_post)])
    # one post a day for the trailing week
    posts.add_posts(build_post(BOB, NOW - timedelta(days=d)) for d in range(7))

    rate = posting_rate(posts.posts_of(BOB).values(), NOW)
    scores = calculate_interaction_scores(ALICE, {BOB}, posts, backlinks, now=NOW)
    assert rate > 0
    assert scores[BOB] == pytest.approx(6.0 / math.sqrt(rate + 1))


def test_scores_are_never_negative(posts, backlinks):
    bob_post = build_post(BOB, NOW)
    posts.add_posts([
        build_post(ALICE, NOW + timedelta(days=1), parent=bob_post),
        build_post(ALICE, NOW - timedelta(days=365), parent=bob_post),
    ])
    scores = calculate_interaction_scores(ALICE, {BOB, CAROL, ALICE}, posts, backlinks, now=NOW)
    assert set(scores) == {BOB, CAROL}
    assert all(score >= 0 for score in scores.values())
    assert scores[CAROL] == 0.0


def test_unfollowed_actors_are_ignored(posts, backlinks):
    bob_post = build_post(BOB, NOW - timedelta(days=30))
    posts.add_posts([build_post(ALICE, NOW, parent=bob_post)])
    assert calculate_interaction_scores(ALICE, {CAROL}, posts, backlinks, now=NOW) == {CAROL: 0.0}


def test_custom_weights(posts, backlinks):
    bob_post = build_post(BOB, NOW - timedelta(days=30))
    posts.add_posts([build_post(ALICE, NOW, parent=bob_post)])
    config = ScoringConfig(reply_weight=1.0)
    scores = calculate_interaction_scores(ALICE, {BOB}, posts, backlinks, now=NOW, config=config)
    assert scores[BOB] == pytest.approx(1.0)


# ============ Memo ============

def test_memo_reuses_until_version_changes():
    clock = FakeClock()
    memo = ScoreMemo(rate_ttl=60, clock=clock)
    calls = []

    def compute():
        calls.append(1)
        return float(len(calls))

    assert memo.rate(BOB, 1, compute) == 1.0
    assert memo.rate(BOB, 1, compute) == 1.0
    assert memo.rate(BOB, 2, compute) == 2.0
    clock.advance(61)
    assert memo.rate(BOB, 2, compute) == 3.0


def test_memoized_scores_follow_post_changes(posts, backlinks):
    memo = ScoreMemo(clock=FakeClock())
    bob_post = build_post(BOB, NOW - timedelta(days=30))
    posts.add_posts([build_post(ALICE, NOW, parent=bob_post)])
    before = calculate_interaction_scores(ALICE, {BOB}, posts, backlinks, now=NOW, memo=memo)

    posts.add_posts(build_post(BOB, NOW - timedelta(hours=h)) for h in range(10))
    after = calculate_interaction_scores(ALICE, {BOB}, posts, backlinks, now=NOW, memo=memo)
    assert after[BOB] < before[BOB]


# ============ Followed-user stats ============

def test_followed_user_stats(posts):
    posts.add_posts([build_post(BOB, NOW - timedelta(hours=h)) for h in (0, 1, 10)])
    stats = calculate_followed_user_stats(FollowSort.ACTIVE, BOB, posts, now=NOW)
    assert stats.did == BOB
    assert stats.last_post_at == NOW
    assert stats.recent_post_count == 2
    assert stats.active_score == pytest.approx(1 + 1 / 4 + 1 / 121)
    assert calculate_followed_user_stats(FollowSort.ACTIVE, CAROL, posts, now=NOW) is None


def test_sort_followed_users():
    recent = FollowedUserStats(did=BOB, last_post_at=NOW, active_score=1.0, conversational_score=0.05)
    chatty = FollowedUserStats(did=CAROL, last_post_at=NOW - timedelta(days=1), active_score=1.00001,
                               conversational_score=5.0)

    assert [s.did for s in sort_followed_users(FollowSort.CONVERSATIONAL, [recent, chatty])] == [CAROL, BOB]
    # active scores within threshold fall back to recency
    assert [s.did for s in sort_followed_users(FollowSort.ACTIVE, [chatty, recent])] == [BOB, CAROL]
    assert [s.did for s in sort_followed_users(FollowSort.RECENT, [chatty, recent])] == [BOB, CAROL]


def test_rank_followed_users_conversational(posts, backlinks):
    bob_post = build_post(BOB, NOW - timedelta(days=1))
    carol_post = build_post(CAROL, NOW)
    posts.add_posts([bob_post, carol_post, build_post(ALICE, NOW, parent=bob_post)])

    ranked = rank_followed_users(FollowSort.CONVERSATIONAL, ALICE, {BOB, CAROL}, posts, backlinks, now=NOW)
    assert [s.did for s in ranked] == [BOB, CAROL]
    assert ranked[0].conversational_score > 0
