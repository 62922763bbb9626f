"""Thread assembly: turn a flat timeline into ordered conversation threads.

Timeline posts are grouped by conversation root. Inside a group each post
hangs under its nearest ancestor that is also in the group, found by
walking the store's ancestor chain (through deleted posts and posts
outside the timeline); depth is the length of that known chain.

Groups are split at every branching point. The earliest child of a
branching point continues the current thread (keeping the full ancestor
context) and names it: the thread's `root_uri` is that child. Every later
child starts its own thread, rooted at itself, that refers back to the
branching post through `branch_parent_post`. Each post lands in exactly
one thread. A group without any branching point is a single thread
rooted at the conversation root.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass
from datetime import datetime
from typing import Collection, Iterable, Optional

from .backlinks import BacklinkIndex
from .db.entities import Post, Thread, ThreadPost
from .identifiers import EPOCH, datetime_from_tid, extract_actor, parse_datetime
from .observability import track_latency
from .posts import PostStore


@dataclass(frozen=True)
class FilterOptions:
    """
    Thread filters applied per conversation group and again per thread.

    own_posts_only: keep threads made only of the viewer's own posts
    hide_replies: drop threads that start with a reply
    replies_only: keep only threads that start with a reply
    roots_to_actors: keep threads whose first post is by one of these
        actors (or by the viewer)
    """
    own_posts_only: bool = False
    hide_replies: bool = False
    replies_only: bool = False
    roots_to_actors: Optional[frozenset[str]] = None


def post_time(post: Post) -> datetime:
    """Activity time from the record key, falling back to createdAt"""
    return (
        datetime_from_tid(post.rkey)
        or parse_datetime(post.record.created_at)
        or EPOCH
    )


def _branch_order(tp: ThreadPost) -> tuple:
    # earliest first; record key breaks equal timestamps
    return (tp.newest_time, tp.rkey, tp.uri)


def _thread_order(thread: Thread) -> tuple:
    return (thread.newest_time, thread.root_uri)


# ============ Grouping ============

def _group_by_root(
    viewer: str,
    timeline: Iterable[str],
    posts: PostStore,
    backlinks: BacklinkIndex,
    mutes: Collection[str],
) -> dict[str, list[ThreadPost]]:
    groups: dict[str, list[ThreadPost]] = {}
    seen: set[str] = set()
    for uri in timeline:
        if uri in seen:
            continue
        seen.add(uri)
        post = posts.get_by_uri(uri)
        if post is None:
            continue

        actor = post.actor
        parent_uri = post.parent_uri
        groups.setdefault(post.root_uri, []).append(ThreadPost(
            post=post,
            viewer=viewer,
            actor=actor,
            rkey=post.rkey,
            parent_uri=parent_uri,
            depth=0,
            newest_time=post_time(post),
            is_blocked=actor != viewer and backlinks.has_block_relationship(viewer, actor),
            is_muted=actor in mutes,
            parent_deleted=parent_uri is not None and posts.is_deleted(parent_uri),
        ))
    return groups


# ============ Splitting ============

def _attach(group: list[ThreadPost], posts: PostStore) -> dict[str, Optional[str]]:
    """
    Nearest in-group ancestor of every post, walking the store's ancestor
    chain through deleted and out-of-timeline posts. Sets each post's depth
    to its known chain length.
    """
    by_uri = {tp.uri: tp for tp in group}
    parents: dict[str, Optional[str]] = {}
    for tp in group:
        chain = posts.ancestor_chain(tp.uri)
        tp.depth = len(chain)
        parents[tp.uri] = next((link.uri for link in chain if link.uri in by_uri), None)
    return parents


def _split_group(root_uri: str, group: list[ThreadPost], posts: PostStore) -> list[Thread]:
    parents = _attach(group, posts)
    children: dict[str, list[ThreadPost]] = {}
    tops: list[ThreadPost] = []
    for tp in group:
        parent = parents[tp.uri]
        if parent is None:
            tops.append(tp)
        else:
            children.setdefault(parent, []).append(tp)

    for siblings in children.values():
        siblings.sort(key=_branch_order)
    tops.sort(key=_branch_order)
    branched = len(tops) > 1 or any(len(s) > 1 for s in children.values())

    threads: list[Thread] = []
    pending: list[tuple[ThreadPost, Optional[ThreadPost]]] = [(top, None) for top in reversed(tops)]
    emitted: set[str] = set()
    ordered = sorted(group, key=_branch_order)

    while True:
        if not pending:
            # posts left over only when the store holds a reply cycle
            leftover = next((tp for tp in ordered if tp.uri not in emitted), None)
            if leftover is None:
                break
            pending.append((leftover, None))

        start, branch_parent = pending.pop()
        chain: list[ThreadPost] = []
        primary_child: Optional[str] = None
        current: Optional[ThreadPost] = start
        while current is not None and current.uri not in emitted:
            emitted.add(current.uri)
            chain.append(current)
            branches = children.get(current.uri, [])
            if len(branches) > 1 and primary_child is None:
                primary_child = branches[0].uri
            # later siblings become their own threads, pushed so the
            # earliest of them is processed first
            for sibling in reversed(branches[1:]):
                pending.append((sibling, current))
            current = branches[0] if branches else None

        if not chain:
            continue
        min_depth = min(tp.depth for tp in chain)
        for tp in chain:
            tp.depth -= min_depth

        if not branched:
            thread_root = root_uri
        elif branch_parent is None and primary_child is not None:
            thread_root = primary_child
        else:
            thread_root = chain[0].uri
        threads.append(Thread(
            root_uri=thread_root,
            posts=chain,
            newest_time=max(tp.newest_time for tp in chain),
            branch_parent_post=branch_parent,
        ))

    return threads


def build_threads(
    viewer: str,
    timeline: Iterable[str],
    posts: PostStore,
    backlinks: BacklinkIndex,
    mutes: Collection[str] = (),
) -> list[Thread]:
    """
    Assemble every thread of a timeline, newest activity first.

    Args:
        viewer: Actor whose view is being built (drives block/mute flags)
        timeline: Post URIs forming the viewing timeline
        posts: Post store the URIs are resolved against
        backlinks: Index used for block relationship checks
        mutes: Actors the viewer has muted

    Returns:
        Threads sorted by newest contained activity, descending
    """
    threads: list[Thread] = []
    for root_uri, group in _group_by_root(viewer, timeline, posts, backlinks, mutes).items():
        threads.extend(_split_group(root_uri, group, posts))
    threads.sort(key=_thread_order, reverse=True)
    return threads


def build_conversation(
    viewer: str,
    root_uri: str,
    posts: PostStore,
    backlinks: BacklinkIndex,
    mutes: Collection[str] = (),
) -> list[Thread]:
    """Threads of one whole conversation, read from the store's root index"""
    return build_threads(viewer, sorted(posts.thread_members(root_uri)), posts, backlinks, mutes)


# ============ Filtering ============

def _starts_with_reply(thread: Thread) -> bool:
    return thread.posts[0].post.record.reply is not None


def filter_threads(
    threads: Iterable[Thread],
    own_actors: Collection[str],
    options: FilterOptions,
) -> list[Thread]:
    """Post-level filter: decide per emitted thread"""
    result = []
    for thread in threads:
        if not thread.posts:
            continue
        if options.hide_replies and _starts_with_reply(thread):
            continue
        if options.replies_only and not _starts_with_reply(thread):
            continue
        if options.own_posts_only and any(tp.actor not in own_actors for tp in thread.posts):
            continue
        if options.roots_to_actors is not None:
            root_actor = extract_actor(thread.root_uri)
            if root_actor and root_actor not in options.roots_to_actors and root_actor not in own_actors:
                continue
        result.append(thread)
    return result


def _group_may_survive(
    root_uri: str,
    group: list[ThreadPost],
    own_actors: Collection[str],
    options: FilterOptions,
) -> bool:
    """Group-level filter: False only when no thread of the group can pass"""
    if not group:
        return False
    if options.own_posts_only and not any(tp.actor in own_actors for tp in group):
        return False
    # only a non-reply post can start a thread that is not a reply
    if options.hide_replies and all(tp.post.record.reply is not None for tp in group):
        return False
    if options.replies_only and all(tp.post.record.reply is None for tp in group):
        return False
    if options.roots_to_actors is not None:
        # a thread is rooted at the conversation root or at one of the group's posts
        allowed = set(options.roots_to_actors) | set(own_actors)
        root_actor = extract_actor(root_uri)
        if root_actor is not None and root_actor not in allowed and not any(tp.actor in allowed for tp in group):
            return False
    return True


@track_latency("thread_build")
def build_threads_filtered(
    viewer: str,
    timeline: Iterable[str],
    posts: PostStore,
    backlinks: BacklinkIndex,
    mutes: Collection[str] = (),
    options: Optional[FilterOptions] = None,
    limit: Optional[int] = None,
    own_actors: Optional[Collection[str]] = None,
) -> list[Thread]:
    """
    Build, filter and rank threads, stopping early once `limit` is reached.

    Groups are visited newest first; once `limit` threads are held, a group
    whose newest post is older than the limit-th best thread cannot
    contribute and the walk stops.
    """
    options = options or FilterOptions()
    own = set(own_actors or ()) | {viewer}

    groups = _group_by_root(viewer, timeline, posts, backlinks, mutes)
    ordered = sorted(
        groups.items(),
        key=lambda item: max(tp.newest_time for tp in item[1]),
        reverse=True,
    )

    results: list[Thread] = []
    best: list[datetime] = []  # min-heap of the `limit` newest thread times
    for root_uri, group in ordered:
        if limit is not None and len(best) >= limit:
            if max(tp.newest_time for tp in group) < best[0]:
                break
        if not _group_may_survive(root_uri, group, own, options):
            continue
        for thread in filter_threads(_split_group(root_uri, group, posts), own, options):
            results.append(thread)
            if limit is not None:
                if len(best) < limit:
                    heapq.heappush(best, thread.newest_time)
                elif thread.newest_time > best[0]:
                    heapq.heapreplace(best, thread.newest_time)

    results.sort(key=_thread_order, reverse=True)
    return results[:limit] if limit is not None else results
