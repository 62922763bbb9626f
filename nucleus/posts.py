"""Post store with reply, root and timeline indices.

Posts are keyed by actor then URI. Every mutation updates the derived
indices before returning, so readers never observe a post without its
reply-index, root-index and synthetic backlink entries.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional, Union

from .backlinks import QUOTE, REPLY_PARENT, REPLY_ROOT, BacklinkIndex
from .db.entities import Backlink, Post, Tombstone
from .identifiers import POST_COLLECTION, RecordUri, extract_actor, make_uri, utcnow


DEFAULT_TOMBSTONE_MAX = 10000
DEFAULT_TOMBSTONE_TTL = timedelta(days=30)

ChainLink = Union[Post, Tombstone]


class PostStore:
    """
    Process-wide post cache for one session.

    Args:
        backlinks: Index receiving the synthetic reply/quote edges
        tombstone_max: Deleted posts remembered for chain traversal
        tombstone_ttl: Age after which a tombstone may be pruned
        clock: Source of "now" for tombstone timestamps
    """

    def __init__(
        self,
        backlinks: BacklinkIndex,
        tombstone_max: int = DEFAULT_TOMBSTONE_MAX,
        tombstone_ttl: timedelta = DEFAULT_TOMBSTONE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backlinks = backlinks
        self._tombstone_max = tombstone_max
        self._tombstone_ttl = tombstone_ttl
        self._clock = clock

        self._posts: dict[str, dict[str, Post]] = {}
        # actor -> URIs of posts replying to that actor
        self._reply_index: dict[str, set[str]] = {}
        # thread root URI -> member URIs
        self._root_index: dict[str, set[str]] = {}
        self._tombstones: OrderedDict[str, Tombstone] = OrderedDict()
        self._timelines: dict[str, set[str]] = {}
        self._versions: dict[str, int] = {}

    # ============ Mutations ============

    def add_posts(self, posts: Iterable[Post]) -> int:
        """Insert or replace posts, return how many were inserted or changed"""
        changed = 0
        for post in posts:
            parsed = RecordUri.require(post.uri)
            actor_posts = self._posts.setdefault(parsed.actor, {})
            existing = actor_posts.get(post.uri)
            if existing is not None:
                if existing.record == post.record and existing.cid == post.cid:
                    continue
                self._unlink(existing)

            actor_posts[post.uri] = post
            self._tombstones.pop(post.uri, None)
            self._link(post, Backlink(parsed.actor, parsed.collection, parsed.rkey))
            self._bump(parsed.actor)
            changed += 1
        return changed

    def delete_post(self, uri: str) -> Optional[Tombstone]:
        """Remove a post, keeping its reply linkage as a tombstone"""
        parsed = RecordUri.require(uri)
        actor_posts = self._posts.get(parsed.actor)
        post = actor_posts.pop(uri, None) if actor_posts else None
        if post is None:
            return None
        if not actor_posts:
            del self._posts[parsed.actor]

        self._unlink(post)
        tombstone = Tombstone(
            uri=uri,
            parent_uri=post.parent_uri,
            root_uri=post.root_uri,
            deleted_at=self._clock(),
        )
        self._tombstones[uri] = tombstone
        self._tombstones.move_to_end(uri)
        while len(self._tombstones) > self._tombstone_max:
            self._tombstones.popitem(last=False)
        self._bump(parsed.actor)
        return tombstone

    def add_timeline(self, actor: str, uris: Iterable[str]) -> int:
        """
        Add posts and their known ancestors to actor's viewing timeline.

        Parents may not be in the timeline yet, so the whole known chain
        is added. Unknown URIs are ignored.
        """
        timeline = self._timelines.setdefault(actor, set())
        before = len(timeline)
        for uri in uris:
            post = self.get_by_uri(uri)
            if post is None:
                continue
            timeline.add(uri)
            for link in self.ancestor_chain(uri):
                if isinstance(link, Post):
                    timeline.add(link.uri)
        return len(timeline) - before

    def prune_tombstones(self, now: Optional[datetime] = None) -> int:
        """Drop tombstones older than the configured TTL"""
        now = now or self._clock()
        cutoff = now - self._tombstone_ttl
        pruned = 0
        # kept in deletion order, oldest first
        while self._tombstones:
            uri, tombstone = next(iter(self._tombstones.items()))
            if tombstone.deleted_at >= cutoff:
                break
            del self._tombstones[uri]
            pruned += 1
        return pruned

    # ============ Queries ============

    def get_post(self, actor: str, rkey: str, collection: str = POST_COLLECTION) -> Optional[Post]:
        return self._posts.get(actor, {}).get(make_uri(actor, collection, rkey))

    def get_by_uri(self, uri: str) -> Optional[Post]:
        actor = extract_actor(uri)
        if actor is None:
            return None
        return self._posts.get(actor, {}).get(uri)

    def posts_of(self, actor: str) -> Mapping[str, Post]:
        return MappingProxyType(self._posts.get(actor, {}))

    def tombstone(self, uri: str) -> Optional[Tombstone]:
        return self._tombstones.get(uri)

    def is_deleted(self, uri: str) -> bool:
        return uri in self._tombstones

    def resolve(self, uri: str) -> Optional[ChainLink]:
        """The post, its tombstone if deleted, or None when unknown"""
        return self.get_by_uri(uri) or self._tombstones.get(uri)

    def resolve_parent(self, uri: str) -> Optional[ChainLink]:
        link = self.resolve(uri)
        if link is None or link.parent_uri is None:
            return None
        return self.resolve(link.parent_uri)

    def ancestor_chain(self, uri: str, max_depth: Optional[int] = None) -> list[ChainLink]:
        """
        Known ancestors of uri, nearest first.

        Deleted ancestors appear as tombstones; the walk stops at the first
        unknown ancestor.
        """
        chain: list[ChainLink] = []
        seen = {uri}
        link = self.resolve(uri)
        while link is not None and link.parent_uri and link.parent_uri not in seen:
            if max_depth is not None and len(chain) >= max_depth:
                break
            seen.add(link.parent_uri)
            link = self.resolve(link.parent_uri)
            if link is not None:
                chain.append(link)
        return chain

    def replies_to(self, actor: str) -> set[str]:
        """URIs of known posts replying to actor"""
        return set(self._reply_index.get(actor, ()))

    @property
    def reply_index(self) -> Mapping[str, set[str]]:
        return MappingProxyType(self._reply_index)

    def thread_members(self, root_uri: str) -> set[str]:
        return set(self._root_index.get(root_uri, ()))

    def timeline(self, actor: str) -> set[str]:
        return set(self._timelines.get(actor, ()))

    def version(self, actor: str) -> int:
        """Monotonic counter bumped on every mutation of actor's posts"""
        return self._versions.get(actor, 0)

    def actors(self) -> list[str]:
        return list(self._posts)

    def actor_count(self) -> int:
        return len(self._posts)

    def post_count(self, actor: Optional[str] = None) -> int:
        if actor is not None:
            return len(self._posts.get(actor, {}))
        return sum(len(p) for p in self._posts.values())

    def tombstone_count(self) -> int:
        return len(self._tombstones)

    # ============ Internals ============

    def _link(self, post: Post, link: Backlink) -> None:
        self._root_index.setdefault(post.root_uri, set()).add(post.uri)

        if post.record.reply:
            self.backlinks.add_backlinks(post.record.reply.parent_uri, REPLY_PARENT, [link])
            self.backlinks.add_backlinks(post.record.reply.root_uri, REPLY_ROOT, [link])
            parent_actor = extract_actor(post.record.reply.parent_uri)
            if parent_actor:
                self._reply_index.setdefault(parent_actor, set()).add(post.uri)

        quoted = post.quoted_uri
        if quoted:
            self.backlinks.add_backlinks(quoted, QUOTE, [link])

    def _unlink(self, post: Post) -> None:
        parsed = RecordUri.require(post.uri)
        link = Backlink(parsed.actor, parsed.collection, parsed.rkey)

        members = self._root_index.get(post.root_uri)
        if members is not None:
            members.discard(post.uri)
            if not members:
                del self._root_index[post.root_uri]

        if post.record.reply:
            self.backlinks.remove_backlinks(post.record.reply.parent_uri, REPLY_PARENT, [link])
            self.backlinks.remove_backlinks(post.record.reply.root_uri, REPLY_ROOT, [link])
            parent_actor = extract_actor(post.record.reply.parent_uri)
            replies = self._reply_index.get(parent_actor) if parent_actor else None
            if replies is not None:
                replies.discard(post.uri)
                if not replies:
                    del self._reply_index[parent_actor]

        quoted = post.quoted_uri
        if quoted:
            self.backlinks.remove_backlinks(quoted, QUOTE, [link])

    def _bump(self, actor: str) -> None:
        self._versions[actor] = self._versions.get(actor, 0) + 1
