"""Backlink index: directed social edges grouped by edge-kind and subject.

Layout is edge-kind -> subject -> acting actor -> set of record keys, with
a mirror keyed by actor first so an actor's edges (and a deleted record's
edges) can be found without scanning every subject.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .db.entities import Backlink
from .identifiers import (
    BLOCK_COLLECTION,
    FOLLOW_COLLECTION,
    LIKE_COLLECTION,
    POST_COLLECTION,
    REPOST_COLLECTION,
)
from .observability import logger


# ============ Edge kinds ============

def _strong_ref_subject(record: dict) -> Optional[str]:
    subject = record.get("subject")
    if isinstance(subject, dict) and isinstance(subject.get("uri"), str):
        return subject["uri"]
    return None


def _actor_subject(record: dict) -> Optional[str]:
    subject = record.get("subject")
    return subject if isinstance(subject, str) and subject else None


def _reply_field(name: str) -> Callable[[dict], Optional[str]]:
    def extract(record: dict) -> Optional[str]:
        reply = record.get("reply")
        if not isinstance(reply, dict):
            return None
        ref = reply.get(name)
        if isinstance(ref, dict) and isinstance(ref.get("uri"), str):
            return ref["uri"]
        return None
    return extract


def _embedded_record(record: dict) -> Optional[str]:
    embed = record.get("embed")
    if not isinstance(embed, dict):
        return None
    inner = embed.get("record")
    if not isinstance(inner, dict):
        return None
    # recordWithMedia nests the strong ref one level deeper
    if isinstance(inner.get("record"), dict):
        inner = inner["record"]
    uri = inner.get("uri")
    return uri if isinstance(uri, str) else None


def _strong_ref_builder(collection: str) -> Callable[[str, Optional[str], str], dict]:
    def build(subject_uri: str, subject_cid: Optional[str], created_at: str) -> dict:
        return {
            "$type": collection,
            "subject": {"uri": subject_uri, "cid": subject_cid},
            "createdAt": created_at,
        }
    return build


@dataclass(frozen=True)
class EdgeKind:
    """
    A category of directed edge: the source collection plus the field of
    its records that carries the subject reference.
    """
    collection: str
    path: str
    extract: Callable[[dict], Optional[str]] = field(compare=False, hash=False, repr=False)
    build: Optional[Callable[[str, Optional[str], str], dict]] = field(
        default=None, compare=False, hash=False, repr=False
    )

    @property
    def source(self) -> str:
        """Wire label, e.g. 'app.bsky.feed.like:subject.uri'"""
        return f"{self.collection}:{self.path}"

    def __str__(self) -> str:
        return self.source


LIKE = EdgeKind(LIKE_COLLECTION, "subject.uri", _strong_ref_subject, _strong_ref_builder(LIKE_COLLECTION))
REPOST = EdgeKind(REPOST_COLLECTION, "subject.uri", _strong_ref_subject, _strong_ref_builder(REPOST_COLLECTION))
REPLY_PARENT = EdgeKind(POST_COLLECTION, "reply.parent.uri", _reply_field("parent"))
REPLY_ROOT = EdgeKind(POST_COLLECTION, "reply.root.uri", _reply_field("root"))
QUOTE = EdgeKind(POST_COLLECTION, "embed.record.uri", _embedded_record)
FOLLOW = EdgeKind(FOLLOW_COLLECTION, "subject", _actor_subject)
BLOCK = EdgeKind(BLOCK_COLLECTION, "subject", _actor_subject)

EDGE_KINDS: dict[str, EdgeKind] = {
    kind.source: kind
    for kind in (LIKE, REPOST, REPLY_PARENT, REPLY_ROOT, QUOTE, FOLLOW, BLOCK)
}


def edge_kind_for(source: str) -> Optional[EdgeKind]:
    """Look up a known edge kind by its wire label"""
    return EDGE_KINDS.get(source)


def edge_kinds_for_collection(collection: str) -> list[EdgeKind]:
    return [kind for kind in EDGE_KINDS.values() if kind.collection == collection]


# ============ Index ============

@dataclass(frozen=True)
class BlockRelationship:
    """Blocks between a viewer and another actor, in both directions"""
    blocking: bool = False
    blocked_by: bool = False

    @property
    def any(self) -> bool:
        return self.blocking or self.blocked_by


class BacklinkIndex:
    """
    In-memory backlink store. All operations are pure structural updates;
    adding an existing edge or removing a missing one is a no-op.
    """

    def __init__(self):
        self._links: dict[EdgeKind, dict[str, dict[str, set[str]]]] = {}
        self._by_actor: dict[str, dict[EdgeKind, dict[str, set[str]]]] = {}

    def add_backlinks(self, subject: str, edge_kind: EdgeKind, links: Iterable[Backlink]) -> int:
        """Add links pointing at subject, return how many were new"""
        added = 0
        for link in links:
            if link.collection != edge_kind.collection:
                logger.warning(
                    f"skipping backlink {link.uri}: collection does not match {edge_kind.source}"
                )
                continue
            rkeys = (
                self._links.setdefault(edge_kind, {})
                .setdefault(subject, {})
                .setdefault(link.did, set())
            )
            if link.rkey in rkeys:
                continue
            rkeys.add(link.rkey)
            (
                self._by_actor.setdefault(link.did, {})
                .setdefault(edge_kind, {})
                .setdefault(subject, set())
                .add(link.rkey)
            )
            added += 1
        return added

    def remove_backlinks(self, subject: str, edge_kind: EdgeKind, links: Iterable[Backlink]) -> int:
        """Remove links pointing at subject, return how many existed"""
        removed = 0
        for link in links:
            if self._discard(subject, edge_kind, link.did, link.rkey):
                removed += 1
        return removed

    def remove_record(self, did: str, collection: str, rkey: str) -> list[tuple[EdgeKind, str]]:
        """Drop every edge created by record did/collection/rkey"""
        removed = []
        for edge_kind, subjects in list(self._by_actor.get(did, {}).items()):
            if edge_kind.collection != collection:
                continue
            for subject, rkeys in list(subjects.items()):
                if rkey in rkeys:
                    removed.append((edge_kind, subject))
        for edge_kind, subject in removed:
            self._discard(subject, edge_kind, did, rkey)
        return removed

    def find_backlinks_by(self, subject: str, edge_kind: EdgeKind, actor: str) -> list[Backlink]:
        """All edge records from one actor pointing at subject"""
        rkeys = self._links.get(edge_kind, {}).get(subject, {}).get(actor, ())
        return [Backlink(actor, edge_kind.collection, rkey) for rkey in sorted(rkeys)]

    def has_backlink(
        self,
        subject: str,
        edge_kind: EdgeKind,
        actor: str,
        rkey: Optional[str] = None,
    ) -> bool:
        rkeys = self._links.get(edge_kind, {}).get(subject, {}).get(actor)
        if not rkeys:
            return False
        return rkey is None or rkey in rkeys

    def get_all_backlinks_for(self, subject: str, edge_kind: EdgeKind) -> list[Backlink]:
        actors = self._links.get(edge_kind, {}).get(subject, {})
        return [
            Backlink(actor, edge_kind.collection, rkey)
            for actor in sorted(actors)
            for rkey in sorted(actors[actor])
        ]

    def count(self, subject: str, edge_kind: EdgeKind) -> int:
        actors = self._links.get(edge_kind, {}).get(subject, {})
        return sum(len(rkeys) for rkeys in actors.values())

    def subjects_by(self, actor: str, edge_kind: EdgeKind) -> dict[str, list[str]]:
        """Subjects actor has edges to, with the sorted record keys of each"""
        subjects = self._by_actor.get(actor, {}).get(edge_kind, {})
        return {subject: sorted(rkeys) for subject, rkeys in subjects.items()}

    def subject_count(self) -> int:
        return sum(len(subjects) for subjects in self._links.values())

    # ============ Relationships ============

    def is_blocked_by(self, subject: str, blocker: str) -> bool:
        """True when blocker holds a block record against subject"""
        return self.has_backlink(subject, BLOCK, blocker)

    def get_block_relationship(self, viewer: str, other: str) -> BlockRelationship:
        return BlockRelationship(
            blocking=self.is_blocked_by(other, viewer),
            blocked_by=self.is_blocked_by(viewer, other),
        )

    def has_block_relationship(self, viewer: str, other: str) -> bool:
        return self.get_block_relationship(viewer, other).any

    def follows_of(self, actor: str) -> set[str]:
        return set(self._by_actor.get(actor, {}).get(FOLLOW, {}))

    # ============ Internals ============

    def _discard(self, subject: str, edge_kind: EdgeKind, actor: str, rkey: str) -> bool:
        subjects = self._links.get(edge_kind)
        if not subjects:
            return False
        actors = subjects.get(subject)
        if not actors:
            return False
        rkeys = actors.get(actor)
        if not rkeys or rkey not in rkeys:
            return False

        rkeys.discard(rkey)
        if not rkeys:
            del actors[actor]
            if not actors:
                del subjects[subject]
                if not subjects:
                    del self._links[edge_kind]

        mirror = self._by_actor.get(actor, {}).get(edge_kind, {})
        mirrored = mirror.get(subject)
        if mirrored is not None:
            mirrored.discard(rkey)
            if not mirrored:
                del mirror[subject]
                if not mirror:
                    del self._by_actor[actor][edge_kind]
                    if not self._by_actor[actor]:
                        del self._by_actor[actor]
        return True
