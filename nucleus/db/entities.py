"""Domain entities - records, posts, threads and push events"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from ..identifiers import RecordUri, extract_actor, make_uri, POST_COLLECTION


@dataclass(frozen=True)
class Backlink:
    """Actor `did` created record did/collection/rkey pointing at some subject"""
    did: str
    collection: str
    rkey: str

    @property
    def uri(self) -> str:
        return make_uri(self.did, self.collection, self.rkey)

    @classmethod
    def from_uri(cls, uri: str) -> "Backlink":
        parsed = RecordUri.require(uri)
        return cls(did=parsed.actor, collection=parsed.collection, rkey=parsed.rkey)


@dataclass(frozen=True)
class ReplyRef:
    root_uri: str
    parent_uri: str
    root_cid: Optional[str] = None
    parent_cid: Optional[str] = None


@dataclass
class PostRecord:
    """The app.bsky.feed.post record body"""
    text: str = ""
    created_at: str = ""
    reply: Optional[ReplyRef] = None
    embed: Optional[dict] = None
    langs: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, value: dict) -> "PostRecord":
        reply = None
        raw_reply = value.get("reply")
        if isinstance(raw_reply, dict):
            root = raw_reply.get("root") or {}
            parent = raw_reply.get("parent") or {}
            if root.get("uri") and parent.get("uri"):
                reply = ReplyRef(
                    root_uri=root["uri"],
                    parent_uri=parent["uri"],
                    root_cid=root.get("cid"),
                    parent_cid=parent.get("cid"),
                )
        embed = value.get("embed")
        return cls(
            text=value.get("text", ""),
            created_at=value.get("createdAt", ""),
            reply=reply,
            embed=embed if isinstance(embed, dict) else None,
            langs=list(value.get("langs") or []),
        )

    def to_dict(self) -> dict:
        value: dict[str, Any] = {
            "$type": POST_COLLECTION,
            "text": self.text,
            "createdAt": self.created_at,
        }
        if self.reply:
            value["reply"] = {
                "root": {"uri": self.reply.root_uri, "cid": self.reply.root_cid},
                "parent": {"uri": self.reply.parent_uri, "cid": self.reply.parent_cid},
            }
        if self.embed:
            value["embed"] = self.embed
        if self.langs:
            value["langs"] = self.langs
        return value


@dataclass
class Post:
    """A hydrated post keyed by its canonical URI"""
    uri: str
    record: PostRecord
    cid: Optional[str] = None

    @property
    def actor(self) -> str:
        return extract_actor(self.uri) or ""

    @property
    def rkey(self) -> str:
        return self.uri.rsplit("/", 1)[-1]

    @property
    def parent_uri(self) -> Optional[str]:
        return self.record.reply.parent_uri if self.record.reply else None

    @property
    def root_uri(self) -> str:
        """Thread root: reply.root.uri, or the post itself"""
        return self.record.reply.root_uri if self.record.reply else self.uri

    @property
    def quoted_uri(self) -> Optional[str]:
        embed = self.record.embed
        if not embed:
            return None
        kind = embed.get("$type", "")
        record = embed.get("record")
        if kind == "app.bsky.embed.record" and isinstance(record, dict):
            return record.get("uri")
        if kind == "app.bsky.embed.recordWithMedia" and isinstance(record, dict):
            inner = record.get("record")
            if isinstance(inner, dict):
                return inner.get("uri")
        return None

    @classmethod
    def from_record(cls, uri: str, value: dict, cid: Optional[str] = None) -> "Post":
        return cls(uri=uri, record=PostRecord.from_dict(value), cid=cid)


@dataclass
class Tombstone:
    """Reply linkage of a deleted post, kept so descendants still resolve their chain"""
    uri: str
    parent_uri: Optional[str]
    root_uri: str
    deleted_at: datetime


@dataclass
class ThreadPost:
    """A post placed inside a Thread"""
    post: Post
    viewer: str
    actor: str
    rkey: str
    parent_uri: Optional[str]
    depth: int
    newest_time: datetime
    is_blocked: bool = False
    is_muted: bool = False
    parent_deleted: bool = False

    @property
    def uri(self) -> str:
        return self.post.uri


@dataclass
class Thread:
    root_uri: str
    posts: list[ThreadPost]
    newest_time: datetime
    branch_parent_post: Optional[ThreadPost] = None


@dataclass(frozen=True)
class RecordView:
    """A record as returned by the record-fetching collaborator"""
    uri: str
    value: dict
    cid: Optional[str] = None


@dataclass
class RecordPage:
    records: list[RecordView]
    cursor: Optional[str] = None


@dataclass
class BacklinkPage:
    total: int
    records: list[Backlink]
    cursor: Optional[str] = None


@dataclass(frozen=True)
class Identity:
    """Resolved identity document (mini doc)"""
    did: str
    handle: str
    pds: str
    signing_key: str = ""


@dataclass
class CommitEvent:
    """Firehose commit: a record was created or deleted in an actor's repo"""
    operation: str
    collection: str
    actor: str
    rkey: str
    record: Optional[dict] = None
    cid: Optional[str] = None

    @property
    def uri(self) -> str:
        return make_uri(self.actor, self.collection, self.rkey)


@dataclass
class BacklinkNotification:
    """Backlink push: source_record now (or no longer) points at subject"""
    operation: str
    edge_kind: str
    source_record: str
    subject: str
