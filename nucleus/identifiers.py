"""Record identifiers, record keys (TIDs) and timestamps"""

from __future__ import annotations

import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import InvalidUriError


URI_SCHEME = "at://"

POST_COLLECTION = "app.bsky.feed.post"
LIKE_COLLECTION = "app.bsky.feed.like"
REPOST_COLLECTION = "app.bsky.feed.repost"
FOLLOW_COLLECTION = "app.bsky.graph.follow"
BLOCK_COLLECTION = "app.bsky.graph.block"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ============ Record URIs ============

@dataclass(frozen=True)
class RecordUri:
    """(actor, collection, rkey) with canonical form at://actor/collection/rkey"""
    actor: str
    collection: str
    rkey: str

    def __str__(self) -> str:
        return f"{URI_SCHEME}{self.actor}/{self.collection}/{self.rkey}"

    @classmethod
    def parse(cls, uri: str) -> Optional["RecordUri"]:
        """Parse a canonical record URI, returning None when malformed"""
        if not isinstance(uri, str) or not uri.startswith(URI_SCHEME):
            return None
        body = uri[len(URI_SCHEME):].split("#", 1)[0]
        parts = body.split("/")
        if len(parts) != 3 or not all(parts):
            return None
        return cls(actor=parts[0], collection=parts[1], rkey=parts[2])

    @classmethod
    def require(cls, uri: str) -> "RecordUri":
        parsed = cls.parse(uri)
        if parsed is None:
            raise InvalidUriError(uri)
        return parsed


def make_uri(actor: str, collection: str, rkey: str) -> str:
    return str(RecordUri(actor, collection, rkey))


def extract_actor(uri: str) -> Optional[str]:
    """Actor part of an at:// URI (record URI or bare actor URI)"""
    if not isinstance(uri, str) or not uri.startswith(URI_SCHEME):
        return None
    rest = uri[len(URI_SCHEME):]
    idx = rest.find("/")
    actor = rest if idx == -1 else rest[:idx]
    return actor or None


# ============ TIDs ============

S32_CHARS = "234567abcdefghijklmnopqrstuvwxyz"
TID_PATTERN = re.compile(r"^[234567abcdefghij][234567abcdefghijklmnopqrstuvwxyz]{12}$")

_clock_id = random.randrange(1024)
_last_timestamp = 0


def _s32encode(value: int) -> str:
    out = ""
    while value:
        out = S32_CHARS[value % 32] + out
        value //= 32
    return out


def _s32decode(value: str) -> int:
    result = 0
    for char in value:
        result = result * 32 + S32_CHARS.index(char)
    return result


def create_tid(timestamp_us: int, clock_id: int = 0) -> str:
    """Encode a microsecond timestamp and clock id as a 13-char TID"""
    return _s32encode(timestamp_us).rjust(11, "2") + _s32encode(clock_id).rjust(2, "2")


def parse_tid(tid: Optional[str]) -> Optional[tuple[int, int]]:
    """Return (timestamp_us, clock_id), or None when tid is not a valid TID"""
    if not tid or not TID_PATTERN.match(tid):
        return None
    return _s32decode(tid[:11]), _s32decode(tid[11:])


def timestamp_from_tid(tid: Optional[str]) -> Optional[int]:
    """Microseconds since epoch embedded in a TID (also used for cursors)"""
    parsed = parse_tid(tid)
    return parsed[0] if parsed else None


def datetime_from_tid(tid: Optional[str]) -> Optional[datetime]:
    timestamp = timestamp_from_tid(tid)
    if timestamp is None:
        return None
    try:
        return EPOCH + timedelta(microseconds=timestamp)
    except OverflowError:
        return None


def tid_from_datetime(moment: datetime, clock_id: int = 0) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = moment - EPOCH
    micros = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
    return create_tid(micros, clock_id)


def tid_now() -> str:
    """Fresh TID, strictly increasing within this process"""
    global _last_timestamp
    timestamp = max(time.time_ns() // 1000, _last_timestamp + 1)
    _last_timestamp = timestamp
    return create_tid(timestamp, _clock_id)


# ============ Datetimes ============

def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 createdAt value into an aware UTC datetime"""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
