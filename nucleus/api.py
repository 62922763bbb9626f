"""FastAPI endpoints for feed views and event ingestion"""

from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from .backlinks import edge_kind_for
from .db.entities import BacklinkNotification, CommitEvent, Thread, ThreadPost
from .observability import get_health_status, logger, metrics
from .scoring import FollowSort
from .session import FeedSession
from .thread import FilterOptions


# ============ Schemas ============

class ThreadPostOut(BaseModel):
    uri: str
    actor: str
    rkey: str
    cid: Optional[str]
    text: str
    parent_uri: Optional[str]
    depth: int
    newest_time: datetime
    is_blocked: bool
    is_muted: bool
    parent_deleted: bool

    @classmethod
    def from_thread_post(cls, tp: ThreadPost) -> "ThreadPostOut":
        return cls(
            uri=tp.uri,
            actor=tp.actor,
            rkey=tp.rkey,
            cid=tp.post.cid,
            text=tp.post.record.text,
            parent_uri=tp.parent_uri,
            depth=tp.depth,
            newest_time=tp.newest_time,
            is_blocked=tp.is_blocked,
            is_muted=tp.is_muted,
            parent_deleted=tp.parent_deleted,
        )


class ThreadOut(BaseModel):
    root_uri: str
    newest_time: datetime
    branch_parent_uri: Optional[str]
    posts: list[ThreadPostOut]

    @classmethod
    def from_thread(cls, thread: Thread) -> "ThreadOut":
        return cls(
            root_uri=thread.root_uri,
            newest_time=thread.newest_time,
            branch_parent_uri=thread.branch_parent_post.uri if thread.branch_parent_post else None,
            posts=[ThreadPostOut.from_thread_post(tp) for tp in thread.posts],
        )


class FollowedUserOut(BaseModel):
    did: str
    last_post_at: datetime
    active_score: float
    conversational_score: float
    recent_post_count: int

    class Config:
        from_attributes = True


class CommitIn(BaseModel):
    operation: str
    collection: str
    actor: str
    rkey: str
    record: Optional[dict] = None
    cid: Optional[str] = None


class NotificationIn(BaseModel):
    operation: str
    source: str
    source_record: str
    subject: str


class IngestOut(BaseModel):
    applied: bool


# ============ App ============

def create_app(session: FeedSession) -> FastAPI:
    """Build the HTTP surface over one feed session"""
    app = FastAPI(
        title="Nucleus Feed API",
        description="Threaded feeds and interaction ranking over backlink-indexed records",
        version="0.1.0",
    )
    app.state.session = session

    @app.on_event("startup")
    async def startup():
        await session.start()

    @app.on_event("shutdown")
    async def shutdown():
        await session.close()

    @app.get("/health")
    async def health():
        return get_health_status(session)

    @app.get("/metrics")
    async def get_metrics():
        return metrics.to_dict()

    @app.post("/metrics/reset")
    async def reset_metrics():
        metrics.reset()
        return {"status": "ok"}

    @app.get("/threads/{actor}", response_model=list[ThreadOut])
    async def threads(
        actor: str,
        limit: Optional[int] = Query(None, ge=1),
        hide_replies: bool = False,
        replies_only: bool = False,
        own_posts_only: bool = False,
        roots: Optional[list[str]] = Query(None),
        muted: Optional[list[str]] = Query(None),
    ):
        if hide_replies and replies_only:
            raise HTTPException(status_code=400, detail="hide_replies and replies_only are exclusive")
        options = FilterOptions(
            own_posts_only=own_posts_only,
            hide_replies=hide_replies,
            replies_only=replies_only,
            roots_to_actors=frozenset(roots) if roots else None,
        )
        result = session.build_threads_filtered(
            actor, muted=set(muted or ()), options=options, limit=limit
        )
        return [ThreadOut.from_thread(t) for t in result]

    @app.get("/threads/{actor}/conversation", response_model=list[ThreadOut])
    async def conversation(
        actor: str,
        root: str,
        muted: Optional[list[str]] = Query(None),
    ):
        result = session.conversation(actor, root, muted=set(muted or ()))
        if not result:
            raise HTTPException(status_code=404, detail=f"unknown conversation: {root}")
        return [ThreadOut.from_thread(t) for t in result]

    @app.get("/scores/{actor}")
    async def scores(actor: str, follows: Optional[list[str]] = Query(None)):
        return session.interaction_scores(actor, follows=follows)

    @app.get("/following/{actor}", response_model=list[FollowedUserOut])
    async def following(
        actor: str,
        sort: FollowSort = FollowSort.RECENT,
        follows: Optional[list[str]] = Query(None),
    ):
        return session.followed_user_stats(actor, sort=sort, follows=follows)

    @app.post("/events/commit", response_model=IngestOut)
    async def commit_event(event: CommitIn):
        applied = session.commits.handle(CommitEvent(**event.model_dump()))
        return IngestOut(applied=applied)

    @app.post("/events/notification", response_model=IngestOut)
    async def notification_event(event: NotificationIn):
        if edge_kind_for(event.source) is None:
            logger.info(f"rejecting notification for unknown source {event.source}")
            raise HTTPException(status_code=422, detail=f"unknown edge kind: {event.source}")
        applied = await session.notifications.handle(BacklinkNotification(
            operation=event.operation,
            edge_kind=event.source,
            source_record=event.source_record,
            subject=event.subject,
        ))
        return IngestOut(applied=applied)

    return app
