"""SQLAlchemy models for persisted cache snapshots"""

from typing import Any, Optional

from sqlalchemy import JSON, Float, Index, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


class CacheRecord(Base):
    """One persisted cache entry, key is '<prefix>%<key>'"""
    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=False)
    # NULL for rows written before insertion times were recorded
    added_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("idx_cache_entries_added_at", added_at),
    )
