"""SQLAlchemy models for the POSTWATCH read store.

Defines two tables, both keyed by ``(post_id, id)`` so every read and write is
scoped to one post:
- Post: one image post; ``id`` equals ``post_id``.
- Comment: one text comment on a post.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Post(Base):
    """Image post as shown to readers.

    Attributes:
        post_id: Partition key of the post.
        id: Row id (same as post_id).
        blob_image: Image id in the blob store.
        url: Container-relative or public link to the image.
        is_approved: None until a verdict arrives, then True/False.
        like / dislike: Reaction counters maintained by the web tier.
        is_deleted: Soft-delete flag.
        created: Row creation time (UTC).
    """

    __tablename__ = "posts"
    post_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    blob_image: Mapped[str] = mapped_column(String(64))
    url: Mapped[str] = mapped_column(String(512), default="")
    is_approved: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True, default=None)
    like: Mapped[int] = mapped_column(Integer, default=0)
    dislike: Mapped[int] = mapped_column(Integer, default=0)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Comment(Base):
    """Text comment attached to a post."""

    __tablename__ = "comments"
    post_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    content: Mapped[str] = mapped_column(Text, default="")
    is_approved: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True, default=None)
    like: Mapped[int] = mapped_column(Integer, default=0)
    dislike: Mapped[int] = mapped_column(Integer, default=0)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
