"""Repository layer for the POSTWATCH read store.

Provides async engine/session setup, create-if-absent inserts, typed partial
patches and soft deletes for posts and comments. Addressing a row that does
not exist raises `DocumentNotFoundError`, which callers retry with
`retry_not_found` while the matching create is still in flight.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from core.config.config import DatabaseCfg
from core.errors import DocumentNotFoundError
from core.metrics import mark_not_found_retry
from storage.models import Base, Comment, Post

log = logging.getLogger("postwatch.storage.read_store")

R = TypeVar("R")

POSTS = "posts"
COMMENTS = "comments"


@dataclass(frozen=True)
class PostPatch:
    """Partial update of a post; None fields are left untouched."""
    is_approved: Optional[bool] = None
    url: Optional[str] = None
    is_deleted: Optional[bool] = None

    def values(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class CommentPatch:
    """Partial update of a comment; None fields are left untouched."""
    is_approved: Optional[bool] = None
    content: Optional[str] = None
    is_deleted: Optional[bool] = None

    def values(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class ReadStore:
    """Posts/Comments tables behind an async SQLAlchemy engine."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.Session = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_config(cls, cfg: DatabaseCfg) -> "ReadStore":
        return cls(create_async_engine(cfg.dsn, echo=cfg.echo))

    async def init_db(self) -> None:
        """Create database schema if it doesn't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    # ---------------- reads ----------------

    async def get_post(self, post_id: uuid.UUID) -> Optional[Post]:
        """Point read of a post; None if absent."""
        async with self.Session() as session:
            return await session.get(Post, (post_id, post_id))

    async def get_comment(self, post_id: uuid.UUID, comment_id: uuid.UUID) -> Optional[Comment]:
        """Point read of a comment; None if absent."""
        async with self.Session() as session:
            return await session.get(Comment, (post_id, comment_id))

    # ---------------- creates ----------------

    async def _insert_if_absent(self, row: Post | Comment) -> bool:
        async with self.Session() as session:
            if await session.get(type(row), (row.post_id, row.id)) is not None:
                return False
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # a concurrent create won the race; same outcome
                await session.rollback()
                return False
        return True

    async def create_post_if_absent(self, post_id: uuid.UUID, blob_image: str, url: str) -> bool:
        """Insert a pending post.

        Returns:
            True if the row was created, False if it already existed.
        """
        return await self._insert_if_absent(
            Post(post_id=post_id, id=post_id, blob_image=blob_image, url=url, is_approved=None)
        )

    async def create_comment_if_absent(self, post_id: uuid.UUID, comment_id: uuid.UUID, content: str) -> bool:
        """Insert a pending comment; False if it already existed."""
        return await self._insert_if_absent(
            Comment(post_id=post_id, id=comment_id, content=content, is_approved=None)
        )

    # ---------------- patches ----------------

    async def _patch(self, session: AsyncSession, model: type, collection: str, post_id: uuid.UUID,
                     row_id: uuid.UUID, values: Dict[str, Any]) -> None:
        if not values:
            raise ValueError("empty patch")
        res = await session.execute(
            update(model).where(model.post_id == post_id, model.id == row_id).values(**values)
        )
        if res.rowcount == 0:
            raise DocumentNotFoundError(collection, str(row_id), str(post_id))

    async def patch_post(self, post_id: uuid.UUID, patch: PostPatch) -> None:
        """Apply a partial update to a post.

        Raises:
            DocumentNotFoundError: the post does not exist (yet).
        """
        async with self.Session.begin() as session:
            await self._patch(session, Post, POSTS, post_id, post_id, patch.values())

    async def patch_comment(self, post_id: uuid.UUID, comment_id: uuid.UUID, patch: CommentPatch) -> None:
        """Apply a partial update to a comment; `DocumentNotFoundError` if absent."""
        async with self.Session.begin() as session:
            await self._patch(session, Comment, COMMENTS, post_id, comment_id, patch.values())

    async def delete_post(self, post_id: uuid.UUID) -> None:
        """Soft-delete a post (repeatable); `DocumentNotFoundError` if absent."""
        await self.patch_post(post_id, PostPatch(is_deleted=True))

    async def delete_comment(self, post_id: uuid.UUID, comment_id: uuid.UUID) -> None:
        """Soft-delete a comment (repeatable); `DocumentNotFoundError` if absent."""
        await self.patch_comment(post_id, comment_id, CommentPatch(is_deleted=True))


async def retry_not_found(
    fn: Callable[[], Awaitable[R]],
    attempts: int = 10,
    delay: float = 3.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> R:
    """Re-run `fn` while it raises `DocumentNotFoundError`, at most `attempts` times.

    The create that the patch depends on may still be queued behind it on another
    path, so the whole operation is retried after a fixed delay.

    Raises:
        DocumentNotFoundError: still missing after the last attempt.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except DocumentNotFoundError as e:
            if attempt >= attempts:
                raise
            mark_not_found_retry(e.collection)
            log.info("%s; retry %d/%d in %.1fs", e, attempt, attempts - 1, delay)
            attempt += 1
            await sleep(delay)
