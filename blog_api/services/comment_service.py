"""
Comment service: threaded comments on posts.

Comments are stored flat with an optional ``parent_comment_id``; the reply
tree is rebuilt on every read by ``build_comment_tree``. Deleting a
comment removes its direct replies only, so deeper replies can be left
pointing at a comment that no longer exists. Those orphans are rendered
as top-level comments instead of being dropped.
"""
import logging
from functools import partial
from typing import Iterable

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from blog_api.cache import CacheManager
from blog_api.config import settings
from blog_api.database import after_commit
from blog_api.errors import NotFound, PermissionDenied, ValidationFailed
from blog_api.models import Comment, Post, User, isoformat
from blog_api.realtime import ConnectionManager
from blog_api.schemas import CommentCreate, CommentUpdate
from blog_api.services import notification_service

logger = logging.getLogger(__name__)


def build_comment_tree(comments: Iterable[dict]) -> list[dict]:
    """
    Nest a creation-ordered flat list of comment dicts by
    ``parent_comment_id``.

    Every node gets a ``replies`` list holding its direct children in input
    order. A comment whose parent is missing from the input is returned
    top-level. A parent chain that loops back on itself cannot hang off
    any root; the first member of such a loop (in input order) is cut
    from its parent and returned top-level as well.
    """
    comments = list(comments)
    nodes = {c["id"]: {**c, "replies": []} for c in comments}
    top_level: set = set()

    for comment in comments:
        node = nodes[comment["id"]]
        parent = nodes.get(comment.get("parent_comment_id"))
        if parent is None or parent is node:
            top_level.add(comment["id"])
        else:
            parent["replies"].append(node)

    reached: set = set()

    def mark(root: dict) -> None:
        stack = [root]
        while stack:
            node = stack.pop()
            if node["id"] in reached:
                continue
            reached.add(node["id"])
            stack.extend(node["replies"])

    for comment_id in top_level:
        mark(nodes[comment_id])

    for comment in comments:
        if comment["id"] in reached:
            continue
        node = nodes[comment["id"]]
        parent = nodes[comment["parent_comment_id"]]
        parent["replies"] = [reply for reply in parent["replies"] if reply is not node]
        top_level.add(comment["id"])
        mark(node)
        logger.warning("Comment %s has a cyclic parent chain; rendering it top-level", comment["id"])

    return [nodes[c["id"]] for c in comments if c["id"] in top_level]


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def comment_to_dict(comment: Comment) -> dict:
    author = comment.author
    post = comment.post
    return {
        "id": comment.id,
        "content": comment.content,
        "likes": comment.likes,
        "post_id": comment.post_id,
        "post": (
            {"id": post.id, "title": post.title, "slug": post.slug, "cover_image_url": post.cover_image_url}
            if post is not None
            else None
        ),
        "author_id": comment.author_id,
        "author": (
            {"id": author.id, "name": author.name, "profile_image_url": author.profile_image_url}
            if author is not None
            else None
        ),
        "parent_comment_id": comment.parent_comment_id,
        "created_at": isoformat(comment.created_at),
        "updated_at": isoformat(comment.updated_at),
    }


def _comments_query():
    return (
        select(Comment)
        .options(selectinload(Comment.author), selectinload(Comment.post))
        .order_by(Comment.created_at.asc(), Comment.id.asc())
    )


async def _load_comment(db: AsyncSession, comment_id: int) -> Comment:
    q = select(Comment).where(Comment.id == comment_id).options(selectinload(Comment.author))
    comment = (await db.execute(q)).scalar_one_or_none()
    if comment is None:
        raise NotFound("Comment", comment_id)
    return comment


def _ensure_can_modify(comment: Comment, user: User) -> None:
    if comment.author_id != user.id and not user.is_admin:
        raise PermissionDenied("Not authorized to modify this comment")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_comments_for_post(db: AsyncSession, cache: CacheManager, post_id: int) -> list[dict]:
    async def produce() -> list[dict]:
        if await db.get(Post, post_id) is None:
            raise NotFound("Post", post_id)
        rows = (await db.execute(_comments_query().where(Comment.post_id == post_id))).scalars().all()
        return build_comment_tree(comment_to_dict(c) for c in rows)

    return await cache.cached(f"comments:{post_id}:tree", produce, ttl=settings.CACHE_TTL_COMMENTS)


async def get_all_comments(db: AsyncSession, cache: CacheManager) -> list[dict]:
    """Admin view: every comment on every post, threaded."""

    async def produce() -> list[dict]:
        rows = (await db.execute(_comments_query())).scalars().all()
        return build_comment_tree(comment_to_dict(c) for c in rows)

    return await cache.cached("comments:all", produce, ttl=settings.CACHE_TTL_COMMENTS)


async def recent_comments(db: AsyncSession, limit: int = 5) -> list[dict]:
    q = (
        select(Comment)
        .options(selectinload(Comment.author), selectinload(Comment.post))
        .order_by(Comment.created_at.desc(), Comment.id.desc())
        .limit(limit)
    )
    return [comment_to_dict(c) for c in (await db.execute(q)).scalars().all()]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def add_comment(
    db: AsyncSession,
    cache: CacheManager,
    realtime: ConnectionManager,
    user: User,
    post_id: int,
    data: CommentCreate,
) -> dict:
    """
    Create a comment (or a reply when ``parent_comment_id`` is given).

    The parent must already exist on the same post. The post author is
    notified and readers in the post room receive ``new_comment`` once the
    transaction commits.
    """
    post = await db.get(Post, post_id)
    if post is None:
        raise NotFound("Post", post_id)

    if data.parent_comment_id is not None:
        parent = await db.get(Comment, data.parent_comment_id)
        if parent is None:
            raise NotFound("Comment", data.parent_comment_id)
        if parent.post_id != post_id:
            raise ValidationFailed(
                "Parent comment belongs to a different post",
                details={"parent_comment_id": data.parent_comment_id},
            )

    comment = Comment(
        content=data.content,
        post_id=post_id,
        author_id=user.id,
        parent_comment_id=data.parent_comment_id,
    )
    db.add(comment)
    await db.flush()
    comment.author = user
    comment.post = post

    await notification_service.notify_new_comment(db, realtime, post=post, comment=comment, commenter=user)
    after_commit(db, partial(cache.invalidate_comments, post_id))
    return comment_to_dict(comment)


async def update_comment(
    db: AsyncSession, cache: CacheManager, user: User, comment_id: int, data: CommentUpdate
) -> dict:
    comment = await _load_comment(db, comment_id)
    _ensure_can_modify(comment, user)
    comment.content = data.content
    await db.flush()
    after_commit(db, partial(cache.invalidate_comments, comment.post_id))
    return comment_to_dict(comment)


async def delete_comment(db: AsyncSession, cache: CacheManager, user: User, comment_id: int) -> int:
    """
    Delete a comment and its direct replies. Replies of those replies are
    not touched. Returns the number of rows removed.
    """
    comment = await _load_comment(db, comment_id)
    _ensure_can_modify(comment, user)
    post_id = comment.post_id

    result = await db.execute(
        delete(Comment)
        .where(or_(Comment.id == comment_id, Comment.parent_comment_id == comment_id))
        .execution_options(synchronize_session="fetch")
    )
    after_commit(db, partial(cache.invalidate_comments, post_id))
    logger.info("Comment %d deleted by user %d (%d rows)", comment_id, user.id, result.rowcount)
    return result.rowcount


async def like_comment(db: AsyncSession, cache: CacheManager, comment_id: int) -> int:
    result = await db.execute(
        update(Comment).where(Comment.id == comment_id).values(likes=Comment.likes + 1)
    )
    if not result.rowcount:
        raise NotFound("Comment", comment_id)
    likes, post_id = (
        await db.execute(select(Comment.likes, Comment.post_id).where(Comment.id == comment_id))
    ).one()
    after_commit(db, partial(cache.invalidate_comments, post_id))
    return likes
