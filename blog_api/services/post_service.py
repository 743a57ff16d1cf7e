"""
Post service: business logic for the Post aggregate.

Design notes
------------
- The post owns its tag array. Every write computes the set difference
  between the previous and the new (normalized) tags and hands it to the
  tag ledger, so ``Tag.post_count`` follows post membership.
- Slugs are derived from the title and made unique with a bounded
  ``-1``, ``-2``, … increment loop. The loop is only a pre-check; the
  unique constraint on ``posts.slug`` decides races, and an
  ``IntegrityError`` at flush time is reported as a conflict.
- All list/detail reads go through the cache-aside helper. Any post write
  invalidates every post-derived key family once the transaction commits.
- Service functions flush but do not commit; the transaction boundary
  is owned by the ``get_db`` dependency in the router layer.
"""
import logging
import math
import re
from functools import partial

from sqlalchemy import case, func, or_, select, update
from sqlalchemy import delete as sql_delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from blog_api.cache import CacheManager
from blog_api.config import settings
from blog_api.database import after_commit
from blog_api.errors import Conflict, NotFound, PermissionDenied
from blog_api.models import Comment, Post, PostTag, User, isoformat
from blog_api.realtime import ConnectionManager
from blog_api.schemas import PostCreate, PostUpdate
from blog_api.services import notification_service
from blog_api.services.tag_ledger import apply_tag_delta, normalize_tag_list, normalize_tag_name

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Slugs
# ---------------------------------------------------------------------------

_SLUG_INVALID_RE = re.compile(r"[^a-z0-9]+")
_SLUG_FORMAT_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

POST_STATUSES = ("published", "draft", "all")
_NULLABLE_FIELDS = frozenset({"cover_image_url"})


def slugify(title: str) -> str:
    """Return a URL-safe, lowercase slug derived from *title*."""
    slug = _SLUG_INVALID_RE.sub("-", title.lower()).strip("-")
    return slug or "post"


async def _slug_taken(db: AsyncSession, slug: str, exclude_post_id: int | None) -> bool:
    q = select(Post.id).where(Post.slug == slug)
    if exclude_post_id is not None:
        q = q.where(Post.id != exclude_post_id)
    return (await db.execute(q.limit(1))).first() is not None


async def unique_slug(db: AsyncSession, base: str, exclude_post_id: int | None = None) -> str:
    """
    Return *base* or the first free ``base-N``.

    Raises ``Conflict`` after ``settings.SLUG_MAX_ATTEMPTS`` candidates.
    """
    candidate = base
    for attempt in range(1, settings.SLUG_MAX_ATTEMPTS + 1):
        if not await _slug_taken(db, candidate, exclude_post_id):
            return candidate
        candidate = f"{base}-{attempt}"
    logger.error("No free slug for %r after %d attempts", base, settings.SLUG_MAX_ATTEMPTS)
    raise Conflict(
        f"Could not generate a unique slug for '{base}'",
        details={"attempts": settings.SLUG_MAX_ATTEMPTS},
    )


async def _flush_post(db: AsyncSession, post: Post) -> None:
    try:
        await db.flush()
    except IntegrityError as exc:
        logger.info("Slug %r lost a uniqueness race: %s", post.slug, exc.orig)
        raise Conflict(f"Slug '{post.slug}' is already in use") from exc


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _serialize_author(author: User | None) -> dict | None:
    if author is None:
        return None
    return {
        "id": author.id,
        "name": author.name,
        "profile_image_url": author.profile_image_url,
    }


def post_to_dict(post: Post) -> dict:
    return {
        "id": post.id,
        "title": post.title,
        "slug": post.slug,
        "content": post.content,
        "cover_image_url": post.cover_image_url,
        "tags": post.tags,
        "is_draft": post.is_draft,
        "views": post.views,
        "likes": post.likes,
        "generated_by_ai": post.generated_by_ai,
        "needs_review": post.needs_review,
        "author_id": post.author_id,
        "author": _serialize_author(post.author),
        "created_at": isoformat(post.created_at),
        "updated_at": isoformat(post.updated_at),
    }


def _with_author(q):
    return q.options(selectinload(Post.author))


async def load_post(db: AsyncSession, post_id: int) -> Post:
    post = (await db.execute(_with_author(select(Post).where(Post.id == post_id)))).scalar_one_or_none()
    if post is None:
        raise NotFound("Post", post_id)
    return post


def _ensure_can_modify(post: Post, user: User) -> None:
    if post.author_id != user.id and not user.is_admin:
        raise PermissionDenied("Not authorized to modify this post")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def list_posts(
    db: AsyncSession,
    cache: CacheManager,
    status: str = "published",
    page: int = 1,
    limit: int | None = None,
) -> dict:
    """
    Return one page of posts for *status* together with the per-status
    tab counts (``all``, ``published``, ``draft``).
    """
    if status not in POST_STATUSES:
        status = "published"
    limit = limit or settings.POSTS_PAGE_SIZE
    cache_key = f"posts:list:{status}:{page}:{limit}"

    async def produce() -> dict:
        filters = []
        if status == "published":
            filters.append(Post.is_draft.is_(False))
        elif status == "draft":
            filters.append(Post.is_draft.is_(True))

        counts_row = (
            await db.execute(
                select(
                    func.count(Post.id),
                    func.coalesce(func.sum(case((Post.is_draft.is_(False), 1), else_=0)), 0),
                )
            )
        ).one()
        all_count, published_count = counts_row
        total = (await db.execute(select(func.count()).select_from(Post).where(*filters))).scalar_one()

        q = _with_author(
            select(Post)
            .where(*filters)
            .order_by(func.coalesce(Post.updated_at, Post.created_at).desc(), Post.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        posts = (await db.execute(q)).scalars().all()
        return {
            "posts": [post_to_dict(p) for p in posts],
            "page": page,
            "total_pages": math.ceil(total / limit) if total else 0,
            "total_count": total,
            "counts": {
                "all": all_count,
                "published": published_count,
                "draft": all_count - published_count,
            },
        }

    return await cache.cached(cache_key, produce, ttl=settings.CACHE_TTL_POSTS)


async def get_post(db: AsyncSession, cache: CacheManager, identifier: str) -> dict:
    """Look a post up by slug, falling back to its numeric id."""

    async def produce() -> dict:
        q = _with_author(select(Post).where(Post.slug == identifier))
        post = (await db.execute(q)).scalar_one_or_none()
        if post is None and identifier.isdigit():
            q = _with_author(select(Post).where(Post.id == int(identifier)))
            post = (await db.execute(q)).scalar_one_or_none()
        if post is None:
            raise NotFound("Post", identifier)
        return post_to_dict(post)

    return await cache.cached(f"post:{identifier}", produce, ttl=settings.CACHE_TTL_POSTS)


async def posts_by_tag(db: AsyncSession, cache: CacheManager, tag: str) -> list[dict]:
    name = normalize_tag_name(tag)

    async def produce() -> list[dict]:
        q = _with_author(
            select(Post)
            .join(PostTag, PostTag.post_id == Post.id)
            .where(PostTag.tag_name == name, Post.is_draft.is_(False))
            .order_by(Post.created_at.desc(), Post.id.desc())
        )
        return [post_to_dict(p) for p in (await db.execute(q)).scalars().all()]

    return await cache.cached(f"posts:tag:{name}:", produce, ttl=settings.CACHE_TTL_POSTS)


async def trending_posts(db: AsyncSession, cache: CacheManager, limit: int = 5) -> list[dict]:
    async def produce() -> list[dict]:
        q = _with_author(
            select(Post)
            .where(Post.is_draft.is_(False))
            .order_by(Post.views.desc(), Post.likes.desc(), Post.id.desc())
            .limit(limit)
        )
        return [post_to_dict(p) for p in (await db.execute(q)).scalars().all()]

    return await cache.cached("top-posts", produce, ttl=settings.CACHE_TTL_TRENDING)


async def search_posts(db: AsyncSession, cache: CacheManager, query: str) -> list[dict]:
    """Case-insensitive substring match on title or content of published posts."""
    needle = query.strip().lower()
    if not needle:
        return []

    async def produce() -> list[dict]:
        pattern = f"%{needle}%"
        q = _with_author(
            select(Post)
            .where(
                Post.is_draft.is_(False),
                or_(func.lower(Post.title).like(pattern), func.lower(Post.content).like(pattern)),
            )
            .order_by(Post.created_at.desc(), Post.id.desc())
        )
        return [post_to_dict(p) for p in (await db.execute(q)).scalars().all()]

    return await cache.cached(f"search:posts:{needle}", produce, ttl=settings.CACHE_TTL_SEARCH)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def create_post(
    db: AsyncSession,
    cache: CacheManager,
    realtime: ConnectionManager,
    author: User,
    data: PostCreate,
) -> dict:
    """Create a post, reserve its slug and count its tags."""
    tags = normalize_tag_list(data.tags)
    post = Post(
        title=data.title,
        slug=await unique_slug(db, slugify(data.title)),
        content=data.content,
        cover_image_url=data.cover_image_url,
        is_draft=data.is_draft,
        generated_by_ai=data.generated_by_ai,
        needs_review=data.generated_by_ai,
        author_id=author.id,
    )
    post.set_tags(tags)
    db.add(post)
    await _flush_post(db, post)
    post.author = author

    await apply_tag_delta(db, added=tags, removed=())
    if not post.is_draft:
        await notification_service.notify_post_published(db, realtime, post=post)
    if post.needs_review:
        await notification_service.notify_admins(
            db,
            realtime,
            title="Post Needs Review",
            message=f'AI-generated post "{post.title}" is awaiting review',
            metadata={"post_id": post.id, "post_slug": post.slug},
        )

    after_commit(db, cache.invalidate_posts)
    logger.info("Post %d created by user %d (slug=%r)", post.id, author.id, post.slug)
    return post_to_dict(post)


async def update_post(
    db: AsyncSession,
    cache: CacheManager,
    realtime: ConnectionManager,
    user: User,
    post_id: int,
    data: PostUpdate,
) -> dict:
    """
    Partially update a post.

    The slug is recomputed only when the title actually changes; the tag
    ledger only sees the names that were added or removed.
    """
    post = await load_post(db, post_id)
    _ensure_can_modify(post, user)
    was_draft = post.is_draft
    previous_tags = set(post.tags)

    update_data = data.model_dump(exclude_unset=True)
    new_tags = update_data.pop("tags", None)
    title = update_data.pop("title", None)

    for field, value in update_data.items():
        if value is None and field not in _NULLABLE_FIELDS:
            continue
        setattr(post, field, value)

    if title is not None and title != post.title:
        post.title = title
        post.slug = await unique_slug(db, slugify(title), exclude_post_id=post.id)

    added: set[str] = set()
    removed: set[str] = set()
    if new_tags is not None:
        normalized = normalize_tag_list(new_tags)
        added = set(normalized) - previous_tags
        removed = previous_tags - set(normalized)
        post.set_tags(normalized)

    await _flush_post(db, post)
    if added or removed:
        await apply_tag_delta(db, added=added, removed=removed)
    if was_draft and not post.is_draft:
        await notification_service.notify_post_published(db, realtime, post=post)

    after_commit(db, cache.invalidate_posts)
    return post_to_dict(post)


async def delete_post(db: AsyncSession, cache: CacheManager, user: User, post_id: int) -> None:
    post = await load_post(db, post_id)
    _ensure_can_modify(post, user)
    removed = post.tags

    await db.execute(sql_delete(Comment).where(Comment.post_id == post.id))
    await db.delete(post)
    await db.flush()
    await apply_tag_delta(db, added=(), removed=removed)

    after_commit(db, cache.invalidate_posts)
    after_commit(db, partial(cache.invalidate_comments, post_id))
    logger.info("Post %d deleted by user %d", post_id, user.id)


async def increment_view(db: AsyncSession, post_id: int) -> int:
    """Atomically bump the view counter; cached reads catch up on expiry."""
    result = await db.execute(update(Post).where(Post.id == post_id).values(views=Post.views + 1))
    if not result.rowcount:
        raise NotFound("Post", post_id)
    return (await db.execute(select(Post.views).where(Post.id == post_id))).scalar_one()


async def like_post(
    db: AsyncSession,
    cache: CacheManager,
    realtime: ConnectionManager,
    user: User,
    post_id: int,
) -> int:
    result = await db.execute(update(Post).where(Post.id == post_id).values(likes=Post.likes + 1))
    if not result.rowcount:
        raise NotFound("Post", post_id)
    likes = (await db.execute(select(Post.likes).where(Post.id == post_id))).scalar_one()
    post = await load_post(db, post_id)
    await notification_service.notify_post_like(db, realtime, post=post, liker=user)
    after_commit(db, partial(cache.delete, "top-posts"))
    return likes


# ---------------------------------------------------------------------------
# Slug tools
# ---------------------------------------------------------------------------

async def generate_slug(db: AsyncSession, title: str, exclude_post_id: int | None = None) -> dict:
    base = slugify(title)
    slug = await unique_slug(db, base, exclude_post_id=exclude_post_id)
    return {"slug": slug, "base_slug": base, "is_modified": slug != base}


async def validate_slug(db: AsyncSession, slug: str, exclude_post_id: int | None = None) -> dict:
    well_formed = bool(_SLUG_FORMAT_RE.match(slug))
    available = well_formed and not await _slug_taken(db, slug, exclude_post_id)
    result = {"slug": slug, "is_valid": well_formed, "is_available": available}
    if well_formed and not available:
        result["suggestion"] = await unique_slug(db, slug, exclude_post_id=exclude_post_id)
    return result


async def regenerate_slug(db: AsyncSession, cache: CacheManager, user: User, post_id: int) -> dict:
    post = await load_post(db, post_id)
    _ensure_can_modify(post, user)
    old_slug = post.slug
    post.slug = await unique_slug(db, slugify(post.title), exclude_post_id=post.id)
    await _flush_post(db, post)
    after_commit(db, cache.invalidate_posts)
    return {"old_slug": old_slug, "new_slug": post.slug, "post": post_to_dict(post)}
