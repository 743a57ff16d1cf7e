"""
Tag ledger: denormalized per-tag usage counts derived from post tags.

Design notes
------------
- Posts own their tag arrays; ``Tag.post_count`` is a derived aggregate
  that follows them through ``apply_tag_delta``. Counts are eventually
  consistent with post writes, and ``recount_tags`` rebuilds them from
  scratch when they drift.
- Increments and decrements are single ``UPDATE`` statements
  (``post_count = post_count + 1``) rather than read-modify-write, so two
  posts touching the same tag concurrently cannot lose an update.
- Each name in a delta runs in its own SAVEPOINT. A failure for one name
  is logged and rolled back alone; its siblings still apply.
- Tags are never deleted when their count reaches zero. ``delete_tag``
  re-derives usage from the posts table instead of trusting the counter.
"""
import logging
import math
import re
from typing import Iterable

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from blog_api.errors import Conflict, NotFound, ValidationFailed
from blog_api.models import DEFAULT_TAG_COLOR, Post, PostTag, Tag, isoformat, utcnow
from blog_api.schemas import TagCreate, TagUpdate

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_NULLABLE_TAG_FIELDS = frozenset({"description"})

_TAG_SORTS = {
    "usage": (Tag.post_count.desc(), Tag.name.asc()),
    "recent": (Tag.last_used.desc(), Tag.name.asc()),
    "alphabetical": (Tag.name.asc(),),
}


def normalize_tag_name(name: str) -> str:
    """Lowercase, trimmed, whitespace runs collapsed to ``-``."""
    return _WHITESPACE_RE.sub("-", name.strip().lower())


def normalize_tag_list(names: Iterable[str]) -> list[str]:
    """Normalize *names*, dropping blanks and repeats but keeping order."""
    seen: dict[str, None] = {}
    for name in names:
        normalized = normalize_tag_name(name)
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen)


def default_display_name(name: str) -> str:
    stripped = name.strip()
    return stripped[:1].upper() + stripped[1:]


def tag_to_dict(tag: Tag) -> dict:
    return {
        "id": tag.id,
        "name": tag.name,
        "display_name": tag.display_name,
        "description": tag.description,
        "color": tag.color,
        "category": tag.category,
        "is_official": tag.is_official,
        "is_active": tag.is_active,
        "post_count": tag.post_count,
        "last_used": isoformat(tag.last_used),
        "created_at": isoformat(tag.created_at),
    }


async def get_tag(db: AsyncSession, name: str) -> Tag | None:
    result = await db.execute(select(Tag).where(Tag.name == normalize_tag_name(name)))
    return result.scalar_one_or_none()


async def count_posts_with_tag(db: AsyncSession, name: str, published_only: bool = False) -> int:
    """Live count of posts whose tag array contains *name*."""
    q = (
        select(func.count(func.distinct(PostTag.post_id)))
        .select_from(PostTag)
        .where(PostTag.tag_name == normalize_tag_name(name))
    )
    if published_only:
        q = q.join(Post, Post.id == PostTag.post_id).where(Post.is_draft.is_(False))
    return (await db.execute(q)).scalar_one()


# ---------------------------------------------------------------------------
# Delta application
# ---------------------------------------------------------------------------

async def _increment(db: AsyncSession, raw_name: str) -> None:
    name = normalize_tag_name(raw_name)
    result = await db.execute(
        update(Tag)
        .where(Tag.name == name)
        .values(post_count=Tag.post_count + 1, last_used=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        return
    db.add(
        Tag(
            name=name,
            display_name=default_display_name(raw_name),
            color=DEFAULT_TAG_COLOR,
            category="Other",
            post_count=1,
            last_used=utcnow(),
        )
    )
    await db.flush()


async def _decrement(db: AsyncSession, raw_name: str) -> None:
    name = normalize_tag_name(raw_name)
    await db.execute(
        update(Tag)
        .where(Tag.name == name)
        .values(post_count=case((Tag.post_count > 0, Tag.post_count - 1), else_=0))
        .execution_options(synchronize_session=False)
    )


async def apply_tag_delta(
    db: AsyncSession,
    added: Iterable[str],
    removed: Iterable[str],
) -> list[str]:
    """
    Increment (find-or-create) every added name and decrement every
    removed name, floored at zero.

    Returns the names whose update failed; those failures are logged and
    do not abort the remaining names.
    """
    failed: list[str] = []
    operations = [(name, _increment) for name in sorted(set(added))]
    operations += [(name, _decrement) for name in sorted(set(removed))]
    for name, operation in operations:
        try:
            async with db.begin_nested():
                await operation(db, name)
        except Exception:
            logger.warning("Tag ledger update failed for %r", name, exc_info=True)
            failed.append(name)
    if operations:
        # Counters were changed with bulk UPDATEs; reload loaded Tag instances.
        for obj in list(db.identity_map.values()):
            if isinstance(obj, Tag):
                await db.refresh(obj)
    return failed


# ---------------------------------------------------------------------------
# Administrative operations
# ---------------------------------------------------------------------------

async def delete_tag(db: AsyncSession, name: str) -> None:
    """Delete the tag record; refused while any post still references it."""
    tag = await get_tag(db, name)
    if tag is None:
        raise NotFound("Tag", name)
    in_use = await count_posts_with_tag(db, tag.name)
    if in_use:
        raise Conflict(
            f"Tag '{tag.name}' is used by {in_use} post(s) and cannot be deleted",
            details={"post_count": in_use},
        )
    await db.delete(tag)
    await db.flush()
    logger.info("Deleted tag %r", tag.name)


async def merge_tags(db: AsyncSession, source_names: list[str], target_name: str) -> dict:
    """
    Fold every source tag into *target_name*.

    Steps: rewrite post tag arrays (no duplicate target entries), recount
    the target from live posts, delete the source records. Each step is
    safe to repeat, so an interrupted merge can simply be re-run.
    """
    target = normalize_tag_name(target_name)
    sources = [name for name in normalize_tag_list(source_names) if name != target]
    if not target:
        raise ValidationFailed("Target tag name is empty")

    rows = await db.execute(
        select(Post).join(PostTag, PostTag.post_id == Post.id).where(PostTag.tag_name.in_(sources)).distinct()
    )
    posts = rows.scalars().all()
    for post in posts:
        rewritten = [target if name in sources else name for name in post.tags]
        post.set_tags(normalize_tag_list(rewritten))
    await db.flush()

    target_tag = await get_tag(db, target)
    if target_tag is None:
        target_tag = Tag(name=target, display_name=default_display_name(target_name), post_count=0)
        db.add(target_tag)
    target_tag.post_count = await count_posts_with_tag(db, target)
    target_tag.last_used = utcnow()

    await db.execute(delete(Tag).where(Tag.name.in_(sources)))
    await db.flush()
    logger.info("Merged tags %s into %r (%d posts rewritten)", sources, target, len(posts))
    return {
        "target": tag_to_dict(target_tag),
        "merged": sources,
        "updated_posts": len(posts),
    }


async def recount_tags(db: AsyncSession) -> dict:
    """Rebuild every tag's ``post_count`` from live post membership."""
    live = dict(
        (
            await db.execute(
                select(PostTag.tag_name, func.count(func.distinct(PostTag.post_id))).group_by(PostTag.tag_name)
            )
        ).all()
    )
    tags = (await db.execute(select(Tag))).scalars().all()
    corrected = 0
    for tag in tags:
        actual = live.pop(tag.name, 0)
        if tag.post_count != actual:
            tag.post_count = actual
            corrected += 1
    # Names referenced by posts but missing a ledger record.
    for name, count in live.items():
        db.add(Tag(name=name, display_name=default_display_name(name), post_count=count))
        corrected += 1
    await db.flush()
    return {"tags_checked": len(tags), "corrected": corrected}


async def create_tag(db: AsyncSession, data: TagCreate, created_by: int | None = None) -> dict:
    name = normalize_tag_name(data.name)
    if await get_tag(db, name) is not None:
        raise Conflict(f"Tag '{name}' already exists")
    tag = Tag(
        name=name,
        display_name=data.display_name or default_display_name(data.name),
        description=data.description,
        color=data.color or DEFAULT_TAG_COLOR,
        category=data.category,
        is_official=data.is_official,
        post_count=await count_posts_with_tag(db, name),
        created_by=created_by,
    )
    db.add(tag)
    await db.flush()
    return tag_to_dict(tag)


async def update_tag(db: AsyncSession, name: str, data: TagUpdate) -> dict:
    tag = await get_tag(db, name)
    if tag is None:
        raise NotFound("Tag", name)
    for field, value in data.model_dump(exclude_unset=True).items():
        if value is None and field not in _NULLABLE_TAG_FIELDS:
            continue
        setattr(tag, field, value)
    await db.flush()
    return tag_to_dict(tag)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

async def list_tags(
    db: AsyncSession,
    page: int = 1,
    limit: int = 20,
    search: str = "",
    sort_by: str = "usage",
    include_inactive: bool = False,
) -> dict:
    filters = []
    if not include_inactive:
        filters.append(Tag.is_active.is_(True))
    if search.strip():
        needle = f"%{search.strip().lower()}%"
        filters.append(Tag.name.like(needle) | func.lower(Tag.display_name).like(needle))

    total = (await db.execute(select(func.count()).select_from(Tag).where(*filters))).scalar_one()
    q = (
        select(Tag)
        .where(*filters)
        .order_by(*_TAG_SORTS.get(sort_by, _TAG_SORTS["usage"]))
        .offset((page - 1) * limit)
        .limit(limit)
    )
    tags = (await db.execute(q)).scalars().all()
    pages = math.ceil(total / limit) if total else 0
    return {
        "tags": [tag_to_dict(t) for t in tags],
        "pagination": {
            "current_page": page,
            "total_pages": pages,
            "total_tags": total,
            "has_next_page": page < pages,
            "has_prev_page": page > 1,
        },
    }


async def popular_tags(db: AsyncSession, limit: int = 10) -> list[dict]:
    q = (
        select(Tag)
        .where(Tag.is_active.is_(True), Tag.post_count > 0)
        .order_by(Tag.post_count.desc(), Tag.name.asc())
        .limit(limit)
    )
    return [tag_to_dict(t) for t in (await db.execute(q)).scalars().all()]


async def tag_suggestions(db: AsyncSession, query: str, limit: int = 10) -> list[dict]:
    needle = normalize_tag_name(query)
    if not needle:
        return []
    q = (
        select(Tag)
        .where(Tag.is_active.is_(True), Tag.name.like(f"%{needle}%"))
        .order_by(Tag.post_count.desc(), Tag.last_used.desc())
        .limit(limit)
    )
    return [
        {"name": t.name, "display_name": t.display_name, "post_count": t.post_count}
        for t in (await db.execute(q)).scalars().all()
    ]


async def related_tags(db: AsyncSession, name: str, limit: int = 10) -> list[dict]:
    """Tags that most often appear on the same published posts as *name*."""
    with_tag = (
        select(PostTag.post_id)
        .join(Post, Post.id == PostTag.post_id)
        .where(PostTag.tag_name == name, Post.is_draft.is_(False))
    )
    q = (
        select(PostTag.tag_name, func.count().label("count"))
        .where(PostTag.post_id.in_(with_tag), PostTag.tag_name != name)
        .group_by(PostTag.tag_name)
        .order_by(func.count().desc(), PostTag.tag_name.asc())
        .limit(limit)
    )
    return [{"tag": tag, "count": count} for tag, count in (await db.execute(q)).all()]


async def tag_details(db: AsyncSession, name: str, page: int = 1, limit: int = 10) -> dict:
    from blog_api.services.post_service import post_to_dict

    normalized = normalize_tag_name(name)
    tag = await get_tag(db, normalized)

    published = (
        select(Post)
        .join(PostTag, PostTag.post_id == Post.id)
        .where(PostTag.tag_name == normalized, Post.is_draft.is_(False))
    )
    stats_row = (
        await db.execute(
            select(
                func.count(Post.id),
                func.coalesce(func.sum(Post.views), 0),
                func.coalesce(func.sum(Post.likes), 0),
                func.min(Post.created_at),
                func.max(Post.created_at),
            ).where(Post.id.in_(published.with_only_columns(Post.id)))
        )
    ).one()
    total_posts, total_views, total_likes, first_used, last_used = stats_row
    if tag is None and total_posts == 0:
        raise NotFound("Tag", normalized)

    posts = (
        await db.execute(
            published.options(selectinload(Post.author))
            .order_by(Post.created_at.desc(), Post.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()
    pages = math.ceil(total_posts / limit) if total_posts else 0
    return {
        "tag": {
            **(tag_to_dict(tag) if tag else {"name": normalized}),
            "total_posts": total_posts,
            "total_views": total_views,
            "total_likes": total_likes,
            "avg_views": round(total_views / total_posts, 2) if total_posts else 0,
            "avg_likes": round(total_likes / total_posts, 2) if total_posts else 0,
            "first_used": isoformat(first_used),
            "last_used_by_post": isoformat(last_used),
            "related_tags": await related_tags(db, normalized),
        },
        "posts": [post_to_dict(p) for p in posts],
        "pagination": {
            "current_page": page,
            "total_pages": pages,
            "total_posts": total_posts,
            "has_next_page": page < pages,
            "has_prev_page": page > 1,
        },
    }


async def tag_stats(db: AsyncSession) -> dict:
    total_tags = (await db.execute(select(func.count()).select_from(Tag))).scalar_one()
    active_tags = (
        await db.execute(select(func.count()).select_from(Tag).where(Tag.is_active.is_(True)))
    ).scalar_one()
    unused_tags = (
        await db.execute(select(func.count()).select_from(Tag).where(Tag.post_count == 0))
    ).scalar_one()
    total_usages = (await db.execute(select(func.count()).select_from(PostTag))).scalar_one()
    total_posts = (await db.execute(select(func.count()).select_from(Post))).scalar_one()
    return {
        "total_tags": total_tags,
        "active_tags": active_tags,
        "unused_tags": unused_tags,
        "total_tag_usages": total_usages,
        "avg_tags_per_post": round(total_usages / total_posts, 2) if total_posts else 0,
        "top_tags": await popular_tags(db, limit=5),
    }
