"""
Search service: substring search across posts, comments and users.

Only published posts that are not waiting for review are searchable.
Users are included only for admin callers. Result pages are cached under
``search:*`` and dropped by every post write.
"""
import logging
import math
from datetime import datetime

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from blog_api.cache import CacheManager
from blog_api.config import settings
from blog_api.models import Comment, Post, PostTag, User, isoformat
from blog_api.services.comment_service import comment_to_dict
from blog_api.services.post_service import post_to_dict
from blog_api.services.tag_ledger import normalize_tag_list
from blog_api.services.user_service import user_to_dict

logger = logging.getLogger(__name__)

SEARCH_TYPES = ("posts", "comments", "users", "all")

# How many comments/users accompany posts when type == "all".
_ALL_SECTION_LIMIT = 5

_POST_SORTS = {
    "date": (Post.created_at.desc(), Post.id.desc()),
    "views": (Post.views.desc(), Post.id.desc()),
    "likes": (Post.likes.desc(), Post.id.desc()),
}


def _searchable_posts():
    return [Post.is_draft.is_(False), Post.needs_review.is_(False)]


def _like(value: str) -> str:
    return f"%{value.lower()}%"


def _relevance(needle: str):
    """Title hits rank above content-only hits."""
    return case((func.lower(Post.title).like(_like(needle)), 1), else_=0)


async def _search_posts(
    db: AsyncSession,
    q: str,
    tags: list[str],
    author: str,
    date_from: datetime | None,
    date_to: datetime | None,
    sort_by: str,
    page: int,
    limit: int,
) -> dict:
    filters = _searchable_posts()
    if q:
        filters.append(or_(func.lower(Post.title).like(_like(q)), func.lower(Post.content).like(_like(q))))
    if tags:
        filters.append(Post.id.in_(select(PostTag.post_id).where(PostTag.tag_name.in_(tags))))
    if author:
        filters.append(
            Post.author_id.in_(
                select(User.id).where(
                    or_(func.lower(User.name).like(_like(author)), func.lower(User.email).like(_like(author)))
                )
            )
        )
    if date_from:
        filters.append(Post.created_at >= date_from)
    if date_to:
        filters.append(Post.created_at <= date_to)

    if sort_by in _POST_SORTS:
        order = _POST_SORTS[sort_by]
    elif q:
        order = (_relevance(q).desc(), Post.created_at.desc(), Post.id.desc())
    else:
        order = _POST_SORTS["date"]

    total = (await db.execute(select(func.count()).select_from(Post).where(*filters))).scalar_one()
    rows = (
        await db.execute(
            select(Post)
            .where(*filters)
            .options(selectinload(Post.author))
            .order_by(*order)
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()
    return {
        "data": [post_to_dict(p) for p in rows],
        "total": total,
        "page": page,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


async def _search_comments(
    db: AsyncSession, q: str, date_from, date_to, page: int, limit: int, paginate: bool
) -> dict:
    filters = []
    if q:
        filters.append(func.lower(Comment.content).like(_like(q)))
    if date_from:
        filters.append(Comment.created_at >= date_from)
    if date_to:
        filters.append(Comment.created_at <= date_to)

    total = (await db.execute(select(func.count()).select_from(Comment).where(*filters))).scalar_one()
    q_rows = (
        select(Comment)
        .where(*filters)
        .options(selectinload(Comment.author), selectinload(Comment.post))
        .order_by(Comment.created_at.desc(), Comment.id.desc())
        .limit(limit)
    )
    if paginate:
        q_rows = q_rows.offset((page - 1) * limit)
    rows = (await db.execute(q_rows)).scalars().all()
    result = {"data": [comment_to_dict(c) for c in rows], "total": total}
    if paginate:
        result.update(page=page, total_pages=math.ceil(total / limit) if total else 0)
    return result


async def _search_users(db: AsyncSession, q: str, page: int, limit: int, paginate: bool) -> dict:
    filters = []
    if q:
        filters.append(
            or_(
                func.lower(User.name).like(_like(q)),
                func.lower(User.email).like(_like(q)),
                func.lower(User.bio).like(_like(q)),
            )
        )
    total = (await db.execute(select(func.count()).select_from(User).where(*filters))).scalar_one()
    q_rows = select(User).where(*filters).order_by(User.created_at.desc(), User.id.desc()).limit(limit)
    if paginate:
        q_rows = q_rows.offset((page - 1) * limit)
    rows = (await db.execute(q_rows)).scalars().all()
    result = {"data": [user_to_dict(u) for u in rows], "total": total}
    if paginate:
        result.update(page=page, total_pages=math.ceil(total / limit) if total else 0)
    return result


async def advanced_search(
    db: AsyncSession,
    cache: CacheManager,
    *,
    q: str = "",
    tags: str = "",
    author: str = "",
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    sort_by: str = "relevance",
    page: int = 1,
    limit: int = 10,
    search_type: str = "posts",
    include_users: bool = False,
) -> dict:
    """
    Search one or all content types.

    ``tags`` is a comma separated list; a post matches when it carries any
    of them. ``author`` matches author name or email by substring.
    """
    q = q.strip()
    tag_list = normalize_tag_list(tags.split(",")) if tags else []
    if search_type not in SEARCH_TYPES:
        search_type = "posts"
    cache_key = ":".join(
        [
            "search",
            search_type,
            q.lower(),
            ",".join(tag_list),
            author.strip().lower(),
            isoformat(date_from) or "",
            isoformat(date_to) or "",
            sort_by,
            str(page),
            str(limit),
            "admin" if include_users else "public",
        ]
    )

    async def produce() -> dict:
        results: dict = {}
        paginate = search_type != "all"
        section_limit = limit if paginate else _ALL_SECTION_LIMIT
        if search_type in ("posts", "all"):
            results["posts"] = await _search_posts(
                db, q, tag_list, author.strip(), date_from, date_to, sort_by, page, limit
            )
        if search_type in ("comments", "all"):
            results["comments"] = await _search_comments(
                db, q, date_from, date_to, page, section_limit, paginate
            )
        if search_type in ("users", "all") and include_users:
            results["users"] = await _search_users(db, q, page, section_limit, paginate)
        results["metadata"] = {
            "query": q,
            "filters": {
                "tags": tag_list or None,
                "author": author or None,
                "date_from": isoformat(date_from),
                "date_to": isoformat(date_to),
                "sort_by": sort_by,
                "type": search_type,
            },
        }
        return results

    return await cache.cached(cache_key, produce, ttl=settings.CACHE_TTL_SEARCH)


# ---------------------------------------------------------------------------
# Typeahead helpers
# ---------------------------------------------------------------------------

async def _tag_usage(db: AsyncSession, prefix_only: bool, needle: str, limit: int):
    pattern = f"{needle.lower()}%" if prefix_only else _like(needle)
    q = (
        select(PostTag.tag_name, func.count().label("count"))
        .join(Post, Post.id == PostTag.post_id)
        .where(*_searchable_posts(), PostTag.tag_name.like(pattern))
        .group_by(PostTag.tag_name)
        .order_by(func.count().desc(), PostTag.tag_name.asc())
        .limit(limit)
    )
    return (await db.execute(q)).all()


async def suggestions(db: AsyncSession, q: str, limit: int = 5) -> list[dict]:
    """Mixed title, tag and author suggestions; queries shorter than two characters yield nothing."""
    q = q.strip()
    if len(q) < 2:
        return []
    titles = (
        await db.execute(
            select(Post.title).where(*_searchable_posts(), func.lower(Post.title).like(_like(q))).limit(limit)
        )
    ).scalars().all()
    tags = await _tag_usage(db, prefix_only=False, needle=q, limit=limit)
    authors = (
        await db.execute(select(User.name).where(func.lower(User.name).like(_like(q))).limit(limit))
    ).scalars().all()

    found = [{"type": "title", "value": t} for t in titles]
    found += [{"type": "tag", "value": name} for name, _ in tags]
    found += [{"type": "author", "value": a} for a in authors]
    return found[:limit]


async def autocomplete(db: AsyncSession, q: str, limit: int = 8) -> list[dict]:
    q = q.strip()
    if len(q) < 2:
        return []
    title_matches = (
        await db.execute(
            select(Post.title, Post.views)
            .where(*_searchable_posts(), func.lower(Post.title).like(f"{q.lower()}%"))
            .order_by(Post.views.desc())
            .limit(3)
        )
    ).all()
    content_matches = (
        await db.execute(
            select(Post.title)
            .where(*_searchable_posts(), func.lower(Post.content).like(_like(q)))
            .order_by(Post.created_at.desc())
            .limit(3)
        )
    ).scalars().all()
    tag_matches = await _tag_usage(db, prefix_only=True, needle=q, limit=3)

    completions = [{"text": t, "type": "title", "popularity": views or 0} for t, views in title_matches]
    completions += [{"text": t, "type": "content", "popularity": 0} for t in content_matches]
    completions += [{"text": name, "type": "tag", "popularity": count} for name, count in tag_matches]

    unique: dict[str, dict] = {}
    for completion in completions:
        unique.setdefault(completion["text"], completion)
    ranked = sorted(unique.values(), key=lambda c: c["popularity"], reverse=True)
    return ranked[:limit]


async def popular_searches(db: AsyncSession, limit: int = 10) -> list[dict]:
    """Most used tags on searchable posts stand in for search analytics."""
    q = (
        select(PostTag.tag_name, func.count().label("frequency"), func.max(Post.created_at).label("last_used"))
        .join(Post, Post.id == PostTag.post_id)
        .where(*_searchable_posts())
        .group_by(PostTag.tag_name)
        .order_by(func.count().desc(), PostTag.tag_name.asc())
        .limit(limit)
    )
    return [
        {"term": name, "frequency": frequency, "last_used": isoformat(last_used)}
        for name, frequency, last_used in (await db.execute(q)).all()
    ]


async def featured_content(db: AsyncSession, cache: CacheManager, limit: int = 3) -> dict:
    async def produce() -> dict:
        sections = {
            "most_viewed": (Post.views.desc(),),
            "most_liked": (Post.likes.desc(),),
            "recent": (Post.created_at.desc(),),
        }
        featured = {}
        for name, order in sections.items():
            rows = (
                await db.execute(
                    select(Post)
                    .where(*_searchable_posts())
                    .options(selectinload(Post.author))
                    .order_by(*order, Post.id.desc())
                    .limit(limit)
                )
            ).scalars().all()
            featured[name] = [post_to_dict(p) for p in rows]
        return featured

    return await cache.cached(f"search:featured:{limit}", produce, ttl=settings.CACHE_TTL_SEARCH)
