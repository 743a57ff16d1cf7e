from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from blog_api.cache import CacheManager
from blog_api.database import get_db
from blog_api.dependencies import get_cache, get_optional_user
from blog_api.models import User
from blog_api.services import search_service

router = APIRouter(prefix="/api/v1/search", tags=["search"])


@router.get("")
async def advanced_search(
    q: str = "",
    tags: str = "",
    author: str = "",
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    sort_by: str = Query("relevance", pattern="^(relevance|date|views|likes)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    type: str = Query("posts", pattern="^(posts|comments|users|all)$"),
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    return await search_service.advanced_search(
        db,
        cache,
        q=q,
        tags=tags,
        author=author,
        date_from=date_from,
        date_to=date_to,
        sort_by=sort_by,
        page=page,
        limit=limit,
        search_type=type,
        include_users=bool(user and user.is_admin),
    )


@router.get("/suggestions")
async def suggestions(q: str = "", limit: int = Query(5, ge=1, le=20), db: AsyncSession = Depends(get_db)):
    return {"suggestions": await search_service.suggestions(db, q, limit)}


@router.get("/autocomplete")
async def autocomplete(q: str = "", limit: int = Query(8, ge=1, le=20), db: AsyncSession = Depends(get_db)):
    return {"query": q, "completions": await search_service.autocomplete(db, q, limit)}


@router.get("/popular")
async def popular_searches(db: AsyncSession = Depends(get_db)):
    return {"popular_searches": await search_service.popular_searches(db)}


@router.get("/featured")
async def featured(db: AsyncSession = Depends(get_db), cache: CacheManager = Depends(get_cache)):
    return await search_service.featured_content(db, cache)
