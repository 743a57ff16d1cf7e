from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from blog_api.cache import CacheManager
from blog_api.config import settings
from blog_api.database import after_commit, get_db
from blog_api.dependencies import PaginationParams, get_cache, require_admin
from blog_api.models import User
from blog_api.schemas import TagCreate, TagMergeRequest, TagUpdate
from blog_api.services import tag_ledger

router = APIRouter(prefix="/api/v1/tags", tags=["tags"])


@router.get("")
async def list_tags(
    pagination: PaginationParams = Depends(),
    search: str = "",
    sort_by: str = Query("usage", pattern="^(usage|recent|alphabetical)$"),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    key = f"tags:list:{pagination.page}:{pagination.limit}:{search.strip().lower()}:{sort_by}"
    return await cache.cached(
        key,
        lambda: tag_ledger.list_tags(db, pagination.page, pagination.limit, search, sort_by),
        ttl=settings.CACHE_TTL_POSTS,
    )


@router.get("/popular")
async def popular_tags(
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    tags = await cache.cached(
        f"tags:popular:{limit}", lambda: tag_ledger.popular_tags(db, limit), ttl=settings.CACHE_TTL_POSTS
    )
    return {"tags": tags}


@router.get("/suggestions")
async def tag_suggestions(
    q: str = "",
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    return {"suggestions": await tag_ledger.tag_suggestions(db, q, limit)}


@router.get("/stats")
async def tag_stats(db: AsyncSession = Depends(get_db), cache: CacheManager = Depends(get_cache)):
    return await cache.cached("tags:stats", lambda: tag_ledger.tag_stats(db), ttl=settings.CACHE_TTL_DASHBOARD)


@router.get("/{name}")
async def tag_details(
    name: str,
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await tag_ledger.tag_details(db, name, pagination.page, pagination.limit)


@router.post("", status_code=201)
async def create_tag(
    data: TagCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    tag = await tag_ledger.create_tag(db, data, created_by=admin.id)
    after_commit(db, cache.invalidate_tags)
    return tag


@router.post("/merge")
async def merge_tags(
    data: TagMergeRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    result = await tag_ledger.merge_tags(db, data.source_tags, data.target_tag)
    after_commit(db, cache.invalidate_posts)
    return result


@router.post("/recount")
async def recount_tags(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    result = await tag_ledger.recount_tags(db)
    after_commit(db, cache.invalidate_tags)
    return result


@router.put("/{name}")
async def update_tag(
    name: str,
    data: TagUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    tag = await tag_ledger.update_tag(db, name, data)
    after_commit(db, cache.invalidate_tags)
    return tag


@router.delete("/{name}")
async def delete_tag(
    name: str,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    await tag_ledger.delete_tag(db, name)
    after_commit(db, cache.invalidate_tags)
    return {"message": "Tag deleted"}
