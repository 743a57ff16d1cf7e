from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from blog_api.cache import CacheManager
from blog_api.database import get_db
from blog_api.dependencies import get_cache, get_current_user, get_realtime, require_admin
from blog_api.models import User
from blog_api.realtime import ConnectionManager
from blog_api.schemas import PostCreate, PostUpdate, SlugRequest, SlugValidateRequest
from blog_api.services import post_service

router = APIRouter(prefix="/api/v1/posts", tags=["posts"])


@router.get("")
async def list_posts(
    status: str = Query("published", pattern="^(published|draft|all)$"),
    page: int = Query(1, ge=1),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    return await post_service.list_posts(db, cache, status=status, page=page)


@router.post("", status_code=201)
async def create_post(
    data: PostCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
    realtime: ConnectionManager = Depends(get_realtime),
):
    return await post_service.create_post(db, cache, realtime, admin, data)


@router.get("/trending")
async def trending(db: AsyncSession = Depends(get_db), cache: CacheManager = Depends(get_cache)):
    return await post_service.trending_posts(db, cache)


@router.get("/search")
async def search(
    q: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    return await post_service.search_posts(db, cache, q)


@router.get("/tag/{tag}")
async def posts_by_tag(tag: str, db: AsyncSession = Depends(get_db), cache: CacheManager = Depends(get_cache)):
    return await post_service.posts_by_tag(db, cache, tag)


@router.post("/generate-slug")
async def generate_slug(
    data: SlugRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await post_service.generate_slug(db, data.title)


@router.post("/validate-slug")
async def validate_slug(
    data: SlugValidateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await post_service.validate_slug(db, data.slug, data.exclude_post_id)


@router.put("/{post_id}/regenerate-slug")
async def regenerate_slug(
    post_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    return await post_service.regenerate_slug(db, cache, user, post_id)


@router.get("/{identifier}")
async def get_post(identifier: str, db: AsyncSession = Depends(get_db), cache: CacheManager = Depends(get_cache)):
    return await post_service.get_post(db, cache, identifier)


@router.put("/{post_id}")
async def update_post(
    post_id: int,
    data: PostUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
    realtime: ConnectionManager = Depends(get_realtime),
):
    return await post_service.update_post(db, cache, realtime, admin, post_id, data)


@router.delete("/{post_id}")
async def delete_post(
    post_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    await post_service.delete_post(db, cache, admin, post_id)
    return {"message": "Post deleted"}


@router.post("/{post_id}/view")
async def increment_view(post_id: int, db: AsyncSession = Depends(get_db)):
    views = await post_service.increment_view(db, post_id)
    return {"message": "View count incremented", "views": views}


@router.put("/{post_id}/like")
async def like_post(
    post_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
    realtime: ConnectionManager = Depends(get_realtime),
):
    likes = await post_service.like_post(db, cache, realtime, user, post_id)
    return {"message": "Like added", "likes": likes}
