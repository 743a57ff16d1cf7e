from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from blog_api.cache import CacheManager
from blog_api.database import get_db
from blog_api.dependencies import get_cache, get_current_user, get_realtime, require_admin
from blog_api.models import User
from blog_api.rate_limiter import comment_limit, limiter
from blog_api.realtime import ConnectionManager
from blog_api.schemas import CommentCreate, CommentUpdate
from blog_api.services import comment_service

router = APIRouter(prefix="/api/v1/comments", tags=["comments"])


@router.get("")
async def list_all_comments(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    return await comment_service.get_all_comments(db, cache)


@router.get("/{post_id}")
async def comments_for_post(post_id: int, db: AsyncSession = Depends(get_db), cache: CacheManager = Depends(get_cache)):
    return await comment_service.get_comments_for_post(db, cache, post_id)


@router.post("/{post_id}", status_code=201)
@limiter.limit(comment_limit)
async def add_comment(
    request: Request,
    post_id: int,
    data: CommentCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
    realtime: ConnectionManager = Depends(get_realtime),
):
    return await comment_service.add_comment(db, cache, realtime, user, post_id, data)


@router.put("/{comment_id}")
async def update_comment(
    comment_id: int,
    data: CommentUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    return await comment_service.update_comment(db, cache, user, comment_id, data)


@router.delete("/{comment_id}")
async def delete_comment(
    comment_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    deleted = await comment_service.delete_comment(db, cache, user, comment_id)
    return {"message": "Comment and any replies deleted successfully", "deleted": deleted}


@router.post("/{comment_id}/like")
async def like_comment(
    comment_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    likes = await comment_service.like_comment(db, cache, comment_id)
    return {"message": "Like added", "likes": likes}
