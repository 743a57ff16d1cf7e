from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from blog_api.cache import CacheManager
from blog_api.database import get_db
from blog_api.dependencies import PaginationParams, get_cache, get_realtime, require_admin
from blog_api.models import User
from blog_api.realtime import ConnectionManager
from blog_api.schemas import UserAdminUpdate, UserResponse
from blog_api.services import user_service

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.get("")
async def list_users(
    pagination: PaginationParams = Depends(),
    search: str = "",
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    return await user_service.list_users(db, cache, pagination.page, pagination.limit, search)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: int, admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return await user_service.get_user(db, user_id)


@router.put("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    data: UserAdminUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
    realtime: ConnectionManager = Depends(get_realtime),
):
    return await user_service.update_user(db, cache, realtime, admin, user_id, data)


@router.delete("/{user_id}")
async def delete_user(
    user_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    await user_service.delete_user(db, cache, admin, user_id)
    return {"message": "User deleted successfully"}
