from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from blog_api.cache import CacheManager
from blog_api.database import get_db
from blog_api.dependencies import get_cache, require_admin
from blog_api.models import User
from blog_api.services import dashboard_service

router = APIRouter(prefix="/api/v1/dashboard-summary", tags=["dashboard"])


@router.get("")
async def dashboard_summary(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    return await dashboard_service.get_dashboard_summary(db, cache)
