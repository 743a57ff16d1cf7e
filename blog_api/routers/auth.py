from fastapi import APIRouter, Depends, File, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from blog_api.cache import CacheManager
from blog_api.config import settings
from blog_api.database import get_db
from blog_api.dependencies import get_cache, get_current_user, get_realtime
from blog_api.models import User
from blog_api.rate_limiter import auth_limit, limiter
from blog_api.realtime import ConnectionManager
from blog_api.schemas import (
    AuthResponse,
    ForgotPasswordRequest,
    LoginRequest,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
)
from blog_api.services import image_service, user_service

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/register", status_code=201, response_model=AuthResponse)
@limiter.limit(auth_limit)
async def register(
    request: Request,
    data: RegisterRequest,
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    return await user_service.register_user(db, cache, data)


@router.post("/login", response_model=AuthResponse)
@limiter.limit(auth_limit)
async def login(request: Request, data: LoginRequest, db: AsyncSession = Depends(get_db)):
    return await user_service.login_user(db, data.email, data.password)


@router.get("/profile", response_model=UserResponse)
async def get_profile(user: User = Depends(get_current_user)):
    return user_service.user_to_dict(user)


@router.put("/profile", response_model=UserResponse)
async def update_profile(
    data: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    cache: CacheManager = Depends(get_cache),
):
    return await user_service.update_profile(db, cache, user, data)


@router.post("/forgot-password")
@limiter.limit(auth_limit)
async def forgot_password(request: Request, data: ForgotPasswordRequest, db: AsyncSession = Depends(get_db)):
    return await user_service.forgot_password(db, data.email)


@router.post("/reset-password/{token}")
@limiter.limit(auth_limit)
async def reset_password(
    request: Request,
    token: str,
    data: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    realtime: ConnectionManager = Depends(get_realtime),
):
    return await user_service.reset_password(db, realtime, token, data)


@router.post("/upload-image")
async def upload_image(
    request: Request,
    image: UploadFile = File(...),
    user: User = Depends(get_current_user),
):
    data = await image.read(settings.MAX_UPLOAD_BYTES + 1)
    result = await image_service.optimize_image(data, image.filename, image.content_type, settings)
    return {
        **result,
        "image_url": str(request.base_url).rstrip("/") + result["path"],
    }
