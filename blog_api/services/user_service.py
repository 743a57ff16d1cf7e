"""
User service: accounts, authentication and admin user management.

Passwords are stored as bcrypt hashes. Password-reset tokens are random
hex strings handed to the user once; only their SHA-256 digest is kept,
together with an expiry.
"""
import logging
import math
from datetime import timedelta

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from blog_api.cache import CacheManager
from blog_api.config import settings
from blog_api.database import after_commit
from blog_api.errors import AuthenticationFailed, Conflict, NotFound, ValidationFailed
from blog_api.models import ROLE_ADMIN, ROLE_MEMBER, Comment, Notification, Post, User, as_utc, isoformat, utcnow
from blog_api.realtime import ConnectionManager
from blog_api.schemas import ProfileUpdate, RegisterRequest, ResetPasswordRequest, UserAdminUpdate
from blog_api.security import (
    create_access_token,
    hash_password,
    hash_reset_token,
    new_reset_token,
    verify_password,
)
from blog_api.services import notification_service
from blog_api.services.tag_ledger import apply_tag_delta

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def user_to_dict(user: User) -> dict:
    """Public view of a user; never includes secrets."""
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "profile_image_url": user.profile_image_url,
        "bio": user.bio,
        "role": user.role,
        "created_at": isoformat(user.created_at),
    }


def _with_token(user: User) -> dict:
    return {**user_to_dict(user), "token": create_access_token(user.id)}


async def _find_by_email(db: AsyncSession, email: str) -> User | None:
    return (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()


async def _load_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User", user_id)
    return user


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def register_user(db: AsyncSession, cache: CacheManager, data: RegisterRequest) -> dict:
    """
    Create an account and return it with a bearer token.

    The ``Admin`` role is granted only when ``admin_access_token`` matches
    the configured token.
    """
    if await _find_by_email(db, data.email) is not None:
        raise Conflict("User already exists")

    role = ROLE_MEMBER
    if data.admin_access_token and data.admin_access_token == settings.ADMIN_ACCESS_TOKEN:
        role = ROLE_ADMIN

    user = User(
        name=data.name,
        email=data.email,
        password_hash=hash_password(data.password),
        profile_image_url=data.profile_image_url,
        bio=data.bio,
        role=role,
    )
    db.add(user)
    await db.flush()
    after_commit(db, cache.invalidate_users)
    logger.info("Registered user %d (%s)", user.id, role)
    return _with_token(user)


async def login_user(db: AsyncSession, email: str, password: str) -> dict:
    user = await _find_by_email(db, email)
    if user is None or not verify_password(password, user.password_hash):
        raise AuthenticationFailed("Invalid email or password")
    return _with_token(user)


async def update_profile(db: AsyncSession, cache: CacheManager, user: User, data: ProfileUpdate) -> dict:
    changes = data.model_dump(exclude_unset=True)
    if changes.get("name"):
        user.name = changes["name"]
    if changes.get("bio") is not None:
        user.bio = changes["bio"]
    if "profile_image_url" in changes:
        user.profile_image_url = changes["profile_image_url"]
    await db.flush()
    after_commit(db, cache.invalidate_users)
    return user_to_dict(user)


async def forgot_password(db: AsyncSession, email: str) -> dict:
    """
    Issue a reset token valid for ``PASSWORD_RESET_EXPIRY_MINUTES``.

    Email delivery is out of scope: the reset URL is logged, and returned
    in the response only in development.
    """
    user = await _find_by_email(db, email)
    if user is None:
        raise NotFound("User with this email")

    raw, digest = new_reset_token()
    user.reset_password_token = digest
    user.reset_password_expires = utcnow() + timedelta(minutes=settings.PASSWORD_RESET_EXPIRY_MINUTES)
    await db.flush()

    reset_url = f"{settings.FRONTEND_URL}/reset-password?token={raw}"
    logger.info("Password reset requested for user %d", user.id)
    response = {"message": "Password reset link sent to your email"}
    if settings.is_development:
        response["reset_url"] = reset_url
    return response


async def reset_password(
    db: AsyncSession, realtime: ConnectionManager, token: str, data: ResetPasswordRequest
) -> dict:
    user = (
        await db.execute(select(User).where(User.reset_password_token == hash_reset_token(token)))
    ).scalar_one_or_none()
    expires = as_utc(user.reset_password_expires) if user else None
    if user is None or expires is None or expires <= utcnow():
        raise ValidationFailed("Invalid or expired reset token")

    user.password_hash = hash_password(data.password)
    user.reset_password_token = None
    user.reset_password_expires = None
    await db.flush()
    await notification_service.notify_system(
        db,
        realtime,
        user_id=user.id,
        title="Password Changed",
        message="Your password was reset. Contact an administrator if this was not you.",
    )
    return {"message": "Password successfully reset"}


# ---------------------------------------------------------------------------
# Admin user management
# ---------------------------------------------------------------------------

async def list_users(
    db: AsyncSession,
    cache: CacheManager,
    page: int = 1,
    limit: int = 20,
    search: str = "",
) -> dict:
    needle = search.strip().lower()

    async def produce() -> dict:
        filters = []
        if needle:
            pattern = f"%{needle}%"
            filters.append(or_(func.lower(User.name).like(pattern), User.email.like(pattern)))
        total = (await db.execute(select(func.count()).select_from(User).where(*filters))).scalar_one()
        q = (
            select(User)
            .where(*filters)
            .order_by(User.created_at.desc(), User.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        users = (await db.execute(q)).scalars().all()
        return {
            "users": [user_to_dict(u) for u in users],
            "total": total,
            "page": page,
            "page_size": limit,
            "pages": math.ceil(total / limit) if total else 0,
        }

    return await cache.cached(f"users:list:{page}:{limit}:{needle}", produce, ttl=settings.CACHE_TTL_USERS)


async def get_user(db: AsyncSession, user_id: int) -> dict:
    return user_to_dict(await _load_user(db, user_id))


async def update_user(
    db: AsyncSession,
    cache: CacheManager,
    realtime: ConnectionManager,
    admin: User,
    user_id: int,
    data: UserAdminUpdate,
) -> dict:
    user = await _load_user(db, user_id)
    changes = data.model_dump(exclude_unset=True)

    email = changes.get("email")
    if email and email != user.email and await _find_by_email(db, email) is not None:
        raise Conflict("Email already exists")

    changed_fields = []
    for field, value in changes.items():
        if value is None and field != "profile_image_url":
            continue
        if getattr(user, field) != value:
            setattr(user, field, value)
            changed_fields.append(field)
    await db.flush()

    if changed_fields and user.id != admin.id:
        await notification_service.notify_admin_action(
            db,
            realtime,
            user_id=user.id,
            admin=admin,
            action="updated your account",
            details=f"Changed: {', '.join(changed_fields)}",
        )
    after_commit(db, cache.invalidate_users)
    return user_to_dict(user)


async def delete_user(db: AsyncSession, cache: CacheManager, admin: User, user_id: int) -> None:
    """
    Remove a user with their posts, comments and notifications. Tag counts
    are released for every deleted post.
    """
    if user_id == admin.id:
        raise ValidationFailed("You cannot delete yourself")
    user = await _load_user(db, user_id)

    posts = (await db.execute(select(Post).where(Post.author_id == user.id))).scalars().all()
    post_ids = [p.id for p in posts]
    if post_ids:
        await db.execute(delete(Comment).where(Comment.post_id.in_(post_ids)))
    await db.execute(delete(Comment).where(Comment.author_id == user.id))
    await db.execute(delete(Notification).where(Notification.recipient_id == user.id))
    for post in posts:
        removed = post.tags
        await db.delete(post)
        await db.flush()
        await apply_tag_delta(db, added=(), removed=removed)

    await db.delete(user)
    await db.flush()

    after_commit(db, cache.invalidate_users)
    if posts:
        after_commit(db, cache.invalidate_posts)
    after_commit(db, cache.invalidate_comments)
    logger.info("User %d deleted by admin %d (%d posts)", user_id, admin.id, len(posts))
