"""
Notification service: persisted notifications plus live delivery.

A notification row is written inside the request transaction; the live
``notification`` event is queued with ``after_commit`` so it is only
published once the row is durable. Delivery is at-most-once and its
failure never affects the write.

The ``notify_*`` helpers are called from domain events (new comment, like,
admin action). They run inside a SAVEPOINT and swallow their own errors so
that a notification failure cannot fail the comment or like that caused
it.
"""
import logging
import math

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from blog_api.database import after_commit
from blog_api.errors import NotFound
from blog_api.models import ROLE_ADMIN, Notification, User, isoformat, utcnow
from blog_api.realtime import ADMIN_ROOM, ConnectionManager, post_room, user_room

logger = logging.getLogger(__name__)


def _sender_summary(sender: User | None) -> dict | None:
    if sender is None:
        return None
    return {"id": sender.id, "name": sender.name, "profile_image_url": sender.profile_image_url}


def notification_to_dict(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "sender_id": notification.sender_id,
        "sender": _sender_summary(notification.sender),
        "related_post_id": notification.related_post_id,
        "related_comment_id": notification.related_comment_id,
        "is_read": notification.is_read,
        "metadata": notification.extra or {},
        "created_at": isoformat(notification.created_at),
    }


def _publish_after_commit(
    db: AsyncSession, realtime: ConnectionManager, room: str, event: str, payload: dict
) -> None:
    async def hook() -> None:
        await realtime.publish(room, event, payload)

    after_commit(db, hook)


async def create_notification(
    db: AsyncSession,
    realtime: ConnectionManager,
    *,
    recipient_id: int,
    type: str,
    title: str,
    message: str,
    sender: User | None = None,
    related_post_id: int | None = None,
    related_comment_id: int | None = None,
    metadata: dict | None = None,
) -> Notification:
    notification = Notification(
        recipient_id=recipient_id,
        sender_id=sender.id if sender else None,
        type=type,
        title=title,
        message=message,
        related_post_id=related_post_id,
        related_comment_id=related_comment_id,
        extra=metadata or {},
        created_at=utcnow(),
    )
    db.add(notification)
    await db.flush()
    notification.sender = sender

    _publish_after_commit(
        db, realtime, user_room(recipient_id), "notification", notification_to_dict(notification)
    )
    return notification


async def _best_effort(db: AsyncSession, realtime: ConnectionManager, **fields) -> Notification | None:
    try:
        async with db.begin_nested():
            return await create_notification(db, realtime, **fields)
    except Exception:
        logger.warning(
            "Could not create %s notification for user %s",
            fields.get("type"),
            fields.get("recipient_id"),
            exc_info=True,
        )
        return None


async def notify_new_comment(
    db: AsyncSession,
    realtime: ConnectionManager,
    *,
    post,
    comment,
    commenter: User,
) -> Notification | None:
    """Tell the post author about a comment and push it to the post's readers."""
    _publish_after_commit(
        db,
        realtime,
        post_room(post.id),
        "new_comment",
        {
            "commenter_name": commenter.name,
            "post_title": post.title,
            "post_id": post.id,
            "comment_id": comment.id,
        },
    )
    if post.author_id == commenter.id:
        return None
    return await _best_effort(
        db,
        realtime,
        recipient_id=post.author_id,
        sender=commenter,
        type="comment",
        title="New Comment on Your Post",
        message=f'{commenter.name} commented on your post "{post.title}"',
        related_post_id=post.id,
        related_comment_id=comment.id,
        metadata={"post_slug": post.slug},
    )


async def notify_post_like(
    db: AsyncSession,
    realtime: ConnectionManager,
    *,
    post,
    liker: User,
) -> Notification | None:
    if post.author_id == liker.id:
        return None
    notification = await _best_effort(
        db,
        realtime,
        recipient_id=post.author_id,
        sender=liker,
        type="like",
        title="Someone Liked Your Post",
        message=f'{liker.name} liked your post "{post.title}"',
        related_post_id=post.id,
        metadata={"post_slug": post.slug},
    )
    _publish_after_commit(
        db,
        realtime,
        user_room(post.author_id),
        "like_notification",
        {"liker_name": liker.name, "post_id": post.id, "post_title": post.title},
    )
    return notification


async def notify_admin_action(
    db: AsyncSession,
    realtime: ConnectionManager,
    *,
    user_id: int,
    admin: User,
    action: str,
    details: str,
) -> Notification | None:
    return await _best_effort(
        db,
        realtime,
        recipient_id=user_id,
        sender=admin,
        type="admin_action",
        title="Admin Action",
        message=f"{admin.name} {action}. {details}",
        metadata={"action": action, "details": details},
    )


async def notify_system(
    db: AsyncSession,
    realtime: ConnectionManager,
    *,
    user_id: int,
    title: str,
    message: str,
    metadata: dict | None = None,
) -> Notification | None:
    return await _best_effort(
        db,
        realtime,
        recipient_id=user_id,
        type="system",
        title=title,
        message=message,
        metadata=metadata,
    )


async def notify_post_published(
    db: AsyncSession,
    realtime: ConnectionManager,
    *,
    post,
) -> Notification | None:
    return await _best_effort(
        db,
        realtime,
        recipient_id=post.author_id,
        type="post_published",
        title="Post Published",
        message=f'Your post "{post.title}" is now live',
        related_post_id=post.id,
        metadata={"post_slug": post.slug},
    )


async def notify_admins(
    db: AsyncSession,
    realtime: ConnectionManager,
    *,
    title: str,
    message: str,
    metadata: dict | None = None,
) -> int:
    """Store one system notification per admin and broadcast once to the admin room."""
    now = utcnow()
    try:
        async with db.begin_nested():
            admin_ids = (await db.execute(select(User.id).where(User.role == ROLE_ADMIN))).scalars().all()
            db.add_all(
                Notification(
                    recipient_id=admin_id,
                    type="system",
                    title=title,
                    message=message,
                    extra=metadata or {},
                    created_at=now,
                )
                for admin_id in admin_ids
            )
    except Exception:
        logger.warning("Could not notify admins: %s", title, exc_info=True)
        return 0
    _publish_after_commit(
        db,
        realtime,
        ADMIN_ROOM,
        "notification",
        {
            "type": "system",
            "title": title,
            "message": message,
            "metadata": metadata or {},
            "created_at": now.isoformat(),
        },
    )
    return len(admin_ids)


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

async def unread_count(db: AsyncSession, user_id: int) -> int:
    q = select(func.count()).select_from(Notification).where(
        Notification.recipient_id == user_id, Notification.is_read.is_(False)
    )
    return (await db.execute(q)).scalar_one()


async def get_user_notifications(db: AsyncSession, user_id: int, page: int = 1, limit: int = 20) -> dict:
    total = (
        await db.execute(
            select(func.count()).select_from(Notification).where(Notification.recipient_id == user_id)
        )
    ).scalar_one()
    q = (
        select(Notification)
        .where(Notification.recipient_id == user_id)
        .options(selectinload(Notification.sender))
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    notifications = (await db.execute(q)).scalars().all()
    pages = math.ceil(total / limit) if total else 0
    return {
        "notifications": [notification_to_dict(n) for n in notifications],
        "pagination": {
            "current_page": page,
            "total_pages": pages,
            "total_notifications": total,
            "has_next_page": page < pages,
            "has_prev_page": page > 1,
        },
        "unread_count": await unread_count(db, user_id),
    }


async def mark_as_read(db: AsyncSession, notification_id: int, user_id: int) -> None:
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.recipient_id == user_id)
        .values(is_read=True)
    )
    if not result.rowcount:
        raise NotFound("Notification", notification_id)


async def mark_all_as_read(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        update(Notification)
        .where(Notification.recipient_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    return result.rowcount


async def delete_notification(db: AsyncSession, notification_id: int, user_id: int) -> None:
    """Only the recipient may delete; anyone else sees a 404."""
    result = await db.execute(
        delete(Notification).where(
            Notification.id == notification_id, Notification.recipient_id == user_id
        )
    )
    if not result.rowcount:
        raise NotFound("Notification", notification_id)
