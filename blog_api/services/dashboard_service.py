"""Admin dashboard summary: totals, recent activity and top tags."""
import logging

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from blog_api.cache import CacheManager
from blog_api.config import settings
from blog_api.models import Comment, Post, User
from blog_api.services.comment_service import recent_comments
from blog_api.services.post_service import post_to_dict
from blog_api.services.tag_ledger import popular_tags

logger = logging.getLogger(__name__)


async def get_dashboard_summary(db: AsyncSession, cache: CacheManager) -> dict:
    async def produce() -> dict:
        post_totals = (
            await db.execute(
                select(
                    func.count(Post.id),
                    func.coalesce(func.sum(case((Post.is_draft.is_(True), 1), else_=0)), 0),
                    func.coalesce(func.sum(Post.views), 0),
                    func.coalesce(func.sum(Post.likes), 0),
                    func.coalesce(func.sum(case((Post.needs_review.is_(True), 1), else_=0)), 0),
                )
            )
        ).one()
        total_posts, drafts, views, likes, needs_review = post_totals
        total_comments = (await db.execute(select(func.count()).select_from(Comment))).scalar_one()
        total_users = (await db.execute(select(func.count()).select_from(User))).scalar_one()

        recent_posts = (
            await db.execute(
                select(Post)
                .options(selectinload(Post.author))
                .order_by(Post.created_at.desc(), Post.id.desc())
                .limit(5)
            )
        ).scalars().all()

        return {
            "stats": {
                "total_posts": total_posts,
                "drafts": drafts,
                "published": total_posts - drafts,
                "needs_review": needs_review,
                "total_comments": total_comments,
                "total_views": views,
                "total_likes": likes,
                "total_users": total_users,
            },
            "recent_posts": [post_to_dict(p) for p in recent_posts],
            "recent_comments": await recent_comments(db, limit=5),
            "top_tags": [
                {"tag": t["name"], "display_name": t["display_name"], "count": t["post_count"]}
                for t in await popular_tags(db, limit=10)
            ],
        }

    summary = await cache.cached("dashboard:stats", produce, ttl=settings.CACHE_TTL_DASHBOARD)
    return {**summary, "cache": await cache.stats()}
