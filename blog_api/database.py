import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from blog_api.config import settings
from blog_api.middleware import install_query_counter

logger = logging.getLogger(__name__)

# Module-level engine variable allows tests to override with a test engine.
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
)

install_query_counter(engine)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


PostCommitHook = Callable[[], Awaitable[None]]

_HOOKS_KEY = "post_commit_hooks"


def after_commit(session: AsyncSession, hook: PostCommitHook) -> None:
    """
    Queue *hook* to run once the request transaction has committed.

    Hooks are side effects (cache invalidation, realtime delivery) that
    must not run for a rolled-back write and must never fail the write
    that queued them.
    """
    session.info.setdefault(_HOOKS_KEY, []).append(hook)


async def run_post_commit_hooks(session: AsyncSession) -> None:
    hooks: list[PostCommitHook] = session.info.pop(_HOOKS_KEY, [])
    for hook in hooks:
        try:
            await hook()
        except Exception:
            logger.warning("Post-commit hook %r failed", hook, exc_info=True)


def discard_post_commit_hooks(session: AsyncSession) -> None:
    session.info.pop(_HOOKS_KEY, None)


async def commit_and_run_hooks(session: AsyncSession) -> None:
    try:
        await session.commit()
    except Exception:
        discard_post_commit_hooks(session)
        raise
    await run_post_commit_hooks(session)


async def get_db():
    async with async_session() as session:
        try:
            yield session
            await commit_and_run_hooks(session)
        except Exception:
            discard_post_commit_hooks(session)
            await session.rollback()
            raise
