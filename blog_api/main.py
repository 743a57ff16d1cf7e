import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from slowapi.middleware import SlowAPIMiddleware

from blog_api import database
from blog_api.cache import create_cache
from blog_api.config import settings
from blog_api.errors import install_error_handlers
from blog_api.logging_config import configure_logging
from blog_api.middleware import RequestContextMiddleware
from blog_api.rate_limiter import limiter
from blog_api.realtime import ConnectionManager
from blog_api.routers import (
    ai,
    auth,
    comments,
    dashboard,
    notifications,
    posts,
    realtime,
    search,
    tags,
    users,
)
from blog_api.services.ai_service import AIClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging(settings)
    app.state.cache = await create_cache(settings)
    app.state.realtime = ConnectionManager()
    app.state.ai = AIClient(settings)
    if not app.state.ai.available:
        logger.warning("AI_API_KEY is not set; AI endpoints will return 503")
    if settings.AUTO_CREATE_TABLES:
        async with database.engine.begin() as conn:
            await conn.run_sync(database.Base.metadata.create_all)
    yield
    # Shutdown
    await app.state.ai.close()
    await app.state.cache.close()
    await database.engine.dispose()


app = FastAPI(
    title="Blog Platform API",
    description="Posts, threaded comments, tags, search, notifications and AI writing helpers",
    version="1.0.0",
    lifespan=lifespan,
)

install_error_handlers(app)

# Middleware
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(auth.router)
app.include_router(posts.router)
app.include_router(comments.router)
app.include_router(tags.router)
app.include_router(search.router)
app.include_router(users.router)
app.include_router(notifications.router)
app.include_router(ai.router)
app.include_router(dashboard.router)
app.include_router(realtime.router)

Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")


@app.get("/health")
async def health():
    return {"status": "healthy", "version": "1.0.0"}
