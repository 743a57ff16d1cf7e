"""
Rate limiter configuration.
IP-keyed limits via slowapi; counters live in process memory.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from blog_api.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_GENERAL],
    enabled=settings.RATE_LIMIT_ENABLED,
)

auth_limit = settings.RATE_LIMIT_AUTH
comment_limit = settings.RATE_LIMIT_COMMENTS
ai_limit = settings.RATE_LIMIT_AI
