import logging
import sys

from blog_api.config import Settings


def configure_logging(settings: Settings) -> None:
    """
    Configure root logging for the process.

    DEBUG mode forces the DEBUG level; otherwise ``LOG_LEVEL`` applies.
    Chatty HTTP client loggers are held at WARNING.
    """
    level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True,
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured: env=%s level=%s", settings.APP_ENV, logging.getLevelName(level)
    )
