"""
Image uploads: validate, downsize and re-encode as optimized JPEG.

Pillow work is CPU bound and runs in the threadpool so the event loop is
not blocked while a large upload is being resized.
"""
import io
import logging
import secrets
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from blog_api.config import Settings
from blog_api.errors import ImageProcessingError, ValidationFailed

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp", "image/gif"})
OPTIMIZED_SUBDIR = "optimized"


def _optimize(data: bytes, target: Path, max_width: int, quality: int) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as im:
        im = ImageOps.exif_transpose(im)
        if im.width > max_width:
            ratio = max_width / im.width
            im = im.resize((max_width, max(1, round(im.height * ratio))), Image.Resampling.LANCZOS)
        if im.mode != "RGB":
            im = im.convert("RGB")
        im.save(target, format="JPEG", quality=quality, optimize=True, progressive=True)
        return im.width, im.height


async def optimize_image(data: bytes, filename: str, content_type: str | None, settings: Settings) -> dict:
    """
    Store an optimized copy of an uploaded image under
    ``UPLOAD_DIR/optimized`` and describe the result.
    """
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationFailed(
            "Only image files are allowed",
            details={"content_type": content_type, "allowed": sorted(ALLOWED_CONTENT_TYPES)},
        )
    if not data:
        raise ValidationFailed("No file uploaded")
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise ValidationFailed(
            "File too large",
            details={"max_bytes": settings.MAX_UPLOAD_BYTES, "size": len(data)},
        )

    out_dir = Path(settings.UPLOAD_DIR) / OPTIMIZED_SUBDIR
    out_dir.mkdir(parents=True, exist_ok=True)
    stored_name = f"{secrets.token_hex(8)}-{Path(filename or 'upload').stem[:40]}.jpg"
    target = out_dir / stored_name

    try:
        width, height = await run_in_threadpool(
            _optimize, data, target, settings.MAX_IMAGE_WIDTH, settings.IMAGE_QUALITY
        )
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.warning("Image optimization failed for %r: %s", filename, exc)
        target.unlink(missing_ok=True)
        raise ImageProcessingError("Image could not be processed") from exc

    optimized_size = target.stat().st_size
    logger.info(
        "Optimized upload %r: %d -> %d bytes (%dx%d)", filename, len(data), optimized_size, width, height
    )
    return {
        "filename": stored_name,
        "path": f"/uploads/{OPTIMIZED_SUBDIR}/{stored_name}",
        "original_size": len(data),
        "optimized_size": optimized_size,
        "width": width,
        "height": height,
    }
