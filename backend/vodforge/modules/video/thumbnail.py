"""Thumbnail conversion and publishing.

Uploaded thumbnails are re-encoded to WebP and stored next to the video's
renditions, so the prefix sweep on deletion removes them too.
"""

import asyncio
import io
import logging
import uuid

from PIL import Image, UnidentifiedImageError

from vodforge.core.errors import ValidationError
from vodforge.core.logging import log_info
from vodforge.core.retry import RetryConfig, retry_async
from vodforge.core.storage import AsyncObjectStorage, StorageResult
from vodforge.modules.video.layout import MediaLayout

logger = logging.getLogger(__name__)

WEBP_QUALITY = 80
WEBP_CONTENT_TYPE = "image/webp"


def convert_to_webp(image_data: bytes, quality: int = WEBP_QUALITY) -> bytes:
    """Re-encode any Pillow-readable image as WebP.

    Raises:
        ValidationError: the data is not a readable image.
    """
    try:
        image = Image.open(io.BytesIO(image_data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError("Thumbnail is not a readable image") from e

    # WebP stores RGB or RGBA only
    if image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")

    output = io.BytesIO()
    image.save(output, format="WEBP", quality=quality)
    return output.getvalue()


class ThumbnailService:
    """Publishes a video's thumbnail as WebP."""

    def __init__(self, storage: AsyncObjectStorage, layout: MediaLayout, retry_config: RetryConfig):
        self.storage = storage
        self.layout = layout
        self.retry_config = retry_config

    async def publish(self, video_id: uuid.UUID, image_data: bytes) -> StorageResult:
        if not image_data:
            raise ValidationError("Thumbnail payload is empty", video_id=str(video_id))
        webp = await asyncio.to_thread(convert_to_webp, image_data)
        key = self.layout.thumbnail_key(video_id)
        result = await retry_async(
            lambda: self.storage.put_object(key, webp, WEBP_CONTENT_TYPE),
            self.retry_config,
            description=f"upload of {key}",
        )
        log_info(logger, "Thumbnail published", video_id=str(video_id), size=len(webp))
        return result
