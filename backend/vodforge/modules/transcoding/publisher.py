"""Publishing of rendition artifacts and manifests to object storage."""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from vodforge.core.logging import log_info
from vodforge.core.retry import RetryConfig, retry_async
from vodforge.core.storage import AsyncObjectStorage, content_type_for
from vodforge.modules.video.layout import MediaLayout
from vodforge.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)


def _list_files(directory: Path) -> list[Path]:
    return sorted(p for p in directory.iterdir() if p.is_file() and not p.name.startswith("."))


class ArtifactPublisher:
    """Uploads renditions and manifests with retry, and flips readiness."""

    def __init__(
        self,
        storage: AsyncObjectStorage,
        layout: MediaLayout,
        session_factory: async_sessionmaker,
        retry_config: RetryConfig,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.storage = storage
        self.layout = layout
        self.session_factory = session_factory
        self.retry_config = retry_config
        self.sleep = sleep

    async def publish_rendition(
        self, video_id: uuid.UUID, target: str, output_dir: str
    ) -> list[str]:
        """Upload every file of a rendition directory.

        Raises:
            StorageError: an upload still failed after all retries.
        """
        files = await asyncio.to_thread(_list_files, Path(output_dir))
        keys = []
        for path in files:
            key = self.layout.rendition_key(video_id, target, path.name)
            await retry_async(
                lambda key=key, path=path: self.storage.put_file(key, str(path)),
                self.retry_config,
                description=f"upload of {key}",
                sleep=self.sleep,
            )
            keys.append(key)
        log_info(
            logger,
            "Rendition published",
            video_id=str(video_id),
            target=target,
            object_count=len(keys),
        )
        return keys

    async def publish_manifest(self, video_id: uuid.UUID, text: str) -> str:
        """Upload the master manifest, replacing the previous one."""
        key = self.layout.manifest_key(video_id)
        await retry_async(
            lambda: self.storage.put_object(key, text.encode("utf-8"), content_type_for(key)),
            self.retry_config,
            description=f"upload of {key}",
            sleep=self.sleep,
        )
        return key

    async def unpublish_rendition(self, video_id: uuid.UUID, target: str) -> int:
        """Remove a rendition's remote objects."""
        return await self.storage.delete_prefix(self.layout.rendition_prefix(video_id, target))

    async def mark_ready(self, video_id: uuid.UUID) -> bool:
        """Flip the video to ready; True only for the call that flipped it."""
        async with self.session_factory() as session:
            flipped = await VideoRepository(session).mark_ready(video_id)
            await session.commit()
        if flipped:
            log_info(logger, "Video ready", video_id=str(video_id))
        return flipped
