"""Reclamation of every artifact derived from a video.

Safe on partially created state: a directory, object or row that does not
exist is simply skipped.
"""

import asyncio
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from vodforge.core.logging import log_info, log_warning
from vodforge.core.retry import RetryConfig, retry_async
from vodforge.core.storage import AsyncObjectStorage
from vodforge.modules.transcoding.repository import RenditionJobRepository
from vodforge.modules.upload.repository import ChunkRepository
from vodforge.modules.video.layout import MediaLayout
from vodforge.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)


@dataclass
class ReclaimReport:
    """What a reclamation removed."""
    video_id: uuid.UUID
    removed_paths: list[str] = field(default_factory=list)
    deleted_objects: int = 0
    metadata_removed: bool = False


def _remove_path(path: Path) -> bool:
    if path.is_dir():
        shutil.rmtree(path)
        return True
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


class ResourceReclaimer:
    """Deletes local files, remote objects and metadata of a video."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        layout: MediaLayout,
        storage: AsyncObjectStorage,
        retry_config: RetryConfig,
        video_server_url: Optional[str] = None,
        video_server_timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.session_factory = session_factory
        self.layout = layout
        self.storage = storage
        self.retry_config = retry_config
        self.video_server_url = video_server_url
        self.video_server_timeout = video_server_timeout
        self.http_client = http_client
        self.sleep = sleep

    async def reclaim(self, video_id: uuid.UUID) -> ReclaimReport:
        """Remove everything stored under ``video_id``, metadata included.

        Remote objects go first so that a storage failure leaves the video
        registered and the call can simply be repeated.

        Raises:
            StorageError: remote deletion still failed after retries.
        """
        report = ReclaimReport(video_id=video_id)
        report.deleted_objects = await self._delete_remote(self.layout.remote_prefix(video_id))
        report.removed_paths = await self._delete_local(
            [self.layout.staging_dir(video_id), self.layout.video_dir(video_id)]
        )

        async with self.session_factory() as session:
            await ChunkRepository(session).delete_by_video(video_id)
            await RenditionJobRepository(session).delete_by_video(video_id)
            report.metadata_removed = await VideoRepository(session).delete(video_id)
            await session.commit()

        await self._notify_video_server(video_id)
        log_info(
            logger,
            "Video reclaimed",
            video_id=str(video_id),
            deleted_objects=report.deleted_objects,
            removed_paths=report.removed_paths,
            metadata_removed=report.metadata_removed,
        )
        return report

    async def reclaim_derived(self, video_id: uuid.UUID) -> ReclaimReport:
        """Remove renditions, manifests and remote objects of a failed video.

        The assembled source and the metadata stay, so the failure remains
        visible through the status query.
        """
        report = ReclaimReport(video_id=video_id)
        report.deleted_objects = await self._delete_remote(self.layout.remote_prefix(video_id))

        video_dir = self.layout.video_dir(video_id)
        source_path = None
        async with self.session_factory() as session:
            video = await VideoRepository(session).get_by_id(video_id)
            if video is not None and video.source_path:
                source_path = Path(video.source_path)

        derived = await asyncio.to_thread(
            lambda: [p for p in video_dir.iterdir() if p != source_path]
            if video_dir.is_dir()
            else []
        )
        report.removed_paths = await self._delete_local(derived)
        log_info(
            logger,
            "Derived artifacts reclaimed",
            video_id=str(video_id),
            deleted_objects=report.deleted_objects,
            removed_paths=report.removed_paths,
        )
        return report

    async def _delete_remote(self, prefix: str) -> int:
        return await retry_async(
            lambda: self.storage.delete_prefix(prefix),
            self.retry_config,
            description=f"deletion of {prefix}",
            sleep=self.sleep,
        )

    async def _delete_local(self, paths: list[Path]) -> list[str]:
        removed = []
        for path in paths:
            if await asyncio.to_thread(_remove_path, path):
                removed.append(str(path))
        return removed

    async def _notify_video_server(self, video_id: uuid.UUID) -> None:
        """Tell the streaming node to drop its copy; failures are only logged."""
        if not self.video_server_url:
            return
        url = f"{self.video_server_url.rstrip('/')}/video/{video_id}"
        try:
            if self.http_client is not None:
                response = await self.http_client.delete(url, timeout=self.video_server_timeout)
            else:
                async with httpx.AsyncClient(timeout=self.video_server_timeout) as client:
                    response = await client.delete(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log_warning(
                logger,
                "Video server notification failed",
                video_id=str(video_id),
                error=str(e),
            )
