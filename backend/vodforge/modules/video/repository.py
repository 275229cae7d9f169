"""Video repository for metadata store operations."""

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vodforge.modules.video.models import VideoAsset, VideoStatus

# Registrations that may still receive chunks or are being assembled
IN_PROGRESS_STATUSES = (
    VideoStatus.METADATA_REGISTERED,
    VideoStatus.CHUNKS_PENDING,
    VideoStatus.ASSEMBLING,
)


class VideoRepository:
    """Repository for VideoAsset operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        content_hash: str,
        width: int,
        height: int,
        duration: float,
        extension: str,
        declared_size: int,
        expected_chunk_count: int,
    ) -> VideoAsset:
        """Create a new video asset in ``metadata_registered`` state."""
        video = VideoAsset(
            content_hash=content_hash,
            width=width,
            height=height,
            duration=duration,
            extension=extension,
            declared_size=declared_size,
            expected_chunk_count=expected_chunk_count,
            status=VideoStatus.METADATA_REGISTERED.value,
        )
        self.session.add(video)
        await self.session.flush()
        return video

    async def get_by_id(self, video_id: uuid.UUID) -> Optional[VideoAsset]:
        result = await self.session.execute(
            select(VideoAsset)
            .where(VideoAsset.id == video_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_in_progress_by_hash(self, content_hash: str) -> Optional[VideoAsset]:
        """Find the oldest unfinished upload of the same content."""
        result = await self.session.execute(
            select(VideoAsset)
            .where(
                VideoAsset.content_hash == content_hash,
                VideoAsset.status.in_([s.value for s in IN_PROGRESS_STATUSES]),
            )
            .order_by(VideoAsset.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition_status(
        self,
        video_id: uuid.UUID,
        from_statuses: Iterable[VideoStatus],
        to_status: VideoStatus,
        **values: Any,
    ) -> bool:
        """Atomically move a video to ``to_status`` if it is in ``from_statuses``.

        Returns:
            True if this call performed the transition.
        """
        result = await self.session.execute(
            update(VideoAsset)
            .where(
                VideoAsset.id == video_id,
                VideoAsset.status.in_([s.value for s in from_statuses]),
            )
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_ready(self, video_id: uuid.UUID) -> bool:
        """Flip a transcoding video to ready; later calls are no-ops."""
        return await self.transition_status(
            video_id,
            (VideoStatus.ASSEMBLED, VideoStatus.TRANSCODING),
            VideoStatus.READY,
            ready_at=datetime.now(timezone.utc),
        )

    async def delete(self, video_id: uuid.UUID) -> bool:
        result = await self.session.execute(
            delete(VideoAsset).where(VideoAsset.id == video_id)
        )
        return result.rowcount == 1
