"""Service layer for video lifecycle operations."""

import logging
import uuid
from typing import Any, Mapping, Union

import pydantic
from sqlalchemy.ext.asyncio import async_sessionmaker

from vodforge.core.errors import NotFoundError, ValidationError
from vodforge.core.locks import KeyedLockBase
from vodforge.core.logging import log_info
from vodforge.modules.transcoding.manifest import ManifestAggregator
from vodforge.modules.transcoding.schemas import RenditionJobResponse
from vodforge.modules.transcoding.service import TranscodingPipeline
from vodforge.modules.upload.assembler import Assembler
from vodforge.modules.upload.repository import ChunkRepository
from vodforge.modules.upload.schemas import AssemblyResult
from vodforge.modules.video.layout import video_lock_key
from vodforge.modules.video.models import VideoAsset, VideoStatus
from vodforge.modules.video.reclaimer import ResourceReclaimer
from vodforge.modules.video.repository import VideoRepository
from vodforge.modules.video.schemas import (
    ThumbnailResponse,
    VideoDeleteResponse,
    VideoRegistrationRequest,
    VideoRegistrationResponse,
    VideoStatusResponse,
)
from vodforge.modules.video.thumbnail import ThumbnailService

logger = logging.getLogger(__name__)


def parse_registration(payload: Mapping[str, Any]) -> VideoRegistrationRequest:
    """Validate raw upload metadata.

    Raises:
        ValidationError: missing or malformed fields.
    """
    try:
        return VideoRegistrationRequest.model_validate(dict(payload))
    except pydantic.ValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ValidationError("Invalid video metadata", fields=fields) from e


class VideoService:
    """Registration, finalization, status and deletion of videos."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        lock: KeyedLockBase,
        assembler: Assembler,
        pipeline: TranscodingPipeline,
        aggregator: ManifestAggregator,
        reclaimer: ResourceReclaimer,
        thumbnails: ThumbnailService,
        allowed_extensions: list[str],
        max_chunk_count: int,
    ):
        self.session_factory = session_factory
        self.lock = lock
        self.assembler = assembler
        self.pipeline = pipeline
        self.aggregator = aggregator
        self.reclaimer = reclaimer
        self.thumbnails = thumbnails
        self.allowed_extensions = [ext.lower() for ext in allowed_extensions]
        self.max_chunk_count = max_chunk_count

    async def register(
        self,
        data: Union[VideoRegistrationRequest, Mapping[str, Any]],
    ) -> VideoRegistrationResponse:
        """Register upload metadata, reusing an in-progress upload of the same content.

        Raises:
            ValidationError: malformed metadata.
        """
        if not isinstance(data, VideoRegistrationRequest):
            data = parse_registration(data)
        if data.extension not in self.allowed_extensions:
            raise ValidationError(
                "Unsupported file extension",
                extension=data.extension,
                allowed=self.allowed_extensions,
            )
        if data.total_chunk_count > self.max_chunk_count:
            raise ValidationError(
                "Too many chunks",
                total_chunk_count=data.total_chunk_count,
                limit=self.max_chunk_count,
            )

        async with self.lock.hold(f"register:{data.content_hash}"):
            async with self.session_factory() as session:
                videos = VideoRepository(session)
                existing = await videos.find_in_progress_by_hash(data.content_hash)
                if existing is not None:
                    log_info(
                        logger,
                        "Reusing in-progress upload",
                        video_id=str(existing.id),
                        content_hash=data.content_hash,
                    )
                    return self._registration(existing, created=False)

                video = await videos.create(
                    content_hash=data.content_hash,
                    width=data.width,
                    height=data.height,
                    duration=data.duration,
                    extension=data.extension,
                    declared_size=data.declared_size,
                    expected_chunk_count=data.total_chunk_count,
                )
                await session.commit()

        log_info(
            logger,
            "Video registered",
            video_id=str(video.id),
            content_hash=data.content_hash,
            expected_chunk_count=data.total_chunk_count,
        )
        return self._registration(video, created=True)

    @staticmethod
    def _registration(video: VideoAsset, created: bool) -> VideoRegistrationResponse:
        return VideoRegistrationResponse(
            video_id=video.id,
            created=created,
            status=video.status,
            expected_chunk_count=video.expected_chunk_count,
        )

    async def finalize(self, video_id: uuid.UUID) -> AssemblyResult:
        """Assemble the upload and start transcoding.

        Repeating the call after assembly only launches jobs still queued.
        """
        result = await self.assembler.assemble(video_id)
        if result.status in (VideoStatus.ASSEMBLED.value, VideoStatus.TRANSCODING.value):
            async with self.lock.hold(video_lock_key(video_id)):
                await self.pipeline.start(video_id)
            result.status = VideoStatus.TRANSCODING.value
        return result

    async def get_status(self, video_id: uuid.UUID) -> VideoStatusResponse:
        async with self.session_factory() as session:
            video = await VideoRepository(session).get_by_id(video_id)
            if video is None:
                raise NotFoundError("Unknown video", video_id=str(video_id))
            received = await ChunkRepository(session).list_indices(video_id)

        renditions: list[RenditionJobResponse] = await self.pipeline.list_jobs(video_id)
        manifest = await self.aggregator.read(video_id)
        return VideoStatusResponse(
            video_id=video.id,
            status=video.status,
            width=video.width,
            height=video.height,
            duration=video.duration,
            extension=video.extension,
            orientation=video.orientation,
            expected_chunk_count=video.expected_chunk_count,
            received_chunks=received,
            renditions=renditions,
            manifest_targets=manifest.targets if manifest else [],
            last_error=video.last_error,
            created_at=video.created_at,
            ready_at=video.ready_at,
        )

    async def delete(self, video_id: uuid.UUID) -> VideoDeleteResponse:
        """Stop in-flight work and reclaim every artifact of the video.

        Raises:
            NotFoundError: unknown video.
        """
        async with self.lock.hold(video_lock_key(video_id)):
            async with self.session_factory() as session:
                if await VideoRepository(session).get_by_id(video_id) is None:
                    raise NotFoundError("Unknown video", video_id=str(video_id))

            cancelled = await self.pipeline.cancel(video_id)
            async with self.aggregator.exclusive(video_id):
                report = await self.reclaimer.reclaim(video_id)
            self.pipeline.discard_tombstone(video_id)

        return VideoDeleteResponse(
            video_id=video_id,
            deleted_objects=report.deleted_objects,
            removed_paths=report.removed_paths,
            cancelled_jobs=cancelled,
        )

    async def publish_thumbnail(self, video_id: uuid.UUID, image_data: bytes) -> ThumbnailResponse:
        async with self.lock.hold(video_lock_key(video_id)):
            async with self.session_factory() as session:
                if await VideoRepository(session).get_by_id(video_id) is None:
                    raise NotFoundError("Unknown video", video_id=str(video_id))

            result = await self.thumbnails.publish(video_id, image_data)
        return ThumbnailResponse(
            video_id=video_id, key=result.key, url=result.url, size=result.file_size
        )
