"""Assembly of staged chunks into the source file.

Finalize is exclusive per video: the caller that moves the video from
``chunks_pending`` to ``assembling`` performs the concatenation, every other
concurrent caller either waits for it in-process or observes the advanced
state and returns without doing anything.
"""

import asyncio
import logging
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy.ext.asyncio import async_sessionmaker

from vodforge.core.errors import ConflictError, ConsistencyError, NotFoundError
from vodforge.core.locks import KeyedLock, KeyedLockBase
from vodforge.core.logging import log_error, log_info, log_warning
from vodforge.modules.upload.repository import ChunkRepository
from vodforge.modules.upload.schemas import AssemblyResult
from vodforge.modules.video.layout import MediaLayout, video_lock_key
from vodforge.modules.video.models import VideoAsset, VideoStatus
from vodforge.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024


def concatenate_chunks(chunk_paths: list[Path], output_path: Path, consumed: list[int]) -> int:
    """Append chunk files to ``output_path`` in order, deleting each one once appended.

    ``consumed`` receives the position of every chunk already appended and
    deleted, so a caller can reconcile presence markers after a failure.

    Returns:
        Total bytes written.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = output_path.with_name(f".{output_path.name}.part")
    written = 0
    try:
        with open(tmp_path, "wb") as out:
            for position, chunk_path in enumerate(chunk_paths):
                with open(chunk_path, "rb") as src:
                    shutil.copyfileobj(src, out, COPY_BUFFER_SIZE)
                    written += src.tell()
                out.flush()
                chunk_path.unlink()
                consumed.append(position)
        os.replace(tmp_path, output_path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    return written


class Assembler:
    """Concatenates a video's chunks once all of them are present."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        layout: MediaLayout,
        lock: KeyedLockBase | None = None,
    ):
        self.session_factory = session_factory
        self.layout = layout
        self.lock = lock or KeyedLock()

    async def assemble(self, video_id: uuid.UUID) -> AssemblyResult:
        """Finalize the upload of ``video_id``.

        Idempotent: finalizing an already assembled video is a no-op.

        Raises:
            NotFoundError: unknown video.
            ConflictError: chunks are missing, or another process is assembling.
            ConsistencyError: recorded chunks were not found on disk.
        """
        async with self.lock.hold(video_lock_key(video_id)):
            video = await self._claim(video_id)
            if isinstance(video, AssemblyResult):
                return video
            return await self._assemble_claimed(video)

    async def _claim(self, video_id: uuid.UUID) -> VideoAsset | AssemblyResult:
        async with self.session_factory() as session:
            videos = VideoRepository(session)
            video = await videos.get_by_id(video_id)
            if video is None:
                raise NotFoundError("Unknown video", video_id=str(video_id))
            if video.is_assembled():
                return self._already_assembled(video)
            if video.status == VideoStatus.ASSEMBLING.value:
                raise ConflictError("Assembly already in progress", video_id=str(video_id))

            expected = video.expected_chunk_count
            received = await ChunkRepository(session).count(video_id, below=expected)
            if received != expected:
                raise ConflictError(
                    "Not all chunks have been received",
                    video_id=str(video_id),
                    received=received,
                    expected=expected,
                )

            claimed = await videos.transition_status(
                video_id, (VideoStatus.CHUNKS_PENDING,), VideoStatus.ASSEMBLING
            )
            await session.commit()
            if claimed:
                return video

            await session.refresh(video)
            if video.is_assembled():
                return self._already_assembled(video)
            raise ConflictError(
                "Video was claimed by another finalize call",
                video_id=str(video_id),
                status=video.status,
            )

    def _already_assembled(self, video: VideoAsset) -> AssemblyResult:
        log_info(logger, "Video already assembled", video_id=str(video.id))
        return AssemblyResult(
            video_id=video.id,
            status=video.status,
            performed=False,
            source_path=video.source_path,
            size=None,
        )

    async def _assemble_claimed(self, video: VideoAsset) -> AssemblyResult:
        video_id = video.id
        chunk_paths = [
            self.layout.chunk_path(video_id, index)
            for index in range(video.expected_chunk_count)
        ]
        missing = [index for index, path in enumerate(chunk_paths) if not path.is_file()]
        if missing:
            await self._release(video_id, missing, "Chunk files missing from staging")
            raise ConsistencyError(
                "Recorded chunks are missing from staging",
                video_id=str(video_id),
                missing=missing,
            )

        output_path = self.layout.source_path(video_id, video.extension)
        consumed: list[int] = []
        try:
            size = await asyncio.to_thread(concatenate_chunks, chunk_paths, output_path, consumed)
        except OSError as e:
            log_error(logger, "Assembly failed", video_id=str(video_id), error=str(e))
            await self._release(video_id, consumed, f"Assembly failed: {e}")
            raise ConsistencyError(
                "Assembly failed", video_id=str(video_id), consumed=len(consumed)
            ) from e

        if size != video.declared_size:
            log_warning(
                logger,
                "Assembled size differs from declared size",
                video_id=str(video_id),
                size=size,
                declared_size=video.declared_size,
            )

        async with self.session_factory() as session:
            await ChunkRepository(session).delete_by_video(video_id)
            await VideoRepository(session).transition_status(
                video_id,
                (VideoStatus.ASSEMBLING,),
                VideoStatus.ASSEMBLED,
                source_path=str(output_path),
                assembled_at=datetime.now(timezone.utc),
                last_error=None,
            )
            await session.commit()

        await asyncio.to_thread(
            shutil.rmtree, self.layout.staging_dir(video_id), ignore_errors=True
        )
        log_info(logger, "Video assembled", video_id=str(video_id), size=size)
        return AssemblyResult(
            video_id=video_id,
            status=VideoStatus.ASSEMBLED.value,
            performed=True,
            source_path=str(output_path),
            size=size,
        )

    async def _release(self, video_id: uuid.UUID, lost_indices: list[int], reason: str) -> None:
        """Return the video to ``chunks_pending`` with truthful presence markers."""
        async with self.session_factory() as session:
            await ChunkRepository(session).delete_many(video_id, lost_indices)
            await VideoRepository(session).transition_status(
                video_id,
                (VideoStatus.ASSEMBLING,),
                VideoStatus.CHUNKS_PENDING,
                last_error=reason,
            )
            await session.commit()
