"""Chunk intake for resumable uploads.

Chunks arrive in any order, possibly repeated. Each accepted chunk is written
atomically to the video's staging directory and recorded as present, so a
client that lost its connection can ask which indices are missing and resume.
Writes hold the video lock, so deletion never races a half-stored chunk.
"""

import asyncio
import logging
import os
import uuid
from pathlib import Path

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from vodforge.core.errors import ConflictError, NotFoundError, ValidationError
from vodforge.core.locks import KeyedLock, KeyedLockBase
from vodforge.core.logging import log_info
from vodforge.modules.upload.repository import ChunkRepository
from vodforge.modules.upload.schemas import ChunkReceipt
from vodforge.modules.video.layout import MediaLayout, video_lock_key
from vodforge.modules.video.models import UPLOADABLE_STATUSES, VideoStatus
from vodforge.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)


def validate_chunk_index(chunk_index) -> int:
    """Reject anything that is not a non-negative integer index."""
    if isinstance(chunk_index, bool) or not isinstance(chunk_index, int):
        raise ValidationError("Chunk index must be an integer", chunk_index=chunk_index)
    if chunk_index < 0:
        raise ValidationError("Chunk index must not be negative", chunk_index=chunk_index)
    return chunk_index


def _write_atomically(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class ChunkStore:
    """Stores uploaded chunks and answers presence queries."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        layout: MediaLayout,
        max_chunk_bytes: int,
        lock: KeyedLockBase | None = None,
    ):
        self.session_factory = session_factory
        self.layout = layout
        self.max_chunk_bytes = max_chunk_bytes
        self.lock = lock or KeyedLock()

    async def put(self, video_id: uuid.UUID, chunk_index: int, data: bytes) -> ChunkReceipt:
        """Persist one chunk; re-uploading an index overwrites it.

        Raises:
            ValidationError: unknown video, bad index or bad payload size.
            ConflictError: the video no longer accepts chunks.
        """
        validate_chunk_index(chunk_index)
        if not data:
            raise ValidationError("Chunk payload is empty", video_id=str(video_id))
        if len(data) > self.max_chunk_bytes:
            raise ValidationError(
                "Chunk payload too large",
                video_id=str(video_id),
                size=len(data),
                limit=self.max_chunk_bytes,
            )

        async with self.lock.hold(video_lock_key(video_id)):
            return await self._put_locked(video_id, chunk_index, data)

    async def _put_locked(self, video_id: uuid.UUID, chunk_index: int, data: bytes) -> ChunkReceipt:
        async with self.session_factory() as session:
            video = await VideoRepository(session).get_by_id(video_id)
            if video is None:
                raise ValidationError("Unknown video", video_id=str(video_id))
            if chunk_index >= video.expected_chunk_count:
                raise ValidationError(
                    "Chunk index out of range",
                    video_id=str(video_id),
                    chunk_index=chunk_index,
                    expected_chunk_count=video.expected_chunk_count,
                )
            if VideoStatus(video.status) not in UPLOADABLE_STATUSES:
                raise ConflictError(
                    "Video no longer accepts chunks",
                    video_id=str(video_id),
                    status=video.status,
                )
            expected = video.expected_chunk_count

        path = self.layout.chunk_path(video_id, chunk_index)
        await asyncio.to_thread(_write_atomically, path, data)

        async with self.session_factory() as session:
            chunks = ChunkRepository(session)
            try:
                await chunks.record(video_id, chunk_index, len(data))
                await session.commit()
            except IntegrityError:
                # Same chunk recorded concurrently; the file is ours either way
                await session.rollback()
                await chunks.record(video_id, chunk_index, len(data))
                await session.commit()

            videos = VideoRepository(session)
            await videos.transition_status(
                video_id,
                (VideoStatus.METADATA_REGISTERED,),
                VideoStatus.CHUNKS_PENDING,
            )
            received = await chunks.count(video_id, below=expected)
            await session.commit()

        log_info(
            logger,
            "Chunk stored",
            video_id=str(video_id),
            chunk_index=chunk_index,
            size=len(data),
            received=received,
            expected=expected,
        )
        return ChunkReceipt(
            video_id=video_id,
            chunk_index=chunk_index,
            size=len(data),
            received_count=received,
            expected_count=expected,
        )

    async def exists(self, video_id: uuid.UUID, chunk_index: int) -> bool:
        """Whether the chunk is durably present.

        Raises:
            NotFoundError: the video is unknown (or was deleted).
        """
        validate_chunk_index(chunk_index)
        async with self.session_factory() as session:
            video = await VideoRepository(session).get_by_id(video_id)
            if video is None:
                raise NotFoundError("Unknown video", video_id=str(video_id))
            return await ChunkRepository(session).exists(video_id, chunk_index)

    async def received_indices(self, video_id: uuid.UUID) -> list[int]:
        async with self.session_factory() as session:
            return await ChunkRepository(session).list_indices(video_id)
