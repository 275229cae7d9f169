"""Chunk record repository."""

import uuid
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vodforge.modules.upload.models import ChunkRecord


class ChunkRepository:
    """Repository for ChunkRecord operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, video_id: uuid.UUID, chunk_index: int) -> Optional[ChunkRecord]:
        result = await self.session.execute(
            select(ChunkRecord).where(
                ChunkRecord.video_id == video_id,
                ChunkRecord.chunk_index == chunk_index,
            )
        )
        return result.scalar_one_or_none()

    async def exists(self, video_id: uuid.UUID, chunk_index: int) -> bool:
        return await self.get(video_id, chunk_index) is not None

    async def record(self, video_id: uuid.UUID, chunk_index: int, size: int) -> None:
        """Create the presence marker, or refresh its size on re-upload.

        Raises:
            IntegrityError: if a concurrent upload of the same chunk inserted
                the marker first; the caller rolls back and records again.
        """
        updated = await self.session.execute(
            update(ChunkRecord)
            .where(
                ChunkRecord.video_id == video_id,
                ChunkRecord.chunk_index == chunk_index,
            )
            .values(size=size)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount:
            return

        self.session.add(ChunkRecord(video_id=video_id, chunk_index=chunk_index, size=size))
        await self.session.flush()

    async def count(self, video_id: uuid.UUID, below: Optional[int] = None) -> int:
        """Count received chunks, optionally only indices below ``below``."""
        query = select(func.count(ChunkRecord.id)).where(ChunkRecord.video_id == video_id)
        if below is not None:
            query = query.where(ChunkRecord.chunk_index < below)
        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def list_indices(self, video_id: uuid.UUID) -> list[int]:
        result = await self.session.execute(
            select(ChunkRecord.chunk_index)
            .where(ChunkRecord.video_id == video_id)
            .order_by(ChunkRecord.chunk_index)
        )
        return list(result.scalars().all())

    async def delete_many(self, video_id: uuid.UUID, indices: Iterable[int]) -> int:
        indices = list(indices)
        if not indices:
            return 0
        result = await self.session.execute(
            delete(ChunkRecord).where(
                ChunkRecord.video_id == video_id,
                ChunkRecord.chunk_index.in_(indices),
            )
        )
        return result.rowcount

    async def delete_by_video(self, video_id: uuid.UUID) -> int:
        result = await self.session.execute(
            delete(ChunkRecord).where(ChunkRecord.video_id == video_id)
        )
        return result.rowcount
