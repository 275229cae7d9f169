"""Repository for rendition job operations."""

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vodforge.modules.transcoding.models import RenditionJob, RenditionStatus


class RenditionJobRepository:
    """Repository for RenditionJob operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        video_id: uuid.UUID,
        target: str,
        width: int,
        height: int,
        bitrate: int,
        profile: str,
        level: str,
        output_dir: str,
    ) -> RenditionJob:
        """Create a queued job, or return the existing one for the same target."""
        existing = await self.get(video_id, target)
        if existing is not None:
            return existing

        job = RenditionJob(
            video_id=video_id,
            target=target,
            width=width,
            height=height,
            bitrate=bitrate,
            profile=profile,
            level=level,
            output_dir=output_dir,
            status=RenditionStatus.QUEUED.value,
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def get(self, video_id: uuid.UUID, target: str) -> Optional[RenditionJob]:
        result = await self.session.execute(
            select(RenditionJob).where(
                RenditionJob.video_id == video_id,
                RenditionJob.target == target,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_video(self, video_id: uuid.UUID) -> list[RenditionJob]:
        result = await self.session.execute(
            select(RenditionJob)
            .where(RenditionJob.video_id == video_id)
            .order_by(RenditionJob.bitrate.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_running_started_before(
        self,
        started_before: datetime,
        video_id: Optional[uuid.UUID] = None,
    ) -> list[RenditionJob]:
        """Running jobs that started before ``started_before``."""
        query = select(RenditionJob).where(
            RenditionJob.status == RenditionStatus.RUNNING.value,
            RenditionJob.started_at < started_before,
        )
        if video_id is not None:
            query = query.where(RenditionJob.video_id == video_id)
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def transition(
        self,
        video_id: uuid.UUID,
        target: str,
        from_statuses: Iterable[RenditionStatus],
        to_status: RenditionStatus,
        **values: Any,
    ) -> bool:
        """Compare-and-set the status of one job."""
        result = await self.session.execute(
            update(RenditionJob)
            .where(
                RenditionJob.video_id == video_id,
                RenditionJob.target == target,
                RenditionJob.status.in_([s.value for s in from_statuses]),
            )
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_running(self, video_id: uuid.UUID, target: str) -> bool:
        return await self.transition(
            video_id,
            target,
            (RenditionStatus.QUEUED,),
            RenditionStatus.RUNNING,
            started_at=datetime.now(timezone.utc),
        )

    async def mark_succeeded(self, video_id: uuid.UUID, target: str) -> bool:
        return await self.transition(
            video_id,
            target,
            (RenditionStatus.QUEUED, RenditionStatus.RUNNING),
            RenditionStatus.SUCCEEDED,
            completed_at=datetime.now(timezone.utc),
            error_message=None,
        )

    async def mark_failed(self, video_id: uuid.UUID, target: str, error: str) -> bool:
        return await self.transition(
            video_id,
            target,
            (RenditionStatus.QUEUED, RenditionStatus.RUNNING),
            RenditionStatus.FAILED,
            completed_at=datetime.now(timezone.utc),
            error_message=error,
        )

    async def revoke_success(self, video_id: uuid.UUID, target: str, error: str) -> bool:
        """Demote a succeeded job whose artifacts could not be published."""
        return await self.transition(
            video_id,
            target,
            (RenditionStatus.SUCCEEDED,),
            RenditionStatus.FAILED,
            completed_at=datetime.now(timezone.utc),
            error_message=error,
        )

    async def cancel_in_flight(self, video_id: uuid.UUID) -> int:
        result = await self.session.execute(
            update(RenditionJob)
            .where(
                RenditionJob.video_id == video_id,
                RenditionJob.status.in_(
                    [RenditionStatus.QUEUED.value, RenditionStatus.RUNNING.value]
                ),
            )
            .values(
                status=RenditionStatus.CANCELLED.value,
                completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def delete_by_video(self, video_id: uuid.UUID) -> int:
        result = await self.session.execute(
            delete(RenditionJob).where(RenditionJob.video_id == video_id)
        )
        return result.rowcount
