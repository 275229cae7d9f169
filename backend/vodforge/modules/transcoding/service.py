"""Transcoding pipeline orchestration.

Fans an assembled video out to one encode per selected target and handles
each completion independently: a succeeded target is appended to the master
manifest, published, and flips the video to ready the first time; a failed
target only degrades itself. Deleting a video tombstones it, so completions
that arrive afterwards are ignored.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Protocol

from sqlalchemy.ext.asyncio import async_sessionmaker

from vodforge.core.errors import ConflictError, ExternalProcessError, NotFoundError, StorageError
from vodforge.core.logging import log_error, log_info, log_warning, set_correlation_id
from vodforge.modules.transcoding.abr import select_targets
from vodforge.modules.transcoding.ffmpeg import EncodeRequest, RenditionEncoder
from vodforge.modules.transcoding.manifest import (
    AppendOutcome,
    ManifestAggregator,
    ManifestEntry,
)
from vodforge.modules.transcoding.models import RenditionStatus
from vodforge.modules.transcoding.publisher import ArtifactPublisher
from vodforge.modules.transcoding.repository import RenditionJobRepository
from vodforge.modules.transcoding.schemas import RenditionJobResponse
from vodforge.modules.video.layout import MediaLayout
from vodforge.modules.video.models import VideoStatus
from vodforge.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)


class EncodeDispatcher(Protocol):
    """Hands encodes to out-of-process workers."""

    def dispatch(self, request: EncodeRequest) -> str: ...

    def revoke(self, task_ids: list[str]) -> None: ...


class TranscodingPipeline:
    """Runs and tracks the rendition jobs of every video."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        layout: MediaLayout,
        encoder: RenditionEncoder,
        aggregator: ManifestAggregator,
        publisher: ArtifactPublisher,
        segment_seconds: int = 5,
        dispatcher: Optional[EncodeDispatcher] = None,
        on_all_failed: Optional[Callable[[uuid.UUID], Awaitable[object]]] = None,
        stale_after: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.layout = layout
        self.encoder = encoder
        self.aggregator = aggregator
        self.publisher = publisher
        self.segment_seconds = segment_seconds
        self.dispatcher = dispatcher
        self.on_all_failed = on_all_failed
        self.stale_after = stale_after
        self._tasks: dict[uuid.UUID, dict[str, asyncio.Task]] = {}
        self._remote_tasks: dict[uuid.UUID, list[str]] = {}
        self._tombstones: set[uuid.UUID] = set()

    async def start(self, video_id: uuid.UUID) -> list[RenditionJobResponse]:
        """Select targets for an assembled video and launch their encodes.

        Calling it again only launches jobs that are still queued.

        Raises:
            NotFoundError: unknown video.
            ConflictError: the video has not been assembled yet.
        """
        if self.is_tombstoned(video_id):
            raise NotFoundError("Video is being deleted", video_id=str(video_id))
        await self.recover_stale_jobs(video_id)

        async with self.session_factory() as session:
            videos = VideoRepository(session)
            jobs = RenditionJobRepository(session)
            video = await videos.get_by_id(video_id)
            if video is None:
                raise NotFoundError("Unknown video", video_id=str(video_id))
            if video.status not in (VideoStatus.ASSEMBLED.value, VideoStatus.TRANSCODING.value):
                raise ConflictError(
                    "Video is not awaiting transcoding",
                    video_id=str(video_id),
                    status=video.status,
                )

            orientation, variants = select_targets(video.width, video.height)
            for variant in variants:
                await jobs.create(
                    video_id=video_id,
                    target=variant.label,
                    width=variant.width,
                    height=variant.height,
                    bitrate=variant.bitrate,
                    profile=variant.profile,
                    level=variant.level,
                    output_dir=str(self.layout.rendition_dir(video_id, variant.label)),
                )
            await videos.transition_status(
                video_id,
                (VideoStatus.ASSEMBLED,),
                VideoStatus.TRANSCODING,
                orientation=orientation.value,
            )
            await session.commit()

            source_path = video.source_path
            launch = []
            for variant in variants:
                # Only the caller that moves the job to running launches it
                if await jobs.mark_running(video_id, variant.label):
                    launch.append(variant)
            await session.commit()
            job_rows = await jobs.list_by_video(video_id)
            responses = [RenditionJobResponse.model_validate(job) for job in job_rows]

        if self.is_tombstoned(video_id):
            log_info(logger, "Skipping launch for deleted video", video_id=str(video_id))
            return responses

        for variant in launch:
            request = EncodeRequest.for_variant(
                video_id,
                variant,
                source_path=source_path,
                output_dir=str(self.layout.rendition_dir(video_id, variant.label)),
                segment_seconds=self.segment_seconds,
            )
            self._launch(request)

        log_info(
            logger,
            "Transcoding started",
            video_id=str(video_id),
            orientation=orientation.value,
            targets=[v.label for v in variants],
            launched=[v.label for v in launch],
        )
        return responses

    def _launch(self, request: EncodeRequest) -> None:
        video_id = request.video_id
        if self.dispatcher is not None:
            task_id = self.dispatcher.dispatch(request)
            self._remote_tasks.setdefault(video_id, []).append(task_id)
            return

        task = asyncio.create_task(
            self._run(request), name=f"encode:{video_id}:{request.target}"
        )
        self._tasks.setdefault(video_id, {})[request.target] = task
        task.add_done_callback(lambda t: self._forget(video_id, request.target, t))

    def _forget(self, video_id: uuid.UUID, target: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(video_id)
        if tasks is not None and tasks.get(target) is task:
            del tasks[target]
            if not tasks:
                del self._tasks[video_id]

    async def _run(self, request: EncodeRequest) -> None:
        video_id, target = request.video_id, request.target
        set_correlation_id(str(video_id))
        try:
            try:
                await self.encoder.encode(request)
            except ExternalProcessError as e:
                log_error(
                    logger,
                    "Encode failed",
                    video_id=str(video_id),
                    target=target,
                    returncode=e.returncode,
                    timed_out=e.timed_out,
                    error=e.message,
                )
                await self.handle_completion(video_id, target, succeeded=False, error=e.message)
                return
            await self.handle_completion(video_id, target, succeeded=True)
        except Exception as e:
            # Background failures are recorded, never raised into the process
            log_error(
                logger,
                "Rendition handling failed",
                exception=e,
                video_id=str(video_id),
                target=target,
            )
            async with self.session_factory() as session:
                await RenditionJobRepository(session).mark_failed(video_id, target, str(e))
                await session.commit()

    async def handle_completion(
        self,
        video_id: uuid.UUID,
        target: str,
        succeeded: bool,
        error: Optional[str] = None,
    ) -> None:
        """Record the outcome of one encode.

        Safe to call more than once for the same target and after deletion.
        """
        if video_id in self._tombstones:
            log_info(
                logger,
                "Ignoring completion for deleted video",
                video_id=str(video_id),
                target=target,
            )
            return

        if succeeded:
            await self._on_success(video_id, target)
        else:
            async with self.session_factory() as session:
                await RenditionJobRepository(session).mark_failed(
                    video_id, target, error or "Encode failed"
                )
                await session.commit()
        await self._settle(video_id)

    async def _on_success(self, video_id: uuid.UUID, target: str) -> None:
        async with self.session_factory() as session:
            jobs = RenditionJobRepository(session)
            job = await jobs.get(video_id, target)
            if job is None:
                return
            if job.status in (RenditionStatus.FAILED.value, RenditionStatus.CANCELLED.value):
                log_warning(
                    logger,
                    "Ignoring late success",
                    video_id=str(video_id),
                    target=target,
                    status=job.status,
                )
                return
            await jobs.mark_succeeded(video_id, target)
            await session.commit()
            entry = ManifestEntry(
                target=target,
                bandwidth=job.bitrate,
                width=job.width,
                height=job.height,
                uri=self.layout.playlist_uri(target),
            )
            output_dir = job.output_dir

        outcome = await self.aggregator.append(video_id, entry, is_live=self.is_live)
        if outcome != AppendOutcome.APPENDED:
            return

        try:
            await self.publisher.publish_rendition(video_id, target, output_dir)
        except StorageError as e:
            await self._revoke(video_id, target, e)
            return

        failure: Optional[StorageError] = None
        async with self.aggregator.exclusive(video_id):
            if not await self.is_live(video_id):
                # Deleted while uploading; drop what was just published
                await self.publisher.unpublish_rendition(video_id, target)
                return
            manifest = await self.aggregator.read(video_id)
            try:
                await self.publisher.publish_manifest(video_id, manifest.render())
            except StorageError as e:
                failure = e
            else:
                await self.publisher.mark_ready(video_id)

        if failure is not None:
            await self._revoke(video_id, target, failure)

    async def _revoke(self, video_id: uuid.UUID, target: str, error: StorageError) -> None:
        """Undo a target whose publish exhausted its retries."""
        log_error(
            logger,
            "Publishing failed",
            video_id=str(video_id),
            target=target,
            error=error.message,
        )
        await self.aggregator.remove(video_id, target)
        async with self.session_factory() as session:
            await RenditionJobRepository(session).revoke_success(
                video_id, target, f"Publishing failed: {error.message}"
            )
            await session.commit()

        try:
            await self.publisher.unpublish_rendition(video_id, target)
            # Another target may have published a manifest listing this one
            async with self.aggregator.exclusive(video_id):
                manifest = await self.aggregator.read(video_id)
                if manifest is not None and manifest.entries and await self.is_live(video_id):
                    await self.publisher.publish_manifest(video_id, manifest.render())
        except StorageError as e:
            log_warning(
                logger,
                "Could not clean up after failed publish",
                video_id=str(video_id),
                target=target,
                error=e.message,
            )

    async def _settle(self, video_id: uuid.UUID) -> None:
        """Mark the video failed once every job ended and none succeeded."""
        async with self.session_factory() as session:
            jobs = await RenditionJobRepository(session).list_by_video(video_id)
            if not jobs or not all(job.is_terminal() for job in jobs):
                return
            if any(job.status == RenditionStatus.SUCCEEDED.value for job in jobs):
                return
            failed = await VideoRepository(session).transition_status(
                video_id,
                (VideoStatus.ASSEMBLED, VideoStatus.TRANSCODING),
                VideoStatus.FAILED,
                last_error="All renditions failed",
            )
            await session.commit()

        if failed:
            log_error(logger, "All renditions failed", video_id=str(video_id))
            if self.on_all_failed is not None:
                await self.on_all_failed(video_id)

    async def recover_stale_jobs(self, video_id: Optional[uuid.UUID] = None) -> int:
        """Fail running jobs whose encode will never report back.

        A job stays running when the process driving its encode died. Once it
        has been running longer than ``stale_after`` no encode can still be
        alive for it, so it is failed and its video settled.

        Returns:
            Number of jobs failed.
        """
        if self.stale_after is None:
            return 0
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.stale_after)
        error = f"Encode did not report completion within {self.stale_after:.0f} seconds"

        failed: list[tuple[uuid.UUID, str]] = []
        async with self.session_factory() as session:
            jobs = RenditionJobRepository(session)
            for job in await jobs.list_running_started_before(cutoff, video_id):
                if job.target in self._tasks.get(job.video_id, {}):
                    continue
                if self.is_tombstoned(job.video_id):
                    continue
                if await jobs.mark_failed(job.video_id, job.target, error):
                    failed.append((job.video_id, job.target))
            await session.commit()

        for stale_video, target in failed:
            log_warning(
                logger,
                "Failed stale rendition job",
                video_id=str(stale_video),
                target=target,
                stale_after=self.stale_after,
            )
        for stale_video in dict.fromkeys(v for v, _ in failed):
            await self._settle(stale_video)
        return len(failed)

    def is_tombstoned(self, video_id: uuid.UUID) -> bool:
        return video_id in self._tombstones

    def discard_tombstone(self, video_id: uuid.UUID) -> None:
        """Forget a deleted video once its rows are gone.

        Late completions are still ignored afterwards, because the job rows
        they would update no longer exist.
        """
        self._tombstones.discard(video_id)

    async def is_live(self, video_id: uuid.UUID) -> bool:
        """False once the video is tombstoned or its metadata is gone."""
        if video_id in self._tombstones:
            return False
        async with self.session_factory() as session:
            return await VideoRepository(session).get_by_id(video_id) is not None

    async def cancel(self, video_id: uuid.UUID) -> int:
        """Tombstone the video, stop its encodes and mark in-flight jobs cancelled.

        Returns:
            Number of jobs moved to cancelled.
        """
        self._tombstones.add(video_id)

        tasks = self._tasks.pop(video_id, {})
        for task in tasks.values():
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks.values(), return_exceptions=True)

        remote = self._remote_tasks.pop(video_id, [])
        if remote and self.dispatcher is not None:
            self.dispatcher.revoke(remote)

        async with self.session_factory() as session:
            cancelled = await RenditionJobRepository(session).cancel_in_flight(video_id)
            await session.commit()

        log_info(
            logger,
            "Transcoding cancelled",
            video_id=str(video_id),
            stopped_tasks=len(tasks) + len(remote),
            cancelled_jobs=cancelled,
        )
        return cancelled

    async def wait(self, video_id: uuid.UUID) -> None:
        """Wait for the in-process encodes of a video to finish."""
        tasks = list(self._tasks.get(video_id, {}).values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def list_jobs(self, video_id: uuid.UUID) -> list[RenditionJobResponse]:
        async with self.session_factory() as session:
            jobs = await RenditionJobRepository(session).list_by_video(video_id)
            return [RenditionJobResponse.model_validate(job) for job in jobs]

    async def shutdown(self) -> None:
        """Cancel every running encode."""
        tasks = [task for per_video in self._tasks.values() for task in per_video.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
