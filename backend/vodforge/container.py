"""Explicitly constructed services with a defined startup and shutdown.

Every component receives its collaborators here; nothing reaches for a
process-wide client on its own.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from vodforge.core.config import Settings
from vodforge.core.database import create_all, create_engine, create_session_factory
from vodforge.core.locks import KeyedLockBase, create_keyed_lock
from vodforge.core.logging import log_error, log_info
from vodforge.core.retry import RetryConfig
from vodforge.core.storage import (
    AsyncObjectStorage,
    ObjectStorage,
    StorageConfig,
    create_object_storage,
)
from vodforge.modules.transcoding.ffmpeg import RenditionEncoder
from vodforge.modules.transcoding.manifest import ManifestAggregator
from vodforge.modules.transcoding.publisher import ArtifactPublisher
from vodforge.modules.transcoding.service import EncodeDispatcher, TranscodingPipeline
from vodforge.modules.upload.assembler import Assembler
from vodforge.modules.upload.chunk_store import ChunkStore
from vodforge.modules.video.layout import MediaLayout
from vodforge.modules.video.reclaimer import ResourceReclaimer
from vodforge.modules.video.service import VideoService
from vodforge.modules.video.thumbnail import ThumbnailService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """All long-lived services of one orchestrator process."""
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    storage: AsyncObjectStorage
    lock: KeyedLockBase
    http_client: httpx.AsyncClient
    layout: MediaLayout
    chunk_store: ChunkStore
    assembler: Assembler
    aggregator: ManifestAggregator
    publisher: ArtifactPublisher
    pipeline: TranscodingPipeline
    reclaimer: ResourceReclaimer
    videos: VideoService
    sweeper: Optional[asyncio.Task] = field(default=None, repr=False)

    async def startup(self) -> None:
        self.layout.root.mkdir(parents=True, exist_ok=True)
        await create_all(self.engine)
        recovered = await self.pipeline.recover_stale_jobs()
        self.sweeper = asyncio.create_task(self._sweep_stale_jobs(), name="stale-job-sweeper")
        log_info(
            logger,
            "Services started",
            storage_backend=self.settings.STORAGE_BACKEND,
            encoder_mode=self.settings.ENCODER_MODE,
            recovered_jobs=recovered,
        )

    async def _sweep_stale_jobs(self) -> None:
        while True:
            await asyncio.sleep(self.settings.STALE_JOB_SWEEP_SECONDS)
            try:
                await self.pipeline.recover_stale_jobs()
            except Exception as e:
                log_error(logger, "Stale job sweep failed", exception=e)

    async def shutdown(self) -> None:
        if self.sweeper is not None:
            self.sweeper.cancel()
            await asyncio.gather(self.sweeper, return_exceptions=True)
        await self.pipeline.shutdown()
        await self.http_client.aclose()
        await self.engine.dispose()
        log_info(logger, "Services stopped")


def storage_config_from_settings(settings: Settings) -> StorageConfig:
    return StorageConfig(
        backend=settings.STORAGE_BACKEND,
        bucket=settings.STORAGE_BUCKET,
        region=settings.STORAGE_REGION,
        access_key=settings.STORAGE_ACCESS_KEY,
        secret_key=settings.STORAGE_SECRET_KEY,
        endpoint_url=settings.STORAGE_ENDPOINT_URL,
        use_ssl=settings.STORAGE_USE_SSL,
        local_path=settings.LOCAL_STORAGE_PATH,
        page_size=settings.STORAGE_LIST_PAGE_SIZE,
    )


def build_container(
    settings: Settings,
    storage_backend: Optional[ObjectStorage] = None,
    encoder: Optional[RenditionEncoder] = None,
    lock: Optional[KeyedLockBase] = None,
    dispatcher: Optional[EncodeDispatcher] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> ServiceContainer:
    """Wire the services described by ``settings``.

    Keyword overrides replace individual collaborators, mainly for tests.
    """
    engine = create_engine(settings.DATABASE_URL, echo=settings.DEBUG)
    session_factory = create_session_factory(engine)
    storage = AsyncObjectStorage(
        storage_backend or create_object_storage(storage_config_from_settings(settings))
    )
    lock = lock or create_keyed_lock(settings.REDIS_URL, settings.LOCK_TIMEOUT_SECONDS)
    http_client = http_client or httpx.AsyncClient(timeout=settings.VIDEO_SERVER_TIMEOUT_SECONDS)
    layout = MediaLayout(settings.MEDIA_ROOT)

    publish_retry = RetryConfig(
        max_attempts=settings.PUBLISH_MAX_ATTEMPTS,
        initial_delay=settings.PUBLISH_INITIAL_DELAY,
        max_delay=settings.PUBLISH_MAX_DELAY,
    )

    if dispatcher is None and settings.ENCODER_MODE == "celery":
        from vodforge.modules.transcoding.tasks import CeleryEncodeDispatcher

        dispatcher = CeleryEncodeDispatcher()

    encoder = encoder or RenditionEncoder(
        ffmpeg_path=settings.FFMPEG_PATH,
        timeout=settings.ENCODE_TIMEOUT_SECONDS,
    )
    aggregator = ManifestAggregator(layout, lock)
    publisher = ArtifactPublisher(storage, layout, session_factory, publish_retry, sleep=sleep)
    reclaimer = ResourceReclaimer(
        session_factory,
        layout,
        storage,
        publish_retry,
        video_server_url=settings.VIDEO_SERVER_URL,
        video_server_timeout=settings.VIDEO_SERVER_TIMEOUT_SECONDS,
        http_client=http_client,
        sleep=sleep,
    )
    pipeline = TranscodingPipeline(
        session_factory,
        layout,
        encoder,
        aggregator,
        publisher,
        segment_seconds=settings.HLS_SEGMENT_SECONDS,
        dispatcher=dispatcher,
        on_all_failed=reclaimer.reclaim_derived,
        stale_after=settings.ENCODE_TIMEOUT_SECONDS + settings.STALE_JOB_GRACE_SECONDS,
    )
    assembler = Assembler(session_factory, layout, lock)
    chunk_store = ChunkStore(session_factory, layout, settings.MAX_CHUNK_BYTES, lock)
    videos = VideoService(
        session_factory,
        lock,
        assembler,
        pipeline,
        aggregator,
        reclaimer,
        ThumbnailService(storage, layout, publish_retry),
        allowed_extensions=settings.ALLOWED_EXTENSIONS,
        max_chunk_count=settings.MAX_CHUNK_COUNT,
    )
    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        storage=storage,
        lock=lock,
        http_client=http_client,
        layout=layout,
        chunk_store=chunk_store,
        assembler=assembler,
        aggregator=aggregator,
        publisher=publisher,
        pipeline=pipeline,
        reclaimer=reclaimer,
        videos=videos,
    )
