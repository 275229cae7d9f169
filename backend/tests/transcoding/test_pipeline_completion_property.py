"""Tests for rendition fan-out, completion handling and readiness."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import update

from pipeline_fakes import FakeEncoder, FlakyStorage
from vodforge.core.errors import ConflictError
from vodforge.core.storage import StorageConfig
from vodforge.modules.transcoding.manifest import MasterManifest
from vodforge.modules.transcoding.models import RenditionJob, RenditionStatus
from vodforge.modules.video.models import VideoStatus

METADATA = {
    "hash": "pipeline",
    "width": 1920,
    "height": 1080,
    "duration": 120,
    "extension": "mp4",
    "size": 6,
    "totalChunkCount": 2,
}


async def upload_and_finalize(container) -> uuid.UUID:
    video_id = (await container.videos.register(METADATA)).video_id
    await container.chunk_store.put(video_id, 0, b"abc")
    await container.chunk_store.put(video_id, 1, b"def")
    await container.videos.finalize(video_id)
    return video_id


async def wait_for(predicate, timeout: float = 5.0) -> None:
    async def poll():
        while not await predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def job_states(status) -> dict[str, str]:
    return {job.target: job.status for job in status.renditions}


def remote_keys(container, video_id: uuid.UUID) -> list[str]:
    return container.storage.backend.list_objects(f"{video_id}/").keys


class TestFanOut:
    """Every selected target is encoded and published."""

    @pytest.mark.asyncio
    async def test_all_targets_succeed(self, services, tmp_path) -> None:
        encoder = FakeEncoder()
        async with services(tmp_path, encoder=encoder) as container:
            video_id = await upload_and_finalize(container)
            await container.pipeline.wait(video_id)

            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.READY.value
            assert job_states(status) == {"1080p": "succeeded", "720p": "succeeded", "360p": "succeeded"}
            assert sorted(status.manifest_targets) == ["1080p", "360p", "720p"]
            assert sorted(r.target for r in encoder.requests) == ["1080p", "360p", "720p"]

            keys = remote_keys(container, video_id)
            assert f"{video_id}/master.m3u8" in keys
            for target in ("1080p", "720p", "360p"):
                assert f"{video_id}/{target}/playlist.m3u8" in keys
                assert f"{video_id}/{target}/segment_000.ts" in keys

            published = container.storage.backend.base_path / f"{video_id}/master.m3u8"
            assert sorted(MasterManifest.parse(published.read_text()).targets) == ["1080p", "360p", "720p"]

    @pytest.mark.asyncio
    async def test_ready_after_first_success(self, services, tmp_path) -> None:
        gates = {"720p": asyncio.Event(), "360p": asyncio.Event()}
        async with services(tmp_path, encoder=FakeEncoder(gates=gates)) as container:
            video_id = await upload_and_finalize(container)

            async def ready() -> bool:
                return (await container.videos.get_status(video_id)).status == VideoStatus.READY.value

            await wait_for(ready)
            status = await container.videos.get_status(video_id)
            assert status.manifest_targets == ["1080p"]
            assert job_states(status)["720p"] == RenditionStatus.RUNNING.value

            for gate in gates.values():
                gate.set()
            await container.pipeline.wait(video_id)

            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.READY.value
            assert len(status.manifest_targets) == 3

    @pytest.mark.asyncio
    async def test_failed_target_degrades_only_itself(self, services, tmp_path) -> None:
        encoder = FakeEncoder(failures={"720p": "Encoder exited with code 1"})
        async with services(tmp_path, encoder=encoder) as container:
            video_id = await upload_and_finalize(container)
            await container.pipeline.wait(video_id)

            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.READY.value
            assert job_states(status) == {"1080p": "succeeded", "720p": "failed", "360p": "succeeded"}
            failed = next(job for job in status.renditions if job.target == "720p")
            assert failed.error_message == "Encoder exited with code 1"
            assert sorted(status.manifest_targets) == ["1080p", "360p"]

    @pytest.mark.asyncio
    async def test_all_targets_failing_fails_the_video(self, services, tmp_path) -> None:
        encoder = FakeEncoder(failures={t: "boom" for t in ("1080p", "720p", "360p")})
        async with services(tmp_path, encoder=encoder) as container:
            video_id = await upload_and_finalize(container)
            await container.pipeline.wait(video_id)

            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.FAILED.value
            assert status.last_error == "All renditions failed"
            assert status.manifest_targets == []
            # Source is kept, derived outputs are reclaimed
            video_dir = container.layout.video_dir(video_id)
            assert [p.name for p in video_dir.iterdir()] == ["source.mp4"]

    @pytest.mark.asyncio
    async def test_start_before_assembly_conflicts(self, services, tmp_path) -> None:
        async with services(tmp_path) as container:
            video_id = (await container.videos.register(METADATA)).video_id
            with pytest.raises(ConflictError):
                await container.pipeline.start(video_id)

    @pytest.mark.asyncio
    async def test_repeated_finalize_does_not_reencode(self, services, tmp_path) -> None:
        encoder = FakeEncoder()
        async with services(tmp_path, encoder=encoder) as container:
            video_id = await upload_and_finalize(container)
            await container.pipeline.wait(video_id)
            await container.videos.finalize(video_id)
            await container.pipeline.wait(video_id)
            assert len(encoder.requests) == 3


class TestCompletionDelivery:
    """Duplicate and late completions."""

    @pytest.mark.asyncio
    async def test_duplicate_completion_is_a_noop(self, services, tmp_path) -> None:
        async with services(tmp_path) as container:
            video_id = await upload_and_finalize(container)
            await container.pipeline.wait(video_id)
            manifest_path = container.layout.manifest_path(video_id)
            before = manifest_path.read_text()

            await asyncio.gather(
                container.pipeline.handle_completion(video_id, "720p", succeeded=True),
                container.pipeline.handle_completion(video_id, "720p", succeeded=True),
            )

            assert manifest_path.read_text() == before
            assert MasterManifest.parse(before).targets.count("720p") == 1

    @pytest.mark.asyncio
    async def test_completion_after_cancel_is_ignored(self, services, tmp_path) -> None:
        gates = {t: asyncio.Event() for t in ("1080p", "720p", "360p")}
        async with services(tmp_path, encoder=FakeEncoder(gates=gates)) as container:
            video_id = await upload_and_finalize(container)

            cancelled = await container.pipeline.cancel(video_id)
            await container.pipeline.handle_completion(video_id, "1080p", succeeded=True)

            assert cancelled == 3
            status = await container.videos.get_status(video_id)
            assert set(job_states(status).values()) == {RenditionStatus.CANCELLED.value}
            assert status.status == VideoStatus.TRANSCODING.value
            assert not container.layout.manifest_path(video_id).exists()
            assert remote_keys(container, video_id) == []

    @pytest.mark.asyncio
    async def test_unknown_video_completion_is_ignored(self, services, tmp_path) -> None:
        async with services(tmp_path) as container:
            await container.pipeline.handle_completion(uuid.uuid4(), "720p", succeeded=True)
            await container.pipeline.handle_completion(uuid.uuid4(), "720p", succeeded=False, error="x")


class TestPublishFailures:
    """Storage failures are retried, then recorded against the target."""

    @pytest.mark.asyncio
    async def test_exhausted_publish_marks_target_failed(self, services, tmp_path) -> None:
        config = StorageConfig(backend="local", local_path=str(tmp_path / "bucket"))
        storage = FlakyStorage(config, fail_marker="/720p/")
        async with services(tmp_path, storage_backend=storage) as container:
            video_id = await upload_and_finalize(container)
            await container.pipeline.wait(video_id)

            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.READY.value
            states = job_states(status)
            assert states["720p"] == RenditionStatus.FAILED.value
            assert states["1080p"] == states["360p"] == RenditionStatus.SUCCEEDED.value
            assert "720p" not in status.manifest_targets
            assert storage.attempts == container.settings.PUBLISH_MAX_ATTEMPTS

            published = Path(storage.base_path) / f"{video_id}/master.m3u8"
            assert "720p" not in MasterManifest.parse(published.read_text()).targets
            assert not any("/720p/" in key for key in remote_keys(container, video_id))

    @pytest.mark.asyncio
    async def test_transient_publish_failure_is_retried(self, services, tmp_path) -> None:
        config = StorageConfig(backend="local", local_path=str(tmp_path / "bucket"))
        storage = FlakyStorage(config, fail_marker="/360p/", failures=1)
        async with services(tmp_path, storage_backend=storage) as container:
            video_id = await upload_and_finalize(container)
            await container.pipeline.wait(video_id)

            status = await container.videos.get_status(video_id)
            assert job_states(status)["360p"] == RenditionStatus.SUCCEEDED.value
            assert "360p" in status.manifest_targets


async def backdate_jobs(container, video_id: uuid.UUID, hours: float) -> None:
    async with container.session_factory() as session:
        await session.execute(
            update(RenditionJob)
            .where(RenditionJob.video_id == video_id)
            .values(started_at=datetime.now(timezone.utc) - timedelta(hours=hours))
        )
        await session.commit()


def never_finishing() -> FakeEncoder:
    return FakeEncoder(gates={t: asyncio.Event() for t in ("1080p", "720p", "360p")})


class TestStaleJobRecovery:
    """Jobs orphaned by a dead orchestrator end up failed instead of running forever."""

    @pytest.mark.asyncio
    async def test_restart_fails_orphaned_jobs(self, services, tmp_path) -> None:
        async with services(tmp_path, encoder=never_finishing()) as container:
            video_id = await upload_and_finalize(container)
            await container.pipeline.shutdown()
            await backdate_jobs(container, video_id, hours=3)

        async with services(tmp_path) as container:
            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.FAILED.value
            assert set(job_states(status).values()) == {RenditionStatus.FAILED.value}
            assert all("did not report completion" in job.error_message for job in status.renditions)

            await container.pipeline.handle_completion(video_id, "720p", succeeded=True)
            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.FAILED.value
            assert job_states(status)["720p"] == RenditionStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_recent_jobs_survive_restart(self, services, tmp_path) -> None:
        async with services(tmp_path, encoder=never_finishing()) as container:
            video_id = await upload_and_finalize(container)
            await container.pipeline.shutdown()

        async with services(tmp_path) as container:
            assert await container.pipeline.recover_stale_jobs() == 0
            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.TRANSCODING.value
            assert set(job_states(status).values()) == {RenditionStatus.RUNNING.value}

    @pytest.mark.asyncio
    async def test_jobs_with_live_encodes_are_left_alone(self, services, tmp_path) -> None:
        encoder = never_finishing()
        async with services(tmp_path, encoder=encoder) as container:
            video_id = await upload_and_finalize(container)
            await backdate_jobs(container, video_id, hours=3)

            assert await container.pipeline.recover_stale_jobs() == 0

            for gate in encoder.gates.values():
                gate.set()
            await container.pipeline.wait(video_id)
            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.READY.value

    @pytest.mark.asyncio
    async def test_start_recovers_stale_jobs_of_the_video(self, services, tmp_path) -> None:
        async with services(tmp_path, encoder=never_finishing()) as container:
            video_id = await upload_and_finalize(container)
            await container.pipeline.shutdown()
            await backdate_jobs(container, video_id, hours=3)

            with pytest.raises(ConflictError):
                await container.pipeline.start(video_id)

            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.FAILED.value
            assert set(job_states(status).values()) == {RenditionStatus.FAILED.value}
