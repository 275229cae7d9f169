"""Property-based tests for chunk assembly.

The assembled source must equal the chunks concatenated in index order,
whatever order they arrived in, and assembly happens at most once.
"""

import asyncio
import tempfile
from pathlib import Path

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from vodforge.core.errors import ConflictError, ConsistencyError, NotFoundError
from vodforge.modules.video.models import VideoStatus


def metadata(chunk_count: int) -> dict:
    return {
        "hash": f"hash-{chunk_count}",
        "width": 1280,
        "height": 720,
        "duration": 10,
        "extension": "mp4",
        "size": 1000,
        "totalChunkCount": chunk_count,
    }


@st.composite
def chunks_with_arrival_order(draw):
    chunks = draw(st.lists(st.binary(min_size=1, max_size=64), min_size=1, max_size=12))
    order = draw(st.permutations(range(len(chunks))))
    return chunks, order


class TestAssemblyOrder:
    """Concatenation follows index order, never arrival order."""

    @given(data=chunks_with_arrival_order())
    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_assembled_bytes_match_index_order(self, services, data) -> None:
        chunks, order = data

        async def scenario() -> tuple[bytes, bool]:
            with tempfile.TemporaryDirectory() as root:
                async with services(Path(root)) as container:
                    registration = await container.videos.register(metadata(len(chunks)))
                    video_id = registration.video_id
                    for index in order:
                        await container.chunk_store.put(video_id, index, chunks[index])
                    result = await container.assembler.assemble(video_id)
                    staging_left = container.layout.staging_dir(video_id).exists()
                    return Path(result.source_path).read_bytes(), staging_left

        assembled, staging_left = asyncio.run(scenario())
        assert assembled == b"".join(chunks)
        assert not staging_left


class TestAssemblyContract:
    """State transitions, idempotency and failure handling."""

    @pytest.mark.asyncio
    async def test_missing_chunks_conflict_and_leave_state(self, services, tmp_path) -> None:
        async with services(tmp_path) as container:
            video_id = (await container.videos.register(metadata(3))).video_id
            await container.chunk_store.put(video_id, 0, b"a")
            await container.chunk_store.put(video_id, 2, b"c")

            with pytest.raises(ConflictError):
                await container.assembler.assemble(video_id)

            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.CHUNKS_PENDING.value
            assert status.received_chunks == [0, 2]

    @pytest.mark.asyncio
    async def test_reassembly_is_a_noop(self, services, tmp_path) -> None:
        async with services(tmp_path) as container:
            video_id = (await container.videos.register(metadata(2))).video_id
            await container.chunk_store.put(video_id, 1, b"world")
            await container.chunk_store.put(video_id, 0, b"hello ")

            first = await container.assembler.assemble(video_id)
            source = Path(first.source_path)
            mtime = source.stat().st_mtime_ns
            second = await container.assembler.assemble(video_id)

            assert first.performed is True
            assert second.performed is False
            assert second.status == VideoStatus.ASSEMBLED.value
            assert source.read_bytes() == b"hello world"
            assert source.stat().st_mtime_ns == mtime

    @pytest.mark.asyncio
    async def test_concurrent_finalize_assembles_once(self, services, tmp_path) -> None:
        async with services(tmp_path) as container:
            video_id = (await container.videos.register(metadata(3))).video_id
            for index, data in enumerate((b"a", b"b", b"c")):
                await container.chunk_store.put(video_id, index, data)

            results = await asyncio.gather(
                *(container.assembler.assemble(video_id) for _ in range(5))
            )

            assert sum(1 for r in results if r.performed) == 1
            assert all(r.status == VideoStatus.ASSEMBLED.value for r in results)
            assert Path(results[0].source_path).read_bytes() == b"abc"

    @pytest.mark.asyncio
    async def test_vanished_chunk_file_rolls_back(self, services, tmp_path) -> None:
        async with services(tmp_path) as container:
            video_id = (await container.videos.register(metadata(3))).video_id
            for index, data in enumerate((b"a", b"b", b"c")):
                await container.chunk_store.put(video_id, index, data)
            container.layout.chunk_path(video_id, 1).unlink()

            with pytest.raises(ConsistencyError):
                await container.assembler.assemble(video_id)

            status = await container.videos.get_status(video_id)
            assert status.status == VideoStatus.CHUNKS_PENDING.value
            assert status.received_chunks == [0, 2]
            assert await container.chunk_store.exists(video_id, 1) is False

            # Re-uploading only the lost chunk is enough
            await container.chunk_store.put(video_id, 1, b"b")
            result = await container.assembler.assemble(video_id)
            assert Path(result.source_path).read_bytes() == b"abc"

    @pytest.mark.asyncio
    async def test_unknown_video(self, services, tmp_path) -> None:
        import uuid

        async with services(tmp_path) as container:
            with pytest.raises(NotFoundError):
                await container.assembler.assemble(uuid.uuid4())
