"""Tests for the ffmpeg rendition encoder.

Process handling is exercised against a stand-in executable that mimics
ffmpeg's outputs, so no real encoder is needed.
"""

import asyncio
import os
import stat
import sys
import uuid
from pathlib import Path

import pytest

from vodforge.core.errors import ErrorKind, ExternalProcessError
from vodforge.modules.transcoding.abr import select_targets
from vodforge.modules.transcoding.ffmpeg import EncodeRequest, RenditionEncoder

FAKE_FFMPEG = """#!{python}
import os, sys, time
from pathlib import Path

mode = os.environ.get("FAKE_FFMPEG_MODE", "ok")
if mode == "sleep":
    time.sleep(30)
if mode == "fail":
    sys.stderr.write("Invalid data found when processing input\\n")
    sys.exit(1)
playlist = Path(sys.argv[-1])
if mode != "no-output":
    (playlist.parent / "segment_000.ts").write_bytes(b"ts")
    (playlist.parent / "segment_001.ts").write_bytes(b"ts")
    playlist.write_text("#EXTM3U\\n#EXT-X-ENDLIST\\n")
"""


@pytest.fixture
def fake_ffmpeg(tmp_path) -> str:
    path = tmp_path / "ffmpeg"
    path.write_text(FAKE_FFMPEG.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


def make_request(tmp_path: Path, target_index: int = 1) -> EncodeRequest:
    variant = select_targets(1920, 1080)[1][target_index]
    return EncodeRequest.for_variant(
        uuid.uuid4(),
        variant,
        source_path=str(tmp_path / "source.mp4"),
        output_dir=str(tmp_path / "out" / variant.label),
        segment_seconds=5,
    )


class TestBuildCommand:
    """Arguments follow the rendition settings."""

    def test_command_carries_scale_bitrate_and_profile(self, tmp_path) -> None:
        request = make_request(tmp_path)
        cmd = RenditionEncoder(ffmpeg_path="/usr/bin/ffmpeg").build_command(request)

        assert cmd[0] == "/usr/bin/ffmpeg"
        assert cmd[cmd.index("-i") + 1] == request.source_path
        assert cmd[cmd.index("-vf") + 1] == "scale=1280:720"
        assert cmd[cmd.index("-b:v") + 1] == "2800000"
        assert cmd[cmd.index("-maxrate") + 1] == str(request.max_bitrate)
        assert request.bitrate < request.max_bitrate < request.bitrate * 1.1
        assert cmd[cmd.index("-bufsize") + 1] == "4200000"
        assert cmd[cmd.index("-profile:v") + 1] == "main"
        assert cmd[cmd.index("-level:v") + 1] == "3.1"
        assert cmd[cmd.index("-hls_time") + 1] == "5"
        assert cmd[cmd.index("-f") + 1] == "hls"
        assert cmd[-1] == str(Path(request.output_dir) / "playlist.m3u8")
        assert cmd[cmd.index("-hls_segment_filename") + 1].endswith("segment_%03d.ts")

    def test_payload_round_trip_keeps_video_id_type(self, tmp_path) -> None:
        request = make_request(tmp_path)
        restored = EncodeRequest.from_payload(request.to_payload())
        assert restored == request
        assert isinstance(request.to_payload()["video_id"], str)


@pytest.mark.skipif(os.name != "posix", reason="stand-in executable needs a POSIX shebang")
class TestEncodeProcess:
    """Exit status decides the outcome of an encode."""

    @pytest.mark.asyncio
    async def test_successful_encode(self, tmp_path, fake_ffmpeg, monkeypatch) -> None:
        monkeypatch.setenv("FAKE_FFMPEG_MODE", "ok")
        request = make_request(tmp_path)
        result = await RenditionEncoder(ffmpeg_path=fake_ffmpeg, timeout=30).encode(request)

        assert result.segment_count == 2
        assert Path(result.playlist_path).is_file()

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_with_stderr(self, tmp_path, fake_ffmpeg, monkeypatch) -> None:
        monkeypatch.setenv("FAKE_FFMPEG_MODE", "fail")
        with pytest.raises(ExternalProcessError) as exc_info:
            await RenditionEncoder(ffmpeg_path=fake_ffmpeg, timeout=30).encode(make_request(tmp_path))

        error = exc_info.value
        assert error.kind == ErrorKind.EXTERNAL_PROCESS
        assert error.returncode == 1
        assert "Invalid data" in error.context["stderr"]

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path, fake_ffmpeg, monkeypatch) -> None:
        monkeypatch.setenv("FAKE_FFMPEG_MODE", "sleep")
        with pytest.raises(ExternalProcessError) as exc_info:
            await RenditionEncoder(ffmpeg_path=fake_ffmpeg, timeout=0.5).encode(make_request(tmp_path))
        assert exc_info.value.timed_out is True

    @pytest.mark.asyncio
    async def test_clean_exit_without_playlist_fails(self, tmp_path, fake_ffmpeg, monkeypatch) -> None:
        monkeypatch.setenv("FAKE_FFMPEG_MODE", "no-output")
        with pytest.raises(ExternalProcessError):
            await RenditionEncoder(ffmpeg_path=fake_ffmpeg, timeout=30).encode(make_request(tmp_path))

    @pytest.mark.asyncio
    async def test_missing_binary_fails(self, tmp_path) -> None:
        encoder = RenditionEncoder(ffmpeg_path=str(tmp_path / "does-not-exist"), timeout=30)
        with pytest.raises(ExternalProcessError):
            await encoder.encode(make_request(tmp_path))

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self, tmp_path, fake_ffmpeg, monkeypatch) -> None:
        monkeypatch.setenv("FAKE_FFMPEG_MODE", "sleep")
        task = asyncio.create_task(
            RenditionEncoder(ffmpeg_path=fake_ffmpeg, timeout=60).encode(make_request(tmp_path))
        )
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=10)
