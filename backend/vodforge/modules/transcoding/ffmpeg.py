"""FFmpeg HLS encoding of a single rendition.

Each encode runs as its own child process, awaited without blocking the
event loop. A wall-clock budget bounds every run; a run that exceeds it is
killed and reported like any other failed exit.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from vodforge.core.errors import ExternalProcessError
from vodforge.core.logging import log_info, log_warning
from vodforge.modules.transcoding.abr import ABRVariant
from vodforge.modules.video.layout import PLAYLIST_NAME, SEGMENT_PATTERN

logger = logging.getLogger(__name__)

# Keep the tail of stderr for error reports
STDERR_TAIL_BYTES = 2000


@dataclass
class EncodeRequest:
    """Everything one encoder process needs."""
    video_id: uuid.UUID
    target: str
    source_path: str
    output_dir: str
    width: int
    height: int
    bitrate: int
    profile: str
    level: str
    segment_seconds: int = 5
    audio_bitrate: int = 128000

    @classmethod
    def for_variant(
        cls,
        video_id: uuid.UUID,
        variant: ABRVariant,
        source_path: str,
        output_dir: str,
        segment_seconds: int,
    ) -> "EncodeRequest":
        return cls(
            video_id=video_id,
            target=variant.label,
            source_path=source_path,
            output_dir=output_dir,
            width=variant.width,
            height=variant.height,
            bitrate=variant.bitrate,
            profile=variant.profile,
            level=variant.level,
            segment_seconds=segment_seconds,
        )

    @property
    def max_bitrate(self) -> int:
        return int(self.bitrate * 1.07)

    @property
    def buffer_size(self) -> int:
        return int(self.bitrate * 1.5)

    @property
    def playlist_path(self) -> Path:
        return Path(self.output_dir) / PLAYLIST_NAME

    def to_payload(self) -> dict:
        """JSON-safe form for the task queue."""
        payload = asdict(self)
        payload["video_id"] = str(self.video_id)
        return payload

    @classmethod
    def from_payload(cls, payload: dict) -> "EncodeRequest":
        return cls(**{**payload, "video_id": uuid.UUID(payload["video_id"])})


@dataclass
class EncodeResult:
    """Result of a successful encode."""
    target: str
    output_dir: str
    playlist_path: str
    segment_count: int
    elapsed_seconds: float


async def cleanup_process(process: asyncio.subprocess.Process, context: str = "ffmpeg") -> None:
    """Kill ``process`` if it is still running and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            # Exited between the check and the kill
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            log_warning(logger, f"{context} process did not terminate after kill", pid=process.pid)


class RenditionEncoder:
    """Runs ffmpeg to produce one HLS rendition."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        timeout: float = 3600.0,
    ):
        """Initialize encoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            timeout: Wall-clock budget per encode, in seconds
        """
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    def build_command(self, request: EncodeRequest) -> list[str]:
        """Build the ffmpeg command for an HLS rendition.

        Keyframes are forced on segment boundaries so every segment starts
        with an IDR frame and has the configured length.
        """
        output_dir = Path(request.output_dir)
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-nostdin",
            "-i", request.source_path,
            # Video settings
            "-vf", f"scale={request.width}:{request.height}",
            "-c:v", "libx264",
            "-preset", "medium",
            "-profile:v", request.profile,
            "-level:v", request.level,
            "-pix_fmt", "yuv420p",
            "-b:v", str(request.bitrate),
            "-maxrate", str(request.max_bitrate),
            "-bufsize", str(request.buffer_size),
            "-force_key_frames", f"expr:gte(t,n_forced*{request.segment_seconds})",
            "-sc_threshold", "0",
            # Audio settings
            "-c:a", "aac",
            "-b:a", str(request.audio_bitrate),
            "-ac", "2",
            # Output format
            "-f", "hls",
            "-hls_time", str(request.segment_seconds),
            "-hls_playlist_type", "vod",
            "-hls_list_size", "0",
            "-hls_segment_filename", str(output_dir / SEGMENT_PATTERN),
            str(output_dir / PLAYLIST_NAME),
        ]

    async def encode(self, request: EncodeRequest) -> EncodeResult:
        """Encode one rendition, killing the process on timeout or cancellation.

        Raises:
            ExternalProcessError: ffmpeg could not start, exited non-zero,
                timed out, or left no playlist behind.
        """
        output_dir = Path(request.output_dir)
        await asyncio.to_thread(output_dir.mkdir, parents=True, exist_ok=True)
        cmd = self.build_command(request)
        context = {"video_id": str(request.video_id), "target": request.target}

        log_info(logger, "Starting encode", command=" ".join(cmd), **context)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExternalProcessError(f"Could not start encoder: {e}", **context) from e

        stderr: Optional[bytes] = None
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ExternalProcessError(
                f"Encoder exceeded {self.timeout:.0f}s",
                timed_out=True,
                **context,
            ) from None
        finally:
            # Runs on timeout and on task cancellation alike
            await cleanup_process(process)

        elapsed = time.monotonic() - started
        if process.returncode != 0:
            tail = (stderr or b"")[-STDERR_TAIL_BYTES:].decode("utf-8", errors="replace")
            raise ExternalProcessError(
                f"Encoder exited with code {process.returncode}",
                returncode=process.returncode,
                stderr=tail,
                **context,
            )

        if not request.playlist_path.is_file():
            raise ExternalProcessError(
                "Encoder exited cleanly but wrote no playlist",
                returncode=process.returncode,
                **context,
            )

        segment_count = sum(1 for _ in output_dir.glob("*.ts"))
        log_info(
            logger,
            "Encode finished",
            elapsed_seconds=round(elapsed, 2),
            segment_count=segment_count,
            **context,
        )
        return EncodeResult(
            target=request.target,
            output_dir=str(output_dir),
            playlist_path=str(request.playlist_path),
            segment_count=segment_count,
            elapsed_seconds=elapsed,
        )
