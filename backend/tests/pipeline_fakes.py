"""Test doubles shared by the pipeline tests."""

import asyncio
from pathlib import Path
from typing import Optional

from vodforge.core.config import Settings
from vodforge.core.errors import ExternalProcessError, StorageError
from vodforge.core.storage import LocalObjectStorage, StorageConfig, StorageResult
from vodforge.modules.transcoding.ffmpeg import EncodeRequest, EncodeResult


def make_settings(root: Path, **overrides) -> Settings:
    """Settings pointing every path and the metadata store under ``root``."""
    values = {
        "DATABASE_URL": f"sqlite+aiosqlite:///{root / 'metadata.db'}",
        "MEDIA_ROOT": str(root / "media"),
        "LOCAL_STORAGE_PATH": str(root / "bucket"),
        "STORAGE_BACKEND": "local",
        "REDIS_URL": None,
        "ENCODER_MODE": "local",
        "PUBLISH_MAX_ATTEMPTS": 3,
        "PUBLISH_INITIAL_DELAY": 0.0,
        "PUBLISH_MAX_DELAY": 0.0,
        "INTERNAL_CALLBACK_SECRET": "test-secret",
        "VIDEO_SERVER_URL": None,
        "LOG_JSON": False,
    }
    values.update(overrides)
    return Settings(**values)


async def no_sleep(delay: float) -> None:
    return None


class FakeEncoder:
    """Writes a tiny playlist and segment instead of running ffmpeg.

    Targets listed in ``failures`` raise ExternalProcessError; targets with a
    gate wait for it to be set before finishing.
    """

    def __init__(
        self,
        failures: Optional[dict[str, str]] = None,
        gates: Optional[dict[str, asyncio.Event]] = None,
    ):
        self.failures = failures or {}
        self.gates = gates or {}
        self.requests: list[EncodeRequest] = []

    async def encode(self, request: EncodeRequest) -> EncodeResult:
        self.requests.append(request)
        gate = self.gates.get(request.target)
        if gate is not None:
            await gate.wait()
        if request.target in self.failures:
            raise ExternalProcessError(self.failures[request.target], returncode=1)

        output_dir = Path(request.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        (output_dir / "segment_000.ts").write_bytes(f"ts:{request.target}".encode())
        (output_dir / "playlist.m3u8").write_text(
            "#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:5\n"
            "#EXTINF:5.0,\nsegment_000.ts\n#EXT-X-ENDLIST\n"
        )
        return EncodeResult(
            target=request.target,
            output_dir=str(output_dir),
            playlist_path=str(output_dir / "playlist.m3u8"),
            segment_count=1,
            elapsed_seconds=0.0,
        )


class FlakyStorage(LocalObjectStorage):
    """Local storage whose uploads fail for keys containing a marker."""

    def __init__(self, config: StorageConfig, fail_marker: str, failures: int = 10**6):
        super().__init__(config)
        self.fail_marker = fail_marker
        self.remaining_failures = failures
        self.attempts = 0

    def _maybe_fail(self, key: str) -> None:
        if self.fail_marker in key:
            self.attempts += 1
            if self.remaining_failures > 0:
                self.remaining_failures -= 1
                raise StorageError(f"Injected failure for {key}", key=key)

    def put_object(self, key: str, body: bytes, content_type: str = "application/octet-stream") -> StorageResult:
        self._maybe_fail(key)
        return super().put_object(key, body, content_type)

    def put_file(self, key: str, file_path: str) -> StorageResult:
        self._maybe_fail(key)
        return super().put_file(key, file_path)
