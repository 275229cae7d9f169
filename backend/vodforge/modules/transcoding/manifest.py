"""Master HLS manifest per video.

The manifest is rebuilt by read-modify-write as renditions complete in any
order. Every write for one video happens while holding that video's lock,
so concurrent completions never lose each other's entries, and a target
label appears at most once however often its completion is delivered.
"""

import asyncio
import logging
import os
import re
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from vodforge.core.errors import ConsistencyError
from vodforge.core.locks import KeyedLockBase
from vodforge.core.logging import log_info
from vodforge.modules.video.layout import MediaLayout

logger = logging.getLogger(__name__)

MANIFEST_HEADER = "#EXTM3U\n#EXT-X-VERSION:3\n"
STREAM_INF_PREFIX = "#EXT-X-STREAM-INF:"

_ATTRIBUTE_RE = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')


@dataclass(frozen=True)
class ManifestEntry:
    """One stream variant of the master manifest."""
    target: str
    bandwidth: int
    width: int
    height: int
    uri: str

    def render(self) -> str:
        return (
            f"{STREAM_INF_PREFIX}BANDWIDTH={self.bandwidth},"
            f"RESOLUTION={self.width}x{self.height}\n{self.uri}\n"
        )


@dataclass
class MasterManifest:
    """Ordered, deduplicated list of variant entries."""
    entries: list[ManifestEntry] = field(default_factory=list)

    @property
    def targets(self) -> list[str]:
        return [entry.target for entry in self.entries]

    def has(self, target: str) -> bool:
        return target in self.targets

    def render(self) -> str:
        return MANIFEST_HEADER + "".join(entry.render() for entry in self.entries)

    @classmethod
    def parse(cls, text: str) -> "MasterManifest":
        """Parse manifest text written by ``render``.

        The target label is the first path component of each variant URI.

        Raises:
            ConsistencyError: the text is not a master manifest.
        """
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if not lines or lines[0] != "#EXTM3U":
            raise ConsistencyError("Master manifest lacks #EXTM3U header")

        entries = []
        pending: Optional[dict] = None
        for line in lines[1:]:
            if line.startswith(STREAM_INF_PREFIX):
                attrs = dict(_ATTRIBUTE_RE.findall(line[len(STREAM_INF_PREFIX):]))
                try:
                    width, height = (int(v) for v in attrs["RESOLUTION"].split("x"))
                    pending = {
                        "bandwidth": int(attrs["BANDWIDTH"]),
                        "width": width,
                        "height": height,
                    }
                except (KeyError, ValueError) as e:
                    raise ConsistencyError(
                        "Malformed stream entry in master manifest", line=line
                    ) from e
            elif line.startswith("#"):
                continue
            elif pending is not None:
                entries.append(ManifestEntry(target=line.split("/", 1)[0], uri=line, **pending))
                pending = None
        return cls(entries=entries)


class AppendOutcome(str, Enum):
    APPENDED = "appended"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"  # the video is gone


def _write_text_atomically(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.part")
    tmp_path.write_text(text, encoding="utf-8")
    os.replace(tmp_path, path)


class ManifestAggregator:
    """Serialized read-append-write of each video's master manifest."""

    def __init__(self, layout: MediaLayout, lock: KeyedLockBase):
        self.layout = layout
        self.lock = lock

    @asynccontextmanager
    async def exclusive(self, video_id: uuid.UUID) -> AsyncIterator[None]:
        """Hold the video's manifest lock; deletion takes it too."""
        async with self.lock.hold(f"manifest:{video_id}"):
            yield

    async def read(self, video_id: uuid.UUID) -> Optional[MasterManifest]:
        """Current manifest, or None if nothing has been written yet."""
        path = self.layout.manifest_path(video_id)
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        return MasterManifest.parse(text)

    async def append(
        self,
        video_id: uuid.UUID,
        entry: ManifestEntry,
        is_live: Optional[Callable[[uuid.UUID], Awaitable[bool]]] = None,
    ) -> AppendOutcome:
        """Add ``entry`` unless its target is already listed.

        ``is_live`` is checked under the lock; a video deleted meanwhile is
        left untouched.
        """
        async with self.exclusive(video_id):
            if is_live is not None and not await is_live(video_id):
                return AppendOutcome.SKIPPED

            manifest = await self.read(video_id) or MasterManifest()
            if manifest.has(entry.target):
                log_info(
                    logger,
                    "Manifest entry already present",
                    video_id=str(video_id),
                    target=entry.target,
                )
                return AppendOutcome.DUPLICATE

            manifest.entries.append(entry)
            await self._write(video_id, manifest)
            log_info(
                logger,
                "Manifest entry appended",
                video_id=str(video_id),
                target=entry.target,
                entry_count=len(manifest.entries),
            )
            return AppendOutcome.APPENDED

    async def remove(self, video_id: uuid.UUID, target: str) -> bool:
        """Drop the entry for ``target``; used when its publish failed."""
        async with self.exclusive(video_id):
            manifest = await self.read(video_id)
            if manifest is None or not manifest.has(target):
                return False
            manifest.entries = [e for e in manifest.entries if e.target != target]
            await self._write(video_id, manifest)
            return True

    async def _write(self, video_id: uuid.UUID, manifest: MasterManifest) -> None:
        await asyncio.to_thread(
            _write_text_atomically, self.layout.manifest_path(video_id), manifest.render()
        )
