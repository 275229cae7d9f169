"""Local paths and remote keys of every artifact derived from a video.

All artifacts of one video live under directories and key prefixes named by
its id, so staging, renditions and remote objects are partitioned per video
and a prefix sweep reclaims everything.
"""

import uuid
from pathlib import Path

PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
MASTER_MANIFEST_NAME = "master.m3u8"
THUMBNAIL_NAME = "thumbnail.webp"


class MediaLayout:
    """Maps a video id onto local directories and object-storage keys."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    # Local staging
    def staging_dir(self, video_id: uuid.UUID) -> Path:
        return self.root / "staging" / str(video_id)

    def chunk_path(self, video_id: uuid.UUID, chunk_index: int) -> Path:
        return self.staging_dir(video_id) / f"{chunk_index:06d}.chunk"

    # Local working directory
    def video_dir(self, video_id: uuid.UUID) -> Path:
        return self.root / "videos" / str(video_id)

    def source_path(self, video_id: uuid.UUID, extension: str) -> Path:
        return self.video_dir(video_id) / f"source.{extension.lstrip('.')}"

    def rendition_dir(self, video_id: uuid.UUID, target: str) -> Path:
        return self.video_dir(video_id) / target

    def manifest_path(self, video_id: uuid.UUID) -> Path:
        return self.video_dir(video_id) / MASTER_MANIFEST_NAME

    # Remote keys
    def remote_prefix(self, video_id: uuid.UUID) -> str:
        return f"{video_id}/"

    def rendition_prefix(self, video_id: uuid.UUID, target: str) -> str:
        return f"{video_id}/{target}/"

    def rendition_key(self, video_id: uuid.UUID, target: str, filename: str) -> str:
        return f"{self.rendition_prefix(video_id, target)}{filename}"

    def manifest_key(self, video_id: uuid.UUID) -> str:
        return f"{video_id}/{MASTER_MANIFEST_NAME}"

    def thumbnail_key(self, video_id: uuid.UUID) -> str:
        return f"{video_id}/{THUMBNAIL_NAME}"

    @staticmethod
    def playlist_uri(target: str) -> str:
        """Sub-playlist path relative to the master manifest."""
        return f"{target}/{PLAYLIST_NAME}"


def video_lock_key(video_id: uuid.UUID) -> str:
    """Lock held by every writer of a video's staging, source and thumbnail, and by deletion."""
    return f"video:{video_id}"
