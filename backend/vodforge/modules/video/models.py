"""VideoAsset model.

A VideoAsset is created when upload metadata is registered and carries the
lifecycle state every pipeline stage advances.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from vodforge.core.database import Base


class VideoStatus(str, Enum):
    """Lifecycle state of a video asset."""

    METADATA_REGISTERED = "metadata_registered"
    CHUNKS_PENDING = "chunks_pending"
    ASSEMBLING = "assembling"
    ASSEMBLED = "assembled"
    TRANSCODING = "transcoding"
    READY = "ready"
    FAILED = "failed"


# States that accept chunk uploads
UPLOADABLE_STATUSES = (VideoStatus.METADATA_REGISTERED, VideoStatus.CHUNKS_PENDING)

# States reached only after a successful assembly
POST_ASSEMBLY_STATUSES = (
    VideoStatus.ASSEMBLED,
    VideoStatus.TRANSCODING,
    VideoStatus.READY,
    VideoStatus.FAILED,
)


class Orientation(str, Enum):
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"


class VideoAsset(Base):
    """Uploaded source video and its pipeline state."""

    __tablename__ = "video_assets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    content_hash: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # Source description, as declared at registration
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    duration: Mapped[float] = mapped_column(Float, nullable=False)  # seconds
    extension: Mapped[str] = mapped_column(String(16), nullable=False)
    declared_size: Mapped[int] = mapped_column(BigInteger, nullable=False)  # bytes
    expected_chunk_count: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(
        String(32), default=VideoStatus.METADATA_REGISTERED.value, index=True
    )
    orientation: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    source_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    assembled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ready_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def is_assembled(self) -> bool:
        """True once assembly has completed, whatever happened afterwards."""
        return self.status in {s.value for s in POST_ASSEMBLY_STATUSES}

    def __repr__(self) -> str:
        return f"<VideoAsset(id={self.id}, status={self.status})>"
