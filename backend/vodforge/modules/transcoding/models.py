"""Rendition targets and the RenditionJob model."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from vodforge.core.database import Base


class Target(str, Enum):
    """Rendition tiers, named by the nominal short edge."""

    RES_1080P = "1080p"
    RES_720P = "720p"
    RES_360P = "360p"


# Nominal short edge of each tier
TARGET_SHORT_EDGE = {
    Target.RES_1080P: 1080,
    Target.RES_720P: 720,
    Target.RES_360P: 360,
}

# Fixed video bitrate per tier (bps)
TARGET_BITRATES = {
    Target.RES_1080P: 4_800_000,
    Target.RES_720P: 2_800_000,
    Target.RES_360P: 640_000,
}

# H.264 profile and level per tier
TARGET_PROFILES = {
    Target.RES_1080P: ("high", "4.1"),
    Target.RES_720P: ("main", "3.1"),
    Target.RES_360P: ("baseline", "3.0"),
}


class RenditionStatus(str, Enum):
    """Status of a rendition job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RENDITION_STATUSES = (
    RenditionStatus.SUCCEEDED,
    RenditionStatus.FAILED,
    RenditionStatus.CANCELLED,
)


class RenditionJob(Base):
    """One encode of a video into one target tier."""

    __tablename__ = "rendition_jobs"
    __table_args__ = (
        UniqueConstraint("video_id", "target", name="uq_rendition_jobs_video_target"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    video_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("video_assets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    target: Mapped[str] = mapped_column(String(16), nullable=False)

    # Encode settings
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    bitrate: Mapped[int] = mapped_column(Integer, nullable=False)  # bps
    profile: Mapped[str] = mapped_column(String(16), nullable=False)
    level: Mapped[str] = mapped_column(String(8), nullable=False)

    status: Mapped[str] = mapped_column(String(16), default=RenditionStatus.QUEUED.value)
    output_dir: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_RENDITION_STATUSES}

    def __repr__(self) -> str:
        return f"<RenditionJob {self.video_id} - {self.target} - {self.status}>"
