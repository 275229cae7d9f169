"""ChunkRecord model: presence marker for one staged chunk."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from vodforge.core.database import Base


class ChunkRecord(Base):
    """A received chunk of a video's source file."""

    __tablename__ = "chunk_records"
    __table_args__ = (
        UniqueConstraint("video_id", "chunk_index", name="uq_chunk_records_video_index"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    video_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("video_assets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<ChunkRecord(video_id={self.video_id}, index={self.chunk_index})>"
