"""Pydantic schemas for video registration and status."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vodforge.modules.transcoding.schemas import RenditionJobResponse


class VideoRegistrationRequest(BaseModel):
    """Upload metadata sent before the first chunk."""
    model_config = ConfigDict(populate_by_name=True)

    content_hash: str = Field(..., alias="hash", min_length=1, max_length=128)
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    duration: float = Field(..., ge=0)
    extension: str = Field(..., min_length=1, max_length=16)
    declared_size: int = Field(..., alias="size", gt=0)
    total_chunk_count: int = Field(..., alias="totalChunkCount", ge=1)

    @field_validator("extension")
    @classmethod
    def normalize_extension(cls, v: str) -> str:
        return v.lower().lstrip(".")


class VideoRegistrationResponse(BaseModel):
    video_id: uuid.UUID
    created: bool  # False when an in-progress upload of the same content was reused
    status: str
    expected_chunk_count: int


class VideoStatusResponse(BaseModel):
    """Everything known about a video's progress."""
    video_id: uuid.UUID
    status: str
    width: int
    height: int
    duration: float
    extension: str
    orientation: Optional[str] = None
    expected_chunk_count: int
    received_chunks: list[int] = Field(default_factory=list)
    renditions: list[RenditionJobResponse] = Field(default_factory=list)
    manifest_targets: list[str] = Field(default_factory=list)
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None


class VideoDeleteResponse(BaseModel):
    video_id: uuid.UUID
    deleted_objects: int
    removed_paths: list[str]
    cancelled_jobs: int


class ThumbnailResponse(BaseModel):
    video_id: uuid.UUID
    key: str
    url: str
    size: int
