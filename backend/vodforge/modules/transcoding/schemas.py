"""Pydantic schemas for transcoding."""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class RenditionJobResponse(BaseModel):
    """Schema for rendition job response."""
    target: str
    width: int
    height: int
    bitrate: int
    profile: str
    level: str
    status: str
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CompletionCallback(BaseModel):
    """Completion report posted by an out-of-process encoder."""
    status: Literal["succeeded", "failed"]
    error: Optional[str] = Field(None, max_length=4000)


class CompletionAck(BaseModel):
    video_id: UUID
    target: str
    accepted: bool = True
