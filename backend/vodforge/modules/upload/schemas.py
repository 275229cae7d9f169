"""Pydantic schemas for chunk intake and assembly."""

import uuid
from typing import Optional

from pydantic import BaseModel


class ChunkReceipt(BaseModel):
    """Acknowledgement of a stored chunk."""
    video_id: uuid.UUID
    chunk_index: int
    size: int
    received_count: int
    expected_count: int


class ChunkExistence(BaseModel):
    video_id: uuid.UUID
    chunk_index: int
    exists: bool


class AssemblyResult(BaseModel):
    """Outcome of a finalize call."""
    video_id: uuid.UUID
    status: str
    performed: bool  # False when the video was already assembled
    source_path: Optional[str] = None
    size: Optional[int] = None
