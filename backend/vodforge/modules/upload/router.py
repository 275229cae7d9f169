"""Chunk upload API router."""

import uuid

from fastapi import APIRouter, Depends, Request, Response, status

from vodforge.dependencies import get_chunk_store, get_video_service
from vodforge.modules.upload.chunk_store import ChunkStore
from vodforge.modules.upload.schemas import AssemblyResult, ChunkExistence, ChunkReceipt
from vodforge.modules.video.service import VideoService

router = APIRouter(prefix="/videos", tags=["uploads"])


@router.get("/{video_id}/chunks/{chunk_index}", response_model=ChunkExistence)
async def get_chunk(
    video_id: uuid.UUID,
    chunk_index: int,
    store: ChunkStore = Depends(get_chunk_store),
):
    """Report whether a chunk was already received, so clients can skip it."""
    exists = await store.exists(video_id, chunk_index)
    return ChunkExistence(video_id=video_id, chunk_index=chunk_index, exists=exists)


@router.head("/{video_id}/chunks/{chunk_index}")
async def head_chunk(
    video_id: uuid.UUID,
    chunk_index: int,
    store: ChunkStore = Depends(get_chunk_store),
) -> Response:
    exists = await store.exists(video_id, chunk_index)
    return Response(status_code=status.HTTP_200_OK if exists else status.HTTP_404_NOT_FOUND)


@router.put("/{video_id}/chunks/{chunk_index}", response_model=ChunkReceipt)
async def put_chunk(
    video_id: uuid.UUID,
    chunk_index: int,
    request: Request,
    store: ChunkStore = Depends(get_chunk_store),
):
    """Upload one chunk as the raw request body."""
    data = await request.body()
    return await store.put(video_id, chunk_index, data)


@router.post("/{video_id}/finalize", response_model=AssemblyResult)
async def finalize_upload(
    video_id: uuid.UUID,
    service: VideoService = Depends(get_video_service),
):
    """Assemble the received chunks and start transcoding."""
    return await service.finalize(video_id)
