"""Video API router."""

import uuid

from fastapi import APIRouter, Depends, Request, Response, status

from vodforge.dependencies import get_video_service
from vodforge.modules.video.schemas import (
    ThumbnailResponse,
    VideoDeleteResponse,
    VideoRegistrationRequest,
    VideoRegistrationResponse,
    VideoStatusResponse,
)
from vodforge.modules.video.service import VideoService

router = APIRouter(prefix="/videos", tags=["videos"])


@router.post("", response_model=VideoRegistrationResponse)
async def register_video(
    data: VideoRegistrationRequest,
    response: Response,
    service: VideoService = Depends(get_video_service),
):
    """Register upload metadata.

    Returns 201 for a new video and 200 when an in-progress upload of the
    same content is reused.
    """
    result = await service.register(data)
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return result


@router.get("/{video_id}", response_model=VideoStatusResponse)
async def get_video_status(
    video_id: uuid.UUID,
    service: VideoService = Depends(get_video_service),
):
    return await service.get_status(video_id)


@router.put("/{video_id}/thumbnail", response_model=ThumbnailResponse)
async def put_thumbnail(
    video_id: uuid.UUID,
    request: Request,
    service: VideoService = Depends(get_video_service),
):
    """Upload a thumbnail as the raw request body; it is stored as WebP."""
    return await service.publish_thumbnail(video_id, await request.body())


@router.delete("/{video_id}", response_model=VideoDeleteResponse)
async def delete_video(
    video_id: uuid.UUID,
    service: VideoService = Depends(get_video_service),
):
    """Cancel in-flight encodes and delete every artifact of the video."""
    return await service.delete(video_id)
