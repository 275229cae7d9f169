"""Internal completion endpoint for out-of-process encoders."""

import hmac
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status

from vodforge.dependencies import get_container
from vodforge.container import ServiceContainer
from vodforge.modules.transcoding.schemas import CompletionAck, CompletionCallback

router = APIRouter(prefix="/internal", tags=["internal"])


def verify_internal_secret(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> None:
    """Reject callers without the shared secret header.

    An empty configured secret disables the endpoint.
    """
    settings = container.settings
    expected = settings.INTERNAL_CALLBACK_SECRET
    provided = request.headers.get(settings.INTERNAL_SECRET_HEADER, "")
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.post(
    "/videos/{video_id}/renditions/{target}/complete",
    response_model=CompletionAck,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(verify_internal_secret)],
)
async def complete_rendition(
    video_id: uuid.UUID,
    target: str,
    data: CompletionCallback,
    container: ServiceContainer = Depends(get_container),
):
    """Record an encode outcome; unknown or deleted videos are ignored."""
    await container.pipeline.handle_completion(
        video_id,
        target,
        succeeded=data.status == "succeeded",
        error=data.error,
    )
    return CompletionAck(video_id=video_id, target=target)
