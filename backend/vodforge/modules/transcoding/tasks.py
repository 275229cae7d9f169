"""Celery tasks for out-of-process encoding.

A worker runs the encode and reports the outcome to the orchestrator through
the authenticated internal completion endpoint. Reporting is its own task so
that a failing callback is retried without re-running the encode.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx
from celery import Task

from vodforge.core.celery_app import celery_app
from vodforge.core.config import settings
from vodforge.core.errors import ExternalProcessError
from vodforge.core.logging import log_error, log_info, set_correlation_id
from vodforge.core.retry import RETRY_CONFIGS, RetryConfig
from vodforge.modules.transcoding.ffmpeg import EncodeRequest, RenditionEncoder

logger = logging.getLogger(__name__)


class BaseTaskWithRetry(Task):
    """Base Celery task with exponential backoff retry logic."""

    abstract = True
    retry_config_name: str = "default"

    @property
    def retry_config(self) -> RetryConfig:
        return RETRY_CONFIGS.get(self.retry_config_name, RETRY_CONFIGS["default"])

    def retry_with_backoff(self, exc: Exception, attempt: int) -> None:
        """Retry the task with exponential backoff.

        Args:
            exc: The exception that caused the failure.
            attempt: The current attempt number (1-indexed).

        Raises:
            MaxRetriesExceededError: If max attempts have been reached.
        """
        config = self.retry_config

        if attempt >= config.max_attempts:
            raise self.MaxRetriesExceededError(
                f"Max retries ({config.max_attempts}) exceeded for task"
            )

        delay = config.calculate_delay(attempt)
        raise self.retry(exc=exc, countdown=delay)


def completion_url(video_id: str, target: str) -> str:
    base = settings.INTERNAL_CALLBACK_URL.rstrip("/")
    return f"{base}/videos/{video_id}/renditions/{target}/complete"


@celery_app.task(bind=True, name="vodforge.encode_rendition")
def encode_rendition_task(self: Task, payload: dict) -> dict:
    """Encode one rendition and queue the completion report.

    Args:
        payload: ``EncodeRequest.to_payload()`` of the rendition

    Returns:
        dict: Outcome reported to the orchestrator
    """
    request = EncodeRequest.from_payload(payload)
    set_correlation_id(str(request.video_id))
    encoder = RenditionEncoder(
        ffmpeg_path=settings.FFMPEG_PATH,
        timeout=settings.ENCODE_TIMEOUT_SECONDS,
    )

    status, error = "succeeded", None
    try:
        asyncio.run(encoder.encode(request))
    except ExternalProcessError as e:
        log_error(
            logger,
            "Encode failed",
            video_id=str(request.video_id),
            target=request.target,
            error=e.message,
        )
        status, error = "failed", e.message
    except Exception as e:
        # Report before letting Celery record the crash
        report_completion_task.delay(str(request.video_id), request.target, "failed", str(e))
        raise

    report_completion_task.delay(str(request.video_id), request.target, status, error)
    return {"video_id": str(request.video_id), "target": request.target, "status": status}


@celery_app.task(
    bind=True,
    base=BaseTaskWithRetry,
    name="vodforge.report_completion",
    retry_config_name="callback",
)
def report_completion_task(
    self: BaseTaskWithRetry,
    video_id: str,
    target: str,
    status: str,
    error: Optional[str] = None,
) -> dict[str, Any]:
    """Post an encode outcome to the orchestrator's internal endpoint."""
    try:
        response = httpx.post(
            completion_url(video_id, target),
            json={"status": status, "error": error},
            headers={settings.INTERNAL_SECRET_HEADER: settings.INTERNAL_CALLBACK_SECRET},
            timeout=10.0,
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        log_error(
            logger,
            "Completion callback failed",
            video_id=video_id,
            target=target,
            attempt=self.request.retries + 1,
            error=str(e),
        )
        self.retry_with_backoff(e, self.request.retries + 1)

    log_info(logger, "Completion reported", video_id=video_id, target=target, status=status)
    return {"video_id": video_id, "target": target, "status": status}


class CeleryEncodeDispatcher:
    """Sends encodes to Celery workers."""

    def dispatch(self, request: EncodeRequest) -> str:
        result = encode_rendition_task.delay(request.to_payload())
        return result.id

    def revoke(self, task_ids: list[str]) -> None:
        celery_app.control.revoke(task_ids, terminate=True)
