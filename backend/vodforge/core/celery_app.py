"""Celery application configuration."""

from celery import Celery

from vodforge.core.config import settings

celery_app = Celery(
    "vodforge",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Encodes enforce their own budget; this only catches a hung worker
    task_time_limit=int(settings.ENCODE_TIMEOUT_SECONDS) + 300,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.autodiscover_tasks(["vodforge.modules.transcoding"])
