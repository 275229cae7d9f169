"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
Components receive a Settings instance explicitly; the module-level
``settings`` object is only read by process entry points.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "VodForge Media Pipeline"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Metadata store
    DATABASE_URL: str = "sqlite+aiosqlite:///./vodforge.db"

    # Redis - optional, enables cross-process per-video locking
    REDIS_URL: Optional[str] = None
    LOCK_TIMEOUT_SECONDS: float = 120.0

    # Local working area (staging chunks, assembled sources, renditions)
    MEDIA_ROOT: str = "./media"

    # Upload limits
    MAX_CHUNK_BYTES: int = 64 * 1024 * 1024
    MAX_CHUNK_COUNT: int = 100_000
    ALLOWED_EXTENSIONS: list[str] = ["mp4", "mov", "mkv", "webm", "avi"]

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio
    STORAGE_BACKEND: str = "local"
    LOCAL_STORAGE_PATH: str = "./storage"
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_USE_SSL: bool = True
    STORAGE_LIST_PAGE_SIZE: int = 1000

    # Publishing retries
    PUBLISH_MAX_ATTEMPTS: int = 3
    PUBLISH_INITIAL_DELAY: float = 1.0
    PUBLISH_MAX_DELAY: float = 30.0

    # Encoder
    FFMPEG_PATH: str = "ffmpeg"
    HLS_SEGMENT_SECONDS: int = 5
    ENCODE_TIMEOUT_SECONDS: float = 3600.0
    # Running jobs older than the encode timeout plus this grace are failed
    STALE_JOB_GRACE_SECONDS: float = 300.0
    STALE_JOB_SWEEP_SECONDS: float = 300.0
    # ENCODER_MODE: local (asyncio subprocesses) or celery (remote workers)
    ENCODER_MODE: str = "local"

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"

    # Internal completion callback (remote encoders -> orchestrator)
    INTERNAL_CALLBACK_URL: str = "http://localhost:8000/api/v1/internal"
    INTERNAL_CALLBACK_SECRET: str = ""
    INTERNAL_SECRET_HEADER: str = "X-Internal-Secret"

    # Remote video node notified on deletion (optional)
    VIDEO_SERVER_URL: Optional[str] = None
    VIDEO_SERVER_TIMEOUT_SECONDS: float = 5.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
