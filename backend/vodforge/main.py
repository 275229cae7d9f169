"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from vodforge.container import ServiceContainer, build_container
from vodforge.core.config import Settings, settings as default_settings
from vodforge.core.errors import ErrorKind, MediaPipelineError, ValidationError
from vodforge.core.logging import get_correlation_id, setup_logging
from vodforge.core.middleware import RequestContextMiddleware
from vodforge.modules.transcoding.router import router as internal_router
from vodforge.modules.upload.router import router as upload_router
from vodforge.modules.video.router import router as video_router

ERROR_STATUS_CODES = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.EXTERNAL_PROCESS: 502,
    ErrorKind.STORAGE: 503,
    ErrorKind.CONSISTENCY: 500,
}


async def media_pipeline_error_handler(request: Request, exc: MediaPipelineError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS_CODES.get(exc.kind, 500),
        content={"error": exc.to_dict(), "correlation_id": get_correlation_id()},
    )


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
    return await media_pipeline_error_handler(
        request, ValidationError("Invalid request", fields=fields)
    )


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """Create the API application.

    Args:
        settings: Configuration; defaults to the environment.
        container: Prebuilt services. When given, the caller owns its
            startup and shutdown.
    """
    settings = settings or (container.settings if container else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container is not None:
            app.state.container = container
            yield
            return

        services = build_container(settings)
        await services.startup()
        app.state.container = services
        try:
            yield
        finally:
            await services.shutdown()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
    )
    if container is not None:
        # Available without running the lifespan
        app.state.container = container

    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(MediaPipelineError, media_pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    app.include_router(video_router, prefix=settings.API_V1_PREFIX)
    app.include_router(upload_router, prefix=settings.API_V1_PREFIX)
    app.include_router(internal_router, prefix=settings.API_V1_PREFIX)
    return app


setup_logging(
    level="DEBUG" if default_settings.DEBUG else default_settings.LOG_LEVEL,
    json_format=default_settings.LOG_JSON,
)

app = create_app()
