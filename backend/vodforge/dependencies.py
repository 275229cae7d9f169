"""FastAPI dependencies resolving services from the app's container."""

from fastapi import Request

from vodforge.container import ServiceContainer
from vodforge.modules.upload.chunk_store import ChunkStore
from vodforge.modules.video.service import VideoService


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_video_service(request: Request) -> VideoService:
    return get_container(request).videos


def get_chunk_store(request: Request) -> ChunkStore:
    return get_container(request).chunk_store

