"""Object storage supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
Backends are synchronous; ``AsyncObjectStorage`` runs them off the event loop.
"""

import asyncio
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from vodforge.core.errors import StorageError

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".mp4": "video/mp4",
    ".webp": "image/webp",
}

# S3 DeleteObjects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000


def content_type_for(path: str) -> str:
    """Derive the content type of an object from its file extension."""
    ext = os.path.splitext(path)[1].lower()
    return CONTENT_TYPES.get(ext, DEFAULT_CONTENT_TYPE)


@dataclass
class StorageResult:
    """Result of a storage write."""
    key: str
    url: str
    file_size: int = 0
    etag: Optional[str] = None


@dataclass
class ObjectPage:
    """One page of a prefix listing."""
    keys: list[str] = field(default_factory=list)
    next_token: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"
    page_size: int = 1000


class ObjectStorage(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> StorageResult:
        """Store ``body`` under ``key``."""

    @abstractmethod
    def put_file(self, key: str, file_path: str) -> StorageResult:
        """Upload a local file; content type follows its extension."""

    @abstractmethod
    def list_objects(
        self,
        prefix: str,
        continuation_token: Optional[str] = None,
    ) -> ObjectPage:
        """List one page of keys starting with ``prefix``."""

    @abstractmethod
    def delete_objects(self, keys: list[str]) -> int:
        """Delete a batch of keys; missing keys are not errors."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    def get_url(self, key: str) -> str:
        """Get a URL for an object."""


class LocalObjectStorage(ObjectStorage):
    """Local filesystem storage backend."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.page_size = config.page_size

    def _get_full_path(self, key: str) -> Path:
        return self.base_path / key

    def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = dest_path.with_name(dest_path.name + ".part")
            tmp_path.write_bytes(body)
            os.replace(tmp_path, dest_path)
        except OSError as e:
            raise StorageError(f"Failed to store {key}: {e}", key=key) from e

        return StorageResult(key=key, url=self.get_url(key), file_size=len(body))

    def put_file(self, key: str, file_path: str) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(file_path, dest_path)
            file_size = dest_path.stat().st_size
        except OSError as e:
            raise StorageError(f"Failed to upload {file_path} to {key}: {e}", key=key) from e

        return StorageResult(key=key, url=self.get_url(key), file_size=file_size)

    def list_objects(
        self,
        prefix: str,
        continuation_token: Optional[str] = None,
    ) -> ObjectPage:
        if not self.base_path.exists():
            return ObjectPage()

        keys = sorted(
            path.relative_to(self.base_path).as_posix()
            for path in self.base_path.rglob("*")
            if path.is_file() and not path.name.endswith(".part")
        )
        keys = [k for k in keys if k.startswith(prefix)]
        if continuation_token:
            keys = [k for k in keys if k > continuation_token]

        page = keys[: self.page_size]
        next_token = page[-1] if len(keys) > self.page_size else None
        return ObjectPage(keys=page, next_token=next_token)

    def delete_objects(self, keys: list[str]) -> int:
        deleted = 0
        for key in keys:
            path = self._get_full_path(key)
            try:
                path.unlink()
                deleted += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageError(f"Failed to delete {key}: {e}", key=key) from e
            self._prune_empty_dirs(path.parent)
        return deleted

    def _prune_empty_dirs(self, directory: Path) -> None:
        while directory != self.base_path and directory.is_dir():
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent

    def exists(self, key: str) -> bool:
        return self._get_full_path(key).is_file()

    def get_url(self, key: str) -> str:
        return f"file://{self._get_full_path(key).absolute()}"


class S3ObjectStorage(ObjectStorage):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self._client = client

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
                "aws_access_key_id": self.config.access_key or None,
                "aws_secret_access_key": self.config.secret_key or None,
            }

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> StorageResult:
        try:
            response = self._get_client().put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to store {key}: {e}", key=key) from e

        etag = response.get("ETag", "").strip('"')
        return StorageResult(key=key, url=self.get_url(key), file_size=len(body), etag=etag)

    def put_file(self, key: str, file_path: str) -> StorageResult:
        try:
            file_size = os.path.getsize(file_path)
            with open(file_path, "rb") as f:
                response = self._get_client().put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=f,
                    ContentType=content_type_for(file_path),
                )
        except (BotoCoreError, ClientError, OSError) as e:
            raise StorageError(f"Failed to upload {file_path} to {key}: {e}", key=key) from e

        etag = response.get("ETag", "").strip('"')
        return StorageResult(key=key, url=self.get_url(key), file_size=file_size, etag=etag)

    def list_objects(
        self,
        prefix: str,
        continuation_token: Optional[str] = None,
    ) -> ObjectPage:
        params = {
            "Bucket": self.config.bucket,
            "Prefix": prefix,
            "MaxKeys": self.config.page_size,
        }
        if continuation_token:
            params["ContinuationToken"] = continuation_token

        try:
            response = self._get_client().list_objects_v2(**params)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to list {prefix}: {e}", prefix=prefix) from e

        keys = [obj["Key"] for obj in response.get("Contents", []) if obj.get("Key")]
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ObjectPage(keys=keys, next_token=next_token)

    def delete_objects(self, keys: list[str]) -> int:
        deleted = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            try:
                response = self._get_client().delete_objects(
                    Bucket=self.config.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (BotoCoreError, ClientError) as e:
                raise StorageError(f"Failed to delete {len(batch)} objects: {e}") from e

            errors = response.get("Errors") or []
            if errors:
                raise StorageError(
                    f"Failed to delete {len(errors)} of {len(batch)} objects",
                    keys=[err.get("Key") for err in errors],
                )
            deleted += len(batch)
        return deleted

    def exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.config.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Failed to check {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to check {key}: {e}", key=key) from e

    def get_url(self, key: str) -> str:
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url}/{self.config.bucket}/{key}"
        return f"https://{self.config.bucket}.s3.{self.config.region or 'us-east-1'}.amazonaws.com/{key}"


def create_object_storage(config: StorageConfig) -> ObjectStorage:
    """Create appropriate storage backend."""
    backend_type = config.backend.lower()

    if backend_type == "local":
        return LocalObjectStorage(config)
    elif backend_type in ("s3", "minio", "aws"):
        return S3ObjectStorage(config)
    else:
        raise ValueError(f"Unsupported storage backend: {backend_type}")


class AsyncObjectStorage:
    """Async-compatible wrapper running a backend off the event loop."""

    def __init__(self, backend: ObjectStorage):
        self.backend = backend

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> StorageResult:
        return await asyncio.to_thread(self.backend.put_object, key, body, content_type)

    async def put_file(self, key: str, file_path: str) -> StorageResult:
        return await asyncio.to_thread(self.backend.put_file, key, file_path)

    async def list_objects(
        self,
        prefix: str,
        continuation_token: Optional[str] = None,
    ) -> ObjectPage:
        return await asyncio.to_thread(self.backend.list_objects, prefix, continuation_token)

    async def delete_objects(self, keys: list[str]) -> int:
        if not keys:
            return 0
        return await asyncio.to_thread(self.backend.delete_objects, keys)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self.backend.exists, key)

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under ``prefix``, page by page, until the
        listing reports no continuation token."""
        deleted = 0
        token: Optional[str] = None
        while True:
            page = await self.list_objects(prefix, token)
            if page.keys:
                deleted += await self.delete_objects(page.keys)
            token = page.next_token
            if not token:
                return deleted
