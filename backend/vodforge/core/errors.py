"""Error taxonomy for the media pipeline.

Every failure raised by the pipeline carries an ``ErrorKind``. Callers
branch on ``error.kind`` and never on the message text.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Kinds of pipeline failures."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXTERNAL_PROCESS = "external_process"
    STORAGE = "storage"
    CONSISTENCY = "consistency"


class MediaPipelineError(Exception):
    """Base exception for media pipeline errors."""

    kind: ErrorKind = ErrorKind.CONSISTENCY
    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, **self.context}


class ValidationError(MediaPipelineError):
    """Malformed caller input (chunk index, metadata, dimensions)."""

    kind = ErrorKind.VALIDATION


class NotFoundError(MediaPipelineError):
    """Unknown video, chunk or rendition."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(MediaPipelineError):
    """Operation not allowed in the current lifecycle state."""

    kind = ErrorKind.CONFLICT


class ExternalProcessError(MediaPipelineError):
    """Encoder exited non-zero, crashed or exceeded its time budget."""

    kind = ErrorKind.EXTERNAL_PROCESS

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        timed_out: bool = False,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.returncode = returncode
        self.timed_out = timed_out


class StorageError(MediaPipelineError):
    """Object storage operation failed."""

    kind = ErrorKind.STORAGE
    retryable = True


class ConsistencyError(MediaPipelineError):
    """Persisted state disagrees with artifacts (missing chunks, manifest races)."""

    kind = ErrorKind.CONSISTENCY
