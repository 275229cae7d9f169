"""Tests for the error taxonomy and its HTTP mapping."""

import pytest

from vodforge.core.errors import (
    ConflictError,
    ConsistencyError,
    ErrorKind,
    ExternalProcessError,
    MediaPipelineError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from vodforge.main import ERROR_STATUS_CODES


@pytest.mark.parametrize(
    "error_cls,kind",
    [
        (ValidationError, ErrorKind.VALIDATION),
        (NotFoundError, ErrorKind.NOT_FOUND),
        (ConflictError, ErrorKind.CONFLICT),
        (ExternalProcessError, ErrorKind.EXTERNAL_PROCESS),
        (StorageError, ErrorKind.STORAGE),
        (ConsistencyError, ErrorKind.CONSISTENCY),
    ],
)
def test_each_error_carries_its_kind(error_cls, kind) -> None:
    error = error_cls("message")
    assert isinstance(error, MediaPipelineError)
    assert error.kind == kind


def test_only_storage_errors_are_retryable() -> None:
    retryable = [cls for cls in (
        ValidationError, NotFoundError, ConflictError,
        ExternalProcessError, StorageError, ConsistencyError,
    ) if cls("x").retryable]
    assert retryable == [StorageError]


def test_context_is_serialized() -> None:
    error = ConflictError("Not all chunks have been received", received=2, expected=3)
    assert error.to_dict() == {
        "kind": "conflict",
        "message": "Not all chunks have been received",
        "received": 2,
        "expected": 3,
    }


def test_external_process_error_keeps_exit_details() -> None:
    error = ExternalProcessError("Encoder exceeded 10s", timed_out=True, target="720p")
    assert error.timed_out is True
    assert error.returncode is None
    assert error.context == {"target": "720p"}


def test_every_kind_maps_to_a_status_code() -> None:
    assert set(ERROR_STATUS_CODES) == set(ErrorKind)
    assert ERROR_STATUS_CODES[ErrorKind.NOT_FOUND] == 404
    assert ERROR_STATUS_CODES[ErrorKind.CONFLICT] == 409
