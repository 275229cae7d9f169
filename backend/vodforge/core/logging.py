"""Structured logging with correlation IDs.

Pipeline work for a video runs with the video id as correlation id so that
every line emitted for one upload, assembly and transcode can be joined.
HTTP requests use the caller's ``X-Correlation-ID`` or a fresh one.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def get_correlation_id() -> str:
    """Current correlation ID, created on first use in a context."""
    cid = correlation_id_var.get()
    if cid is None:
        cid = str(uuid.uuid4())
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    correlation_id_var.set(None)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class PipelineJsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are nested under ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }

        fields = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and key != "correlation_id"
        }
        if fields:
            entry["fields"] = fields

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "trace": traceback.format_exception(exc_type, exc_value, exc_tb),
            }
        elif record.levelno >= logging.ERROR:
            entry["source"] = f"{record.pathname}:{record.lineno}"

        return json.dumps(entry, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamp the current correlation ID on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Route all logging to stdout, as JSON lines or plain text."""
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(PipelineJsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s")
        )
    root_logger.addHandler(handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx", "botocore", "celery.worker"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _emit(
    logger: logging.Logger,
    level: int,
    message: str,
    exception: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    fields["correlation_id"] = get_correlation_id()
    logger.log(level, message, exc_info=exception, extra=fields)


def log_info(logger: logging.Logger, message: str, **fields: Any) -> None:
    _emit(logger, logging.INFO, message, **fields)


def log_warning(logger: logging.Logger, message: str, **fields: Any) -> None:
    _emit(logger, logging.WARNING, message, **fields)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Log an error, with the traceback when ``exception`` is given."""
    _emit(logger, logging.ERROR, message, exception=exception, **fields)
