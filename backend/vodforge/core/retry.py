"""Bounded retries with exponential backoff for retryable pipeline errors."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from vodforge.core.errors import MediaPipelineError
from vodforge.core.logging import log_warning

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Attempt budget and backoff curve.

    The delay before retry ``n`` (1-indexed) is
    ``initial_delay * backoff_multiplier ** (n - 1)``, capped at ``max_delay``.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        if attempt < 1:
            return self.initial_delay
        return min(self.initial_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts


# Presets for Celery tasks, which cannot receive settings-derived objects
RETRY_CONFIGS = {
    "callback": RetryConfig(max_attempts=5, initial_delay=1.0, max_delay=60.0),
    "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0),
}


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    description: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """Run ``operation`` until it succeeds or retries are exhausted.

    Only errors flagged ``retryable`` are retried; everything else propagates
    on the first failure. The last retryable error is re-raised once
    ``config.max_attempts`` is reached.
    """
    sleep = sleep or asyncio.sleep
    attempt = 1
    while True:
        try:
            return await operation()
        except MediaPipelineError as e:
            if not e.retryable or not config.should_retry(attempt):
                raise
            delay = config.calculate_delay(attempt)
            log_warning(
                logger,
                f"{description} failed, retrying",
                attempt=attempt,
                delay_seconds=delay,
                error=e.message,
            )
            await sleep(delay)
            attempt += 1
