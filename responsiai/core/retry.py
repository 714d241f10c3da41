"""Bounded retry policies for store and notification calls."""

import logging
from typing import Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from responsiai.core.errors import TransientStoreError

logger = logging.getLogger("responsiai.retry")

T = TypeVar("T")


def store_retrying(attempts: int = 3, base_seconds: float = 0.2) -> Retrying:
    """Retry TransientStoreError with exponential backoff; re-raise the last error."""
    return Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=base_seconds, min=0, max=5),
        retry=retry_if_exception_type(TransientStoreError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def async_store_retrying(attempts: int = 3, base_seconds: float = 0.2) -> AsyncRetrying:
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=base_seconds, min=0, max=5),
        retry=retry_if_exception_type(TransientStoreError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def call_with_store_retry(fn: Callable[..., T], *args, attempts: int = 3, base_seconds: float = 0.2, **kwargs) -> T:
    return store_retrying(attempts, base_seconds)(fn, *args, **kwargs)
