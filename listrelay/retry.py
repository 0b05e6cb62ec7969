"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

logger = structlog.get_logger()


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retrying",
        operation=getattr(retry_state.fn, "__name__", "unknown"),
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Usage::

        @with_retry(config.retry, retryable_exceptions=(ConnectionError,))
        async def send(message: bytes) -> None: ...

    Exceptions outside *retryable_exceptions* fail immediately; the last
    exception is re-raised once attempts are exhausted.
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=_log_retry,
        reraise=True,
    )
