"""Retry policy for the two storage-bound ranking steps."""

from __future__ import annotations

import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import TransientError

logger = logging.getLogger(__name__)

RETRY_IF = retry_if_exception_type(TransientError)
MAX_WAIT_SECONDS = 2.0


def transient_retrying(attempts: int, wait_seconds: float) -> AsyncRetrying:
    """Retry ``TransientError`` with exponential backoff, then re-raise it."""

    return AsyncRetrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=wait_seconds, max=MAX_WAIT_SECONDS),
        retry=RETRY_IF,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
