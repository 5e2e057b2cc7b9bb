"""
Retry Utilities.

Retries transient HTTP transport failures with exponential backoff. Only
connection-level problems are retried; HTTP status errors are answers and
are passed straight back to the caller.
"""

import logging
from typing import Any, Callable, TypeVar

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    max_retries: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 10.0,
    **kwargs: Any,
) -> T:
    """Call ``func`` and retry it on ``httpx.TransportError``.

    Args:
        func: Callable performing the HTTP request
        max_retries: Retries after the first attempt
        initial_delay: First backoff delay in seconds
        max_delay: Backoff ceiling in seconds

    Returns:
        Whatever ``func`` returns

    Raises:
        httpx.TransportError: When every attempt failed
    """
    retrying = Retrying(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=initial_delay, max=max_delay),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return retrying(func, *args, **kwargs)
