"""Exponential backoff retry shared by the upstream sources."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tracker.exceptions import SourceUnavailable
from tracker.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def call_with_retry(
    fetch_fn: Callable[..., Awaitable[T]],
    *args: Any,
    operation: str,
    retry_on: tuple[type[BaseException], ...],
    max_retries: int = 3,
    base_delay: float = 1.0,
    **kwargs: Any,
) -> T:
    """Execute an async fetch with exponential backoff retry.

    Only exceptions listed in ``retry_on`` are retried, with delays of
    base_delay, 2*base_delay, 4*base_delay... Anything else propagates on the
    first occurrence. Once attempts are exhausted the last error is wrapped
    in SourceUnavailable.
    """
    last_error: BaseException | None = None

    for attempt in range(max_retries):
        try:
            return await fetch_fn(*args, **kwargs)
        except retry_on as e:
            last_error = e
            if attempt == max_retries - 1:
                break

            delay = base_delay * (2**attempt)
            logger.warning(
                "fetch_retry",
                operation=operation,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)

    logger.error(
        "fetch_failed_permanently",
        operation=operation,
        attempts=max_retries,
        error=str(last_error),
    )
    raise SourceUnavailable(
        f"{operation} failed after {max_retries} attempts: {last_error}"
    ) from last_error
