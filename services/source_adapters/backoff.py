"""Backoff for source API requests: transport failures and HTTP 429."""

import asyncio
import logging
from functools import wraps
from typing import Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_WAIT = 1.0
MAX_WAIT = 60.0


def retry_after_seconds(response: httpx.Response) -> float:
    """
    Seconds a rate limited response asks us to wait.

    GitHub, Figma and Todoist send Retry-After in seconds; a missing or
    unparseable header falls back to DEFAULT_WAIT. Waits are capped at MAX_WAIT
    so one throttled source cannot stall its schedule.
    """
    header = response.headers.get('Retry-After')
    if header:
        try:
            return min(max(float(header), 0.0), MAX_WAIT)
        except ValueError:
            logger.warning(f"Unparseable Retry-After header: {header}")
    return DEFAULT_WAIT


def with_backoff(max_retries: int = 3, initial_delay: float = 1.0, exponential_base: float = 2.0):
    """
    Retry an adapter request on transient failures.

    Transport errors (timeouts, refused connections) back off exponentially;
    HTTP 429 waits for the server's Retry-After. Both share one retry budget.
    Any other HTTP status is returned to the caller on the first attempt.

    Args:
        max_retries: Retries after the first attempt
        initial_delay: Wait before the first transport retry, in seconds
        exponential_base: Growth factor of transport retry waits
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except httpx.TransportError as e:
                    if attempt >= max_retries:
                        logger.error(f"Giving up on {func.__name__} after {attempt + 1} attempts: {e!r}")
                        raise
                    delay = initial_delay * (exponential_base ** attempt)
                    logger.warning(f"{func.__name__} failed with {e!r}, retrying in {delay:.2f}s")
                except httpx.HTTPStatusError as e:
                    if e.response.status_code != 429:
                        raise
                    if attempt >= max_retries:
                        logger.error(f"Still rate limited after {attempt + 1} attempts")
                        raise
                    delay = retry_after_seconds(e.response)
                    logger.warning(f"Rate limited, waiting {delay:.2f}s ({attempt + 1}/{max_retries})")

                attempt += 1
                await asyncio.sleep(delay)

        return wrapper
    return decorator
