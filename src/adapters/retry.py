"""Retry with exponential backoff for calls that cross the network boundary."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import httpx

from miner.config import RetryConfig
from miner.errors import EnrichmentError, MediaError

LOGGER = logging.getLogger(__name__)

TRANSIENT_TRANSPORT_ERRORS = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
)


def is_transient(exc: BaseException) -> bool:
    """429, 5xx, timeouts and dropped connections are worth another try."""

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    if isinstance(exc, TRANSIENT_TRANSPORT_ERRORS):
        return True
    if isinstance(exc, (EnrichmentError, MediaError)):
        return exc.retryable
    return False


def backoff_delay(attempt: int, config: RetryConfig, rng: Callable[[], float] = random.random) -> float:
    """Exponential delay for ``attempt`` (0-based) with up to 50% jitter."""

    base = min(config.max_delay_seconds, config.base_delay_seconds * (2**attempt))
    return base * (0.5 + rng() / 2)


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "request",
    **kwargs: Any,
) -> Any:
    """Await ``func`` and retry transient failures.

    Non-transient errors propagate immediately; the last transient error is
    re-raised once ``max_retries`` extra attempts are used up.
    """

    config = config or RetryConfig()
    for attempt in range(config.max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            if not is_transient(exc) or attempt >= config.max_retries:
                raise
            delay = backoff_delay(attempt, config)
            LOGGER.warning(
                "%s failed (%s), retry %s/%s in %.1fs",
                label,
                exc.__class__.__name__,
                attempt + 1,
                config.max_retries,
                delay,
            )
            await sleep(delay)
    raise RuntimeError("unreachable")
