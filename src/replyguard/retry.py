"""Bounded retry with exponential backoff and jitter for provider calls."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from replyguard.config import RetryConfig
from replyguard.errors import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, config: RetryConfig, retry_after: float | None = None) -> float:
    """Delay before retry number ``attempt`` (1-based).

    Exponential in the attempt number, capped at ``max_delay``, plus up to
    ``jitter`` of the computed delay as random spread. A provider supplied
    Retry-After wins when it is longer.
    """
    delay = min(config.base_delay * (2 ** (attempt - 1)), config.max_delay)
    delay += random.uniform(0, delay * config.jitter)  # noqa: S311
    if retry_after is not None:
        delay = max(delay, min(retry_after, config.max_delay))
    return delay


def call_with_retry(
    func: Callable[[], T],
    config: RetryConfig | None = None,
    description: str = "provider call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` and retry it on TransientProviderError.

    Any other exception propagates immediately. After ``max_attempts`` the
    last transient error is re-raised for the caller to treat as a
    non-fatal failure.
    """
    config = config or RetryConfig()
    attempts = max(1, config.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except TransientProviderError as exc:
            if attempt >= attempts:
                logger.error("All %d attempts exhausted for %s: %s", attempts, description, exc)
                raise
            delay = backoff_delay(attempt, config, exc.retry_after)
            logger.warning(
                "Retry %d/%d for %s after %s (waiting %.2fs)",
                attempt, attempts - 1, description, exc, delay,
            )
            sleep(delay)
    raise AssertionError("unreachable")
